"""Subprocess execution for build, test, lint and helper tool commands."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

logger = structlog.get_logger(__name__)

_OUTPUT_TAIL_CHARS = 4000


class CommandFailedError(RuntimeError):
    """Raised when a checked command exits non-zero or times out."""

    def __init__(self, result: CommandResult) -> None:
        self.result = result
        if result.timed_out:
            message = f"command timed out: {' '.join(result.command)}"
        else:
            message = f"command failed ({result.returncode}): {' '.join(result.command)}"
        detail = (result.stderr or result.stdout).strip()
        if detail:
            message = f"{message}: {detail[-_OUTPUT_TAIL_CHARS:]}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess outcome."""

    command: tuple[str, ...]
    cwd: str
    returncode: int | None
    stdout: str
    stderr: str
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0

    def to_dict(self) -> dict[str, object]:
        return {
            "command": list(self.command),
            "cwd": self.cwd,
            "returncode": self.returncode,
            "timedOut": self.timed_out,
            "durationMs": self.duration_ms,
            "stdoutTail": self.stdout[-_OUTPUT_TAIL_CHARS:],
            "stderrTail": self.stderr[-_OUTPUT_TAIL_CHARS:],
        }


def split_command(command: str | Sequence[str]) -> tuple[str, ...]:
    argv = tuple(shlex.split(command)) if isinstance(command, str) else tuple(command)
    if not argv:
        raise ValueError("command must not be empty")
    return argv


def run_command(
    command: str | Sequence[str],
    *,
    cwd: Path | str,
    timeout_seconds: float | None = None,
    env_overrides: Mapping[str, str] | None = None,
    input_text: str | None = None,
) -> CommandResult:
    """Run ``command`` without a shell and capture its output; never raises on exit status."""

    argv = split_command(command)
    run_cwd = Path(cwd).resolve()
    env = os.environ.copy()
    env.update(env_overrides or {})
    started = time.monotonic()
    try:
        completed = subprocess.run(
            argv,
            cwd=run_cwd,
            env=env,
            text=True,
            capture_output=True,
            input=input_text,
            timeout=timeout_seconds,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        result = CommandResult(
            command=argv,
            cwd=run_cwd.as_posix(),
            returncode=None,
            stdout=_as_text(exc.stdout),
            stderr=_as_text(exc.stderr),
            duration_ms=int((time.monotonic() - started) * 1000),
            timed_out=True,
        )
        logger.warning("command_timed_out", command=" ".join(argv), timeout_seconds=timeout_seconds)
        return result
    except FileNotFoundError:
        return CommandResult(
            command=argv,
            cwd=run_cwd.as_posix(),
            returncode=127,
            stdout="",
            stderr=f"executable not found: {argv[0]}",
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    result = CommandResult(
        command=argv,
        cwd=run_cwd.as_posix(),
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    logger.debug(
        "command_finished",
        command=" ".join(argv),
        returncode=result.returncode,
        duration_ms=result.duration_ms,
    )
    return result


def run_checked(
    command: str | Sequence[str],
    *,
    cwd: Path | str,
    timeout_seconds: float | None = None,
    env_overrides: Mapping[str, str] | None = None,
) -> CommandResult:
    result = run_command(command, cwd=cwd, timeout_seconds=timeout_seconds, env_overrides=env_overrides)
    if not result.ok:
        raise CommandFailedError(result)
    return result


def _as_text(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = ["CommandFailedError", "CommandResult", "run_checked", "run_command", "split_command"]
