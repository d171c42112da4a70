"""Subprocess helpers used for build, test, lint and install commands."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

import pytest

from agent_foreman.integration.commands import CommandFailedError, run_checked, run_command, split_command

if TYPE_CHECKING:
    from pathlib import Path


def test_split_command_uses_shell_quoting() -> None:
    assert split_command('npm run "build:prod" --silent') == ("npm", "run", "build:prod", "--silent")
    assert split_command(["git", "status"]) == ("git", "status")
    with pytest.raises(ValueError, match="empty"):
        split_command("   ")


def test_run_command_captures_output_and_status(tmp_path: Path) -> None:
    result = run_command([sys.executable, "-c", "import sys; print('hi'); sys.exit(3)"], cwd=tmp_path)

    assert result.returncode == 3
    assert result.stdout.strip() == "hi"
    assert result.ok is False
    assert result.to_dict()["returncode"] == 3


def test_run_command_passes_env_and_stdin(tmp_path: Path) -> None:
    script = "import os, sys; print(os.environ['FOREMAN_FLAG'] + sys.stdin.read())"
    result = run_command(
        [sys.executable, "-c", script],
        cwd=tmp_path,
        env_overrides={"FOREMAN_FLAG": "on:"},
        input_text="payload",
    )

    assert result.ok
    assert result.stdout.strip() == "on:payload"


def test_run_command_reports_timeouts(tmp_path: Path) -> None:
    result = run_command([sys.executable, "-c", "import time; time.sleep(5)"], cwd=tmp_path, timeout_seconds=0.2)

    assert result.timed_out is True
    assert result.returncode is None
    assert result.ok is False


def test_missing_executable_is_a_failed_result(tmp_path: Path) -> None:
    result = run_command("definitely-not-a-real-binary --version", cwd=tmp_path)

    assert result.returncode == 127
    assert "executable not found" in result.stderr


def test_run_checked_raises_with_output_tail(tmp_path: Path) -> None:
    with pytest.raises(CommandFailedError, match="boom") as excinfo:
        run_checked([sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(1)"], cwd=tmp_path)

    assert excinfo.value.result.returncode == 1
