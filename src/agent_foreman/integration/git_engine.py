"""Working-tree git operations used by the integration workflows."""

from __future__ import annotations

import os
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Literal

import structlog

from agent_foreman.constants import DEFAULT_INTEGRATION_BRANCH, DEFAULT_MAIN_BRANCH, DEFAULT_REMOTE
from agent_foreman.integration.commands import CommandResult
from agent_foreman.utils.clock import UTC

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

ConflictSide = Literal["ours", "theirs"]

logger = structlog.get_logger(__name__)


class GitEngineError(RuntimeError):
    """Base error for git engine failures."""


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class ChangedFileEntry:
    """Diff entry with normalized status and line counts."""

    status: str
    path: str
    additions: int = 0
    deletions: int = 0


@dataclass(frozen=True, slots=True)
class BranchHead:
    name: str
    ref: str
    committed_at: datetime


@dataclass(frozen=True, slots=True)
class DryRunMergeResult:
    """Result for dry-run merge conflict detection."""

    clean_merge: bool
    conflicts: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class MergeOutcome:
    source: str
    target: str
    clean: bool
    conflicts: tuple[str, ...] = ()


class GitEngine:
    """Thin wrapper around the git CLI operating in the repository's working tree.

    Every mutating call acts on the checked-out branch, so callers check out the
    target branch first. ``current_branch`` and ``checkout`` also satisfy the
    branch operations the recovery subsystem restores state with.
    """

    def __init__(
        self,
        repo_path: Path | str,
        *,
        main_branch: str = DEFAULT_MAIN_BRANCH,
        integration_branch: str = DEFAULT_INTEGRATION_BRANCH,
        remote: str = DEFAULT_REMOTE,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.main_branch = main_branch
        self.integration_branch = integration_branch
        self.remote = remote
        self._env_overrides = dict(env_overrides or {})

    def init_or_open(self) -> bool:
        """Open a repository or initialize it, ensuring the main and integration branches exist.

        Returns ``True`` when a new repository was created.
        """

        self.repo_path.mkdir(parents=True, exist_ok=True)
        created = not (self.repo_path / ".git").exists()
        if created:
            self._run_git(["init", "--initial-branch", self.main_branch])
        else:
            self._run_git(["rev-parse", "--git-dir"])

        self._ensure_local_identity()

        if self._run_git(["rev-parse", "--verify", "HEAD"], check=False).returncode != 0:
            self._run_git(["symbolic-ref", "HEAD", f"refs/heads/{self.main_branch}"])
            self._run_git(["commit", "--allow-empty", "-m", "Initialize repository"])
        if not self.branch_exists(self.main_branch):
            self._run_git(["branch", self.main_branch, "HEAD"])
        if not self.branch_exists(self.integration_branch):
            self._run_git(["branch", self.integration_branch, self.main_branch])
        return created

    # Branches -----------------------------------------------------------

    def current_branch(self) -> str:
        branch = self._run_git(["branch", "--show-current"]).stdout.strip()
        if not branch:
            raise GitEngineError("Detached HEAD is not supported for this operation.")
        return branch

    def checkout(self, branch: str, *, create: bool = False, start_point: str | None = None) -> None:
        if create:
            args = ["checkout", "-b", branch]
            if start_point is not None:
                args.append(start_point)
            self._run_git(args)
        else:
            self._run_git(["checkout", branch])
        logger.debug("git_checkout", branch=branch, created=create)

    def ensure_branch(self, branch: str, *, base: str | None = None) -> bool:
        """Check out ``branch``, creating it from ``base`` when missing. Returns ``True`` if created."""

        if self.branch_exists(branch):
            self.checkout(branch)
            return False
        start = base if base is not None else self.integration_branch
        if not self.branch_exists(start):
            start = self.main_branch
        self.checkout(branch, create=True, start_point=start)
        return True

    def branch_exists(self, branch: str) -> bool:
        ref = f"refs/heads/{branch}"
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    def delete_branch(self, branch: str, *, force: bool = False) -> None:
        self._run_git(["branch", "-D" if force else "-d", branch])

    def rev_parse(self, ref: str) -> str:
        return self._run_git(["rev-parse", ref]).stdout.strip()

    # Remote -------------------------------------------------------------

    def has_remote(self) -> bool:
        remotes = self._run_git(["remote"], check=False).stdout.split()
        return self.remote in remotes

    def fetch(self) -> None:
        self._run_git(["fetch", "--all", "--prune"])

    def remote_branches(self, prefixes: Sequence[str]) -> list[BranchHead]:
        """Remote-tracking branches whose name starts with one of ``prefixes``."""

        return self._branch_heads(f"refs/remotes/{self.remote}", f"{self.remote}/", prefixes)

    def local_branches(self, prefixes: Sequence[str]) -> list[BranchHead]:
        """Local branches whose name starts with one of ``prefixes``."""

        return self._branch_heads("refs/heads", "", prefixes)

    def _branch_heads(self, namespace: str, strip: str, prefixes: Sequence[str]) -> list[BranchHead]:
        output = self._run_git(
            [
                "for-each-ref",
                "--sort=refname",
                "--format=%(refname:short)%09%(committerdate:unix)",
                namespace,
            ]
        ).stdout
        branches: list[BranchHead] = []
        for line in output.splitlines():
            ref, _, stamp = line.partition("\t")
            if not ref.startswith(strip) or not stamp.strip().isdigit():
                continue
            name = ref[len(strip) :]
            if name == "HEAD" or not any(name.startswith(prefix) for prefix in prefixes):
                continue
            branches.append(
                BranchHead(name=name, ref=ref, committed_at=datetime.fromtimestamp(int(stamp), tz=UTC))
            )
        return branches

    def push(self, branch: str) -> None:
        self._run_git(["push", self.remote, branch])

    def delete_remote_branch(self, branch: str) -> bool:
        result = self._run_git(["push", self.remote, "--delete", branch], check=False)
        return result.returncode == 0

    # Diffs --------------------------------------------------------------

    def changed_files(self, base_ref: str, head_ref: str) -> tuple[ChangedFileEntry, ...]:
        """Files changed on ``head_ref`` since it forked from ``base_ref``, with line counts."""

        span = f"{base_ref}...{head_ref}"
        statuses = self._run_git(["diff", "--name-status", "--no-renames", span]).stdout
        counts: dict[str, tuple[int, int]] = {}
        for line in self._run_git(["diff", "--numstat", "--no-renames", span]).stdout.splitlines():
            parts = line.split("\t", 2)
            if len(parts) != 3:
                continue
            added, removed, path = parts
            counts[path] = (
                int(added) if added.isdigit() else 0,
                int(removed) if removed.isdigit() else 0,
            )

        entries: list[ChangedFileEntry] = []
        for line in statuses.splitlines():
            status_and_path = line.split("\t", 1)
            if len(status_and_path) != 2:
                continue
            status, path = status_and_path[0][:1], status_and_path[1]
            additions, deletions = counts.get(path, (0, 0))
            entries.append(ChangedFileEntry(status=status, path=path, additions=additions, deletions=deletions))
        return tuple(entries)

    def working_tree_changes(self) -> tuple[ChangedFileEntry, ...]:
        """Uncommitted changes against ``HEAD``, untracked files included."""

        self._run_git(["add", "--all", "--intent-to-add"], check=False)
        output = self._run_git(["diff", "--numstat", "HEAD"]).stdout
        entries: list[ChangedFileEntry] = []
        for line in output.splitlines():
            parts = line.split("\t", 2)
            if len(parts) != 3:
                continue
            added, removed, path = parts
            entries.append(
                ChangedFileEntry(
                    status="M",
                    path=path,
                    additions=int(added) if added.isdigit() else 0,
                    deletions=int(removed) if removed.isdigit() else 0,
                )
            )
        return tuple(entries)

    # Merging ------------------------------------------------------------

    def dry_run_merge(self, source: str, target: str) -> DryRunMergeResult:
        """Detect conflicts with ``git merge-tree`` without touching refs or the working tree."""

        result = self._run_git(
            ["merge-tree", "--write-tree", "--name-only", "--no-messages", target, source],
            check=False,
        )
        if result.returncode == 0:
            return DryRunMergeResult(clean_merge=True, conflicts=())
        if result.returncode == 1:
            lines = [line.strip() for line in result.stdout.splitlines()[1:] if line.strip()]
            return DryRunMergeResult(clean_merge=False, conflicts=tuple(dict.fromkeys(lines)))
        raise GitCommandError(
            command=result.command,
            returncode=result.returncode or 0,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def merge(self, source: str, *, message: str) -> MergeOutcome:
        """``merge --no-ff`` ``source`` into the checked-out branch, leaving conflicts in place."""

        target = self.current_branch()
        result = self._run_git(["merge", "--no-ff", "-m", message, source], check=False)
        if result.returncode == 0:
            return MergeOutcome(source=source, target=target, clean=True)
        conflicts = self.conflicted_files()
        if not conflicts:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode or 0,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return MergeOutcome(source=source, target=target, clean=False, conflicts=conflicts)

    def abort_merge(self) -> None:
        self._run_git(["merge", "--abort"], check=False)

    def conflicted_files(self) -> tuple[str, ...]:
        output = self._run_git(["diff", "--name-only", "--diff-filter=U"], check=False).stdout
        return tuple(line.strip() for line in output.splitlines() if line.strip())

    def show_stage(self, side: ConflictSide, path: str) -> str | None:
        """Content of ``path`` on one side of an in-progress merge, or ``None`` if that side deleted it."""

        stage = 2 if side == "ours" else 3
        result = self._run_git(["show", f":{stage}:{path}"], check=False)
        return result.stdout if result.returncode == 0 else None

    def checkout_side(self, path: str, side: ConflictSide) -> None:
        self._run_git(["checkout", f"--{side}", "--", path])

    # Staging and commits ------------------------------------------------

    def add(self, *paths: str) -> None:
        self._run_git(["add", "--", *paths])

    def remove(self, path: str) -> None:
        self._run_git(["rm", "--quiet", "--", path])

    def has_staged_changes(self) -> bool:
        return bool(self._run_git(["diff", "--cached", "--name-only"]).stdout.strip())

    def commit(self, message: str, *, stage_all: bool = False) -> str:
        title = message.strip()
        if not title:
            raise GitEngineError("Commit message cannot be empty.")
        if stage_all:
            self._run_git(["add", "--all"])
        self._run_git(["commit", "--no-gpg-sign", "--no-verify", "-m", title])
        return self.rev_parse("HEAD")

    # Rollback -----------------------------------------------------------

    def reset_hard(self, ref: str = "HEAD") -> None:
        self._run_git(["reset", "--hard", ref])

    def clean(self) -> None:
        self._run_git(["clean", "-fd"])

    def _ensure_local_identity(self) -> None:
        if self._run_git(["config", "--local", "--get", "user.name"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.name", "agent-foreman"])
        if self._run_git(["config", "--local", "--get", "user.email"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.email", "foreman@example.invalid"])

    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        command = ("git", *args)
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        started = time.monotonic()
        completed = subprocess.run(
            command,
            cwd=self.repo_path,
            env=env,
            text=True,
            capture_output=True,
            input=input_text,
            check=False,
        )
        result = CommandResult(
            command=command,
            cwd=self.repo_path.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=completed.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result


__all__ = [
    "BranchHead",
    "ChangedFileEntry",
    "ConflictSide",
    "DryRunMergeResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "MergeOutcome",
]
