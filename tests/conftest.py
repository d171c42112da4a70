"""Shared pytest fixtures for the foreman test suite."""

from __future__ import annotations

import os
import subprocess
from collections import deque
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

import pytest

from agent_foreman.persistence.documents import DocumentStore
from agent_foreman.persistence.state_db import StateDB
from agent_foreman.producer.base import ProducerResult, ProducerUsage
from agent_foreman.utils.clock import UTC, FrozenClock


@pytest.fixture
def document_store(tmp_path: Path) -> DocumentStore:
    return DocumentStore(StateDB(tmp_path / "state" / "foreman.sqlite"))


@pytest.fixture
def frozen_clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 9, 30, tzinfo=UTC))


def run_git(cwd: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and completed.returncode != 0:
        msg = f"git command failed: git {' '.join(args)}\nstdout:\n{completed.stdout}\nstderr:\n{completed.stderr}"
        raise AssertionError(msg)
    return completed


def commit_file(worktree: Path, rel_path: str, content: str, message: str) -> str:
    path = worktree / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    run_git(worktree, "add", "--all")
    run_git(worktree, "commit", "-m", message)
    return run_git(worktree, "rev-parse", "HEAD").stdout.strip()


class GitSandbox:
    """A bare remote, a seed clone that publishes agent branches and a work clone the foreman runs in."""

    def __init__(self, root: Path) -> None:
        self.remote = root / "remote.git"
        self.seed = root / "seed"
        self.work = root / "work"
        run_git(root, "init", "--bare", "--initial-branch", "main", str(self.remote))
        run_git(root, "clone", str(self.remote), str(self.seed))
        self._identify(self.seed)
        run_git(self.seed, "checkout", "-B", "main")
        commit_file(self.seed, "README.md", "# demo\n", "Initial commit")
        commit_file(self.seed, "package.json", '{\n  "name": "demo"\n}\n', "Add package manifest")
        run_git(self.seed, "push", "origin", "main")
        run_git(self.seed, "push", "origin", "main:integration")
        run_git(root, "clone", str(self.remote), str(self.work))
        self._identify(self.work)
        run_git(self.work, "branch", "integration", "origin/integration")

    def publish(self, branch: str, files: dict[str, str], *, base: str = "main", message: str | None = None) -> str:
        """Commit ``files`` on a new branch forked from ``base`` and push it to the remote."""

        run_git(self.seed, "checkout", "-B", branch, f"origin/{base}")
        for rel_path, content in files.items():
            path = self.seed / rel_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        run_git(self.seed, "add", "--all")
        run_git(self.seed, "commit", "-m", message or f"Work on {branch}")
        run_git(self.seed, "push", "--force", "origin", branch)
        return run_git(self.seed, "rev-parse", "HEAD").stdout.strip()

    def run(self, cwd: Path, *args: str) -> str:
        return run_git(cwd, *args).stdout

    def commit(self, worktree: Path, rel_path: str, content: str, message: str) -> str:
        return commit_file(worktree, rel_path, content, message)

    def remote_branches(self) -> set[str]:
        output = run_git(self.remote, "branch", "--format=%(refname:short)").stdout
        return {line.strip() for line in output.splitlines() if line.strip()}

    def show(self, ref: str, path: str) -> str:
        return run_git(self.work, "show", f"{ref}:{path}").stdout

    @staticmethod
    def _identify(worktree: Path) -> None:
        run_git(worktree, "config", "user.name", "Test Agent")
        run_git(worktree, "config", "user.email", "agent@example.invalid")


@pytest.fixture
def isolated_git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    xdg = tmp_path / "xdg"
    home.mkdir()
    xdg.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")


@pytest.fixture
def git_sandbox(tmp_path: Path, isolated_git_env: None) -> GitSandbox:
    root = tmp_path / "git"
    root.mkdir()
    return GitSandbox(root)


class StaticProducer:
    """Scripted artifact producer: returns queued replies in order, then ``fallback``."""

    def __init__(
        self,
        replies: Iterable[str] = (),
        *,
        fallback: str = "export const value = 1;\n",
        model: str = "test/static-model",
        input_tokens: int = 120,
        output_tokens: int = 80,
    ) -> None:
        self.replies = deque(replies)
        self.fallback = fallback
        self.model = model
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: list[tuple[str, str, str | None]] = []

    def generate(self, role: str, instructions: str, *, model: str | None = None) -> ProducerResult:
        self.calls.append((role, instructions, model))
        text = self.replies.popleft() if self.replies else self.fallback
        return ProducerResult(
            text=text,
            usage=ProducerUsage(
                model=model or self.model,
                input_tokens=self.input_tokens,
                output_tokens=self.output_tokens,
            ),
        )


@pytest.fixture
def static_producer() -> StaticProducer:
    return StaticProducer()
