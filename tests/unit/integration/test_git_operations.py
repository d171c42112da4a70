"""GitEngine against throwaway repositories with a bare remote."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from agent_foreman.integration.git_engine import GitCommandError, GitEngine, GitEngineError
from agent_foreman.utils.clock import UTC

if TYPE_CHECKING:
    from pathlib import Path

    from conftest import GitSandbox


def open_engine(sandbox: GitSandbox) -> GitEngine:
    engine = GitEngine(sandbox.work)
    engine.fetch()
    return engine


def test_init_or_open_creates_main_and_integration(tmp_path: Path, isolated_git_env: None) -> None:
    engine = GitEngine(tmp_path / "fresh")

    assert engine.init_or_open() is True
    assert engine.branch_exists("main")
    assert engine.branch_exists("integration")
    assert engine.current_branch() == "main"
    assert engine.init_or_open() is False


def test_remote_branches_filters_on_prefix(git_sandbox: GitSandbox) -> None:
    git_sandbox.publish("feature/backend/7", {"src/lib/orders.ts": "export {}\n"})
    git_sandbox.publish("test/smoke", {"tests/smoke.test.ts": "test('x', () => {})\n"})
    git_sandbox.publish("chore/bump", {"notes.txt": "bump\n"})
    engine = open_engine(git_sandbox)

    branches = engine.remote_branches(("feature/", "test/", "fix/"))

    assert [branch.name for branch in branches] == ["feature/backend/7", "test/smoke"]
    assert branches[0].ref == "origin/feature/backend/7"
    assert abs(datetime.now(UTC) - branches[0].committed_at) < timedelta(hours=1)


def test_local_branches_list_heads_without_a_remote_prefix(git_sandbox: GitSandbox) -> None:
    git_sandbox.run(git_sandbox.work, "checkout", "-b", "feature/backend/9", "integration")
    git_sandbox.commit(git_sandbox.work, "src/lib/orders.ts", "export {}\n", "orders")
    git_sandbox.run(git_sandbox.work, "checkout", "-b", "chore/local", "integration")
    engine = GitEngine(git_sandbox.work)

    branches = engine.local_branches(("feature/",))

    assert [(branch.name, branch.ref) for branch in branches] == [("feature/backend/9", "feature/backend/9")]
    assert engine.remote_branches(("feature/",)) == []


def test_changed_files_reports_status_and_line_counts(git_sandbox: GitSandbox) -> None:
    git_sandbox.publish("feature/backend/8", {"src/lib/orders.ts": "a\nb\nc\n", "README.md": "# demo\nmore\n"})
    engine = open_engine(git_sandbox)

    entries = {entry.path: entry for entry in engine.changed_files("integration", "origin/feature/backend/8")}

    assert set(entries) == {"README.md", "src/lib/orders.ts"}
    assert entries["src/lib/orders.ts"].status == "A"
    assert entries["src/lib/orders.ts"].additions == 3
    assert entries["README.md"].status == "M"
    assert entries["README.md"].additions == 1


def test_dry_run_merge_detects_conflicts_without_touching_the_tree(git_sandbox: GitSandbox) -> None:
    git_sandbox.publish("feature/frontend/1", {"README.md": "# frontend\n"})
    git_sandbox.publish("feature/backend/1", {"README.md": "# backend\n"})
    git_sandbox.publish("feature/database/1", {"prisma/schema.prisma": "model A {}\n"})
    engine = open_engine(git_sandbox)
    head_before = engine.rev_parse("HEAD")

    conflicting = engine.dry_run_merge("origin/feature/backend/1", "origin/feature/frontend/1")
    clean = engine.dry_run_merge("origin/feature/database/1", "integration")

    assert conflicting.clean_merge is False
    assert conflicting.conflicts == ("README.md",)
    assert clean.clean_merge is True
    assert engine.rev_parse("HEAD") == head_before
    assert engine.conflicted_files() == ()


def test_merge_creates_a_merge_commit(git_sandbox: GitSandbox) -> None:
    git_sandbox.publish("feature/backend/2", {"src/lib/users.ts": "export const users = []\n"})
    engine = open_engine(git_sandbox)
    engine.checkout("integration")

    outcome = engine.merge("origin/feature/backend/2", message="Integrated feature/backend/2")

    assert outcome.clean is True
    assert outcome.target == "integration"
    parents = git_sandbox.run(git_sandbox.work, "rev-list", "--parents", "-n", "1", "HEAD").split()
    assert len(parents) == 3
    assert (git_sandbox.work / "src/lib/users.ts").is_file()


def test_conflicting_merge_exposes_both_sides_and_can_be_aborted(git_sandbox: GitSandbox) -> None:
    git_sandbox.publish("feature/frontend/3", {"README.md": "# theirs\n"})
    engine = open_engine(git_sandbox)
    engine.checkout("integration")
    git_sandbox.commit(git_sandbox.work, "README.md", "# ours\n", "Local edit")
    head_before = engine.rev_parse("HEAD")

    outcome = engine.merge("origin/feature/frontend/3", message="Integrated feature/frontend/3")

    assert outcome.clean is False
    assert outcome.conflicts == ("README.md",)
    assert engine.show_stage("ours", "README.md") == "# ours\n"
    assert engine.show_stage("theirs", "README.md") == "# theirs\n"

    engine.abort_merge()
    assert engine.conflicted_files() == ()
    assert engine.rev_parse("HEAD") == head_before


def test_reset_and_clean_discard_uncommitted_work(git_sandbox: GitSandbox) -> None:
    engine = open_engine(git_sandbox)
    (git_sandbox.work / "README.md").write_text("scribble\n", encoding="utf-8")
    (git_sandbox.work / "scratch").mkdir()
    (git_sandbox.work / "scratch" / "tmp.txt").write_text("x\n", encoding="utf-8")

    engine.reset_hard()
    engine.clean()

    assert (git_sandbox.work / "README.md").read_text(encoding="utf-8") == "# demo\n"
    assert not (git_sandbox.work / "scratch").exists()


def test_reset_to_previous_commit_reverts_a_merge(git_sandbox: GitSandbox) -> None:
    git_sandbox.publish("feature/backend/4", {"src/lib/broken.ts": "oops\n"})
    engine = open_engine(git_sandbox)
    engine.checkout("integration")
    before = engine.rev_parse("HEAD")
    engine.merge("origin/feature/backend/4", message="Integrated feature/backend/4")

    engine.reset_hard("HEAD~1")

    assert engine.rev_parse("HEAD") == before


def test_push_and_delete_remote_branch(git_sandbox: GitSandbox) -> None:
    git_sandbox.publish("feature/backend/5", {"src/lib/a.ts": "a\n"})
    engine = open_engine(git_sandbox)
    engine.checkout("integration")
    engine.merge("origin/feature/backend/5", message="Integrated feature/backend/5")

    engine.push("integration")

    remote_head = git_sandbox.run(git_sandbox.remote, "rev-parse", "integration").strip()
    assert remote_head == engine.rev_parse("HEAD")
    assert engine.delete_remote_branch("feature/backend/5") is True
    assert "feature/backend/5" not in git_sandbox.remote_branches()
    assert engine.delete_remote_branch("feature/backend/5") is False


def test_ensure_branch_creates_from_integration(git_sandbox: GitSandbox) -> None:
    engine = open_engine(git_sandbox)

    assert engine.ensure_branch("feature/backend/9") is True
    assert engine.current_branch() == "feature/backend/9"
    assert engine.rev_parse("HEAD") == engine.rev_parse("integration")
    engine.checkout("main")
    assert engine.ensure_branch("feature/backend/9") is False


def test_commit_requires_a_message_and_stages_everything(git_sandbox: GitSandbox) -> None:
    engine = open_engine(git_sandbox)
    (git_sandbox.work / "new.txt").write_text("hello\n", encoding="utf-8")

    with pytest.raises(GitEngineError, match="empty"):
        engine.commit("   ")
    sha = engine.commit("Add greeting", stage_all=True)

    assert sha == engine.rev_parse("HEAD")
    assert git_sandbox.run(git_sandbox.work, "log", "-1", "--format=%s").strip() == "Add greeting"


def test_failing_git_command_raises_with_stderr(git_sandbox: GitSandbox) -> None:
    engine = open_engine(git_sandbox)

    with pytest.raises(GitCommandError, match="git command failed") as excinfo:
        engine.checkout("does-not-exist")

    assert excinfo.value.returncode != 0
    assert excinfo.value.command[:2] == ("git", "checkout")
