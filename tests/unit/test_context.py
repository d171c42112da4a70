"""Orchestrator context: component wiring, role table loading and shutdown."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_foreman.config.loader import load_config
from agent_foreman.context import OrchestratorContext
from agent_foreman.dispatch.tickets import Ticket
from agent_foreman.resources.sampler import ProcessSample
from agent_foreman.utils.clock import FrozenClock


@pytest.fixture
def context(tmp_path: Path, frozen_clock: FrozenClock) -> Iterator[OrchestratorContext]:
    (tmp_path / "foreman.toml").write_text(
        '[paths]\nroles_file = "roles.yaml"\n\n[resources]\nsample_interval_seconds = 0.5\n',
        encoding="utf-8",
    )
    (tmp_path / "roles.yaml").write_text(
        "roles:\n  testing:\n    working_paths: [qa/]\n",
        encoding="utf-8",
    )
    config = load_config(tmp_path / "foreman.toml", environ={})
    ctx = OrchestratorContext.open(config, repo_root=tmp_path, clock=frozen_clock, sleep=frozen_clock.sleep)
    yield ctx
    ctx.close()


def test_components_share_one_store(context: OrchestratorContext, tmp_path: Path) -> None:
    context.dispatcher().assign([Ticket("TICKET-1", "Add login form component")])

    assert [item.ticket_id for item in context.dispatcher().assignments()] == ["TICKET-1"]
    assert context.store.db.path == tmp_path.resolve() / "state" / "foreman.sqlite"
    assert (tmp_path / ".agent-tasks" / "TICKET-1.json").is_file()


def test_role_table_overrides_are_loaded_once(context: OrchestratorContext) -> None:
    assert context.roles["testing"].working_paths == ("qa/",)
    assert context.roles is context.roles


def test_git_engine_uses_configured_branches(context: OrchestratorContext, tmp_path: Path) -> None:
    git = context.git()

    assert git.repo_path == tmp_path.resolve()
    assert (git.main_branch, git.integration_branch, git.remote) == ("main", "integration", "origin")


def test_samplers_are_registered_per_session(context: OrchestratorContext) -> None:
    sampler = context.sampler_for("session-1")

    assert context.sampler_for("session-1") is sampler
    assert isinstance(context.latest_sample(), ProcessSample)


def test_released_samplers_are_stopped_and_forgotten(context: OrchestratorContext) -> None:
    sampler = context.sampler_for("session-3")
    sampler.start()

    assert context.release_sampler("session-3") is sampler
    assert not sampler.running
    assert "session-3" not in context.samplers
    assert context.release_sampler("session-3") is None
    assert context.sampler_for("session-3") is not sampler


def test_close_stops_samplers_and_flushes_logs(context: OrchestratorContext, tmp_path: Path) -> None:
    sampler = context.sampler_for("session-2")
    sampler.start()
    context.governor().start_session("backend", "TICKET-2")

    context.close()
    context.close()

    assert not sampler.running
    assert context.samplers == {}
    handle = context.logging_handle
    assert handle is not None and handle.is_shutdown
    assert handle.log_path.parent == tmp_path.resolve() / "logs"
    events = [json.loads(line) for line in handle.log_path.read_text(encoding="utf-8").splitlines()]
    started = [event for event in events if event["message"] == "usage_session_started"]
    assert started and started[0]["session_id"] == context.session_id
