"""Producer-backed agent runs: generation, repair, commit, review checkpoint and usage tracking."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from agent_foreman.dispatch.dispatcher import Dispatcher
from agent_foreman.dispatch.tickets import Ticket
from agent_foreman.integration.git_engine import GitEngine
from agent_foreman.oversight.gate import CheckpointType, OversightGate
from agent_foreman.persistence.documents import DocumentStore
from agent_foreman.producer.base import ProducerError, ProducerResult
from agent_foreman.recovery.failure_recovery import FailureRecovery
from agent_foreman.resources.governor import ResourceGovernor
from agent_foreman.resources.sampler import ProcessSample, SessionSampler, _CpuTicks
from agent_foreman.utils.clock import FrozenClock
from agent_foreman.validation.layer import ValidationLayer
from agent_foreman.workflow.agent_runner import AgentRunner, companion_test_path, infer_target_files

if TYPE_CHECKING:
    from conftest import GitSandbox, StaticProducer

SERVICE = Ticket("TICKET-5", "Add orders service")


class FailingProducer:
    def __init__(self) -> None:
        self.calls = 0

    def generate(self, role: str, instructions: str, *, model: str | None = None) -> ProducerResult:
        self.calls += 1
        raise ProducerError("upstream returned 502", provider="test")


@pytest.fixture
def dispatcher(document_store: DocumentStore, tmp_path: Path, frozen_clock: FrozenClock) -> Dispatcher:
    return Dispatcher(document_store, task_dir=tmp_path / ".agent-tasks", clock=frozen_clock)


@pytest.fixture
def governor(document_store: DocumentStore, frozen_clock: FrozenClock) -> ResourceGovernor:
    return ResourceGovernor(document_store, {}, clock=frozen_clock)


def _runner(
    sandbox: GitSandbox,
    store: DocumentStore,
    dispatcher: Dispatcher,
    producer: object,
    **kwargs: object,
) -> AgentRunner:
    validation = ValidationLayer(store, {"run_external_tools": False}, project_root=sandbox.work)
    return AgentRunner(GitEngine(sandbox.work), dispatcher, producer, validation, **kwargs)  # type: ignore[arg-type]


def test_run_generates_commits_and_opens_a_checkpoint(
    git_sandbox: GitSandbox,
    document_store: DocumentStore,
    dispatcher: Dispatcher,
    governor: ResourceGovernor,
    static_producer: StaticProducer,
    frozen_clock: FrozenClock,
) -> None:
    static_producer.replies.extend(
        [
            "```ts\n/** Orders. */\nexport const orders = [];\n```",
            "test('orders', () => {});\n",
        ]
    )
    (assignment,) = dispatcher.assign([SERVICE], {"TICKET-5": "backend"})
    gate = OversightGate(document_store, {}, clock=frozen_clock)
    runner = _runner(git_sandbox, document_store, dispatcher, static_producer, governor=governor, oversight=gate)

    result = runner.run("TICKET-5")

    assert result.branch == "feature/backend/5"
    assert [item.path for item in result.files] == ["src/lib/services/ticket-5.ts"]
    assert result.files[0].valid is True
    assert result.files[0].test_path == "src/lib/services/ticket-5.test.ts"
    source = git_sandbox.work / "src/lib/services/ticket-5.ts"
    assert source.read_text(encoding="utf-8") == "/** Orders. */\nexport const orders = [];\n"
    assert git_sandbox.run(git_sandbox.work, "log", "-1", "--format=%s").strip() == (
        "feat(TICKET-5): Add orders service"
    )
    assert git_sandbox.run(git_sandbox.work, "rev-parse", "--abbrev-ref", "HEAD").strip() == "feature/backend/5"
    assert "feature/backend/5" in git_sandbox.remote_branches()

    assert [call[0] for call in static_producer.calls] == ["backend", "backend"]
    assert static_producer.calls[0][2] == assignment.suggested_model
    assert "Generate production-ready code for: src/lib/services/ticket-5.ts" in static_producer.calls[0][1]
    assert "src/lib/services/ticket-5.test.ts" in static_producer.calls[1][1]

    checkpoint = gate.checkpoint(result.checkpoint_id or "")
    assert checkpoint.task_id == "TICKET-5"
    assert checkpoint.metadata["commit"] == result.commit
    assert sorted(item.path for item in checkpoint.changeset.files) == [
        "src/lib/services/ticket-5.test.ts",
        "src/lib/services/ticket-5.ts",
    ]

    assert dispatcher.assignment("TICKET-5").status == "completed"
    session = governor.session(result.session_id or "")
    assert session["status"] == "completed"
    assert session["tokens"] == {"input": 240, "output": 160}
    assert result.usage == {"inputTokens": 240, "outputTokens": 160, "calls": 2}


def test_invalid_artifact_gets_one_repair_attempt(
    git_sandbox: GitSandbox,
    document_store: DocumentStore,
    dispatcher: Dispatcher,
    static_producer: StaticProducer,
) -> None:
    static_producer.replies.extend(
        [
            'const password = "hunter2hunter2";\nexport default password;\n',
            "export const password = process.env.DB_PASSWORD;\n",
            "test('password', () => {});\n",
        ]
    )
    dispatcher.assign([SERVICE], {"TICKET-5": "backend"})

    result = _runner(git_sandbox, document_store, dispatcher, static_producer).run("TICKET-5")

    generated = result.files[0]
    assert generated.repaired is True
    assert generated.valid is True
    assert "- [security] Potential hardcoded secret" in static_producer.calls[1][1]
    written = (git_sandbox.work / generated.path).read_text(encoding="utf-8")
    assert written == "export const password = process.env.DB_PASSWORD;\n"
    assert result.checkpoint_id is None


def test_sensitive_content_below_the_preview_is_still_critical(
    git_sandbox: GitSandbox,
    document_store: DocumentStore,
    dispatcher: Dispatcher,
    static_producer: StaticProducer,
    frozen_clock: FrozenClock,
) -> None:
    filler = "".join(f"export const filler{n} = {n};\n" for n in range(31))
    static_producer.replies.extend(
        [
            filler + "export const dbPassword = process.env.DB_PASSWORD;\n",
            "test('orders', () => {});\n",
        ]
    )
    dispatcher.assign([SERVICE], {"TICKET-5": "backend"})
    gate = OversightGate(document_store, {}, clock=frozen_clock)

    result = _runner(git_sandbox, document_store, dispatcher, static_producer, oversight=gate).run("TICKET-5")

    checkpoint = gate.checkpoint(result.checkpoint_id or "")
    assert checkpoint.type is CheckpointType.CRITICAL_CHANGE
    assert [entry.checkpoint_id for entry in gate.queue()] == [checkpoint.id]
    assert [item.id for item in gate.merge_blockers("TICKET-5")] == [checkpoint.id]
    source = next(item for item in checkpoint.changeset.files if item.path == "src/lib/services/ticket-5.ts")
    assert source.content is not None and "dbPassword" in source.content
    diff = gate.show_diff(checkpoint.id)
    assert "... (12 more lines)" in diff
    assert "dbPassword" not in diff


def test_session_sampler_feeds_process_limits_and_is_released(
    git_sandbox: GitSandbox,
    document_store: DocumentStore,
    dispatcher: Dispatcher,
    static_producer: StaticProducer,
    frozen_clock: FrozenClock,
) -> None:
    def heavy(*, previous_ticks: _CpuTicks | None, clock: FrozenClock) -> tuple[ProcessSample, _CpuTicks]:
        return ProcessSample(clock(), 95.0, 6 * 1024**3, 8 * 1024**3, 70.0), _CpuTicks(0.0, 1.0)

    samplers: dict[str, SessionSampler] = {}

    def sampler_for(session_id: str) -> SessionSampler:
        sampler = SessionSampler(session_id, interval_seconds=60.0, retention=4, clock=frozen_clock, reader=heavy)
        sampler.sample_once()
        samplers[session_id] = sampler
        return sampler

    governor = ResourceGovernor(document_store, {"max_memory_gb": 4.0, "max_cpu_percent": 80.0}, clock=frozen_clock)
    dispatcher.assign([SERVICE], {"TICKET-5": "backend"})
    runner = _runner(
        git_sandbox,
        document_store,
        dispatcher,
        static_producer,
        governor=governor,
        sampler_factory=sampler_for,
        sampler_release=samplers.pop,
    )

    result = runner.run("TICKET-5")

    assert samplers == {}
    assert sorted(alert["type"] for alert in governor.alerts()) == ["cpu_limit", "memory_limit"]
    session = governor.session(result.session_id or "")
    assert session["samples"] and session["samples"][-1]["rssBytes"] == 6 * 1024**3  # type: ignore[index]


def test_explicit_files_skip_inference_and_tests_for_non_code(
    git_sandbox: GitSandbox,
    document_store: DocumentStore,
    dispatcher: Dispatcher,
    static_producer: StaticProducer,
) -> None:
    static_producer.fallback = "model Order {\n  id Int @id\n}\n"
    dispatcher.assign([Ticket("TICKET-8", "Add orders schema")], {"TICKET-8": "database"})

    result = _runner(git_sandbox, document_store, dispatcher, static_producer).run(
        "TICKET-8", files=["prisma/schema.prisma"]
    )

    assert result.files[0].test_path is None
    assert len(static_producer.calls) == 1
    assert result.commit is not None


def test_failures_are_retried_then_raised_and_the_session_is_closed(
    git_sandbox: GitSandbox,
    document_store: DocumentStore,
    dispatcher: Dispatcher,
    governor: ResourceGovernor,
    frozen_clock: FrozenClock,
) -> None:
    producer = FailingProducer()
    recovery = FailureRecovery(
        document_store,
        {"max_retries": 2, "base_delay_ms": 1},
        clock=frozen_clock,
        sleep=frozen_clock.sleep,
    )
    dispatcher.assign([SERVICE], {"TICKET-5": "backend"})
    runner = _runner(git_sandbox, document_store, dispatcher, producer, governor=governor, recovery=recovery)

    with pytest.raises(ProducerError, match="upstream returned 502"):
        runner.run("TICKET-5")

    assert producer.calls == 2
    assert dispatcher.assignment("TICKET-5").status == "in_progress"
    assert governor.current_usage()["activeSessions"] == 0


@pytest.mark.parametrize(
    ("description", "role", "expected"),
    [
        ("Build checkout button component", "frontend", ["src/components/button.tsx"]),
        ("Create settings page", "frontend", ["src/app/settings/page.tsx"]),
        ("Improve chat prompt suggestions", "frontend", [
            "src/components/chat/ChatInterface.tsx",
            "src/components/chat/PromptSuggestions.tsx",
        ]),
        ("Restyle header", "frontend", ["src/components/ticket-9.tsx"]),
        ("Add users endpoint and mail service", "backend", [
            "src/app/api/users/route.ts",
            "src/lib/services/ticket-9.ts",
        ]),
        ("Orders model with migration", "database", [
            "prisma/schema.prisma",
            "prisma/migrations/ticket-9/migration.sql",
        ]),
        ("Wire webhook retries", "integration", ["src/integration/ticket-9.ts"]),
    ],
)
def test_target_file_inference(description: str, role: str, expected: list[str]) -> None:
    assert infer_target_files(Ticket("TICKET-9", description), role) == expected


def test_companion_test_paths() -> None:
    assert companion_test_path("src/components/Nav.tsx") == "src/components/Nav.test.tsx"
    assert companion_test_path("src/lib/util.js") == "src/lib/util.test.js"
    assert companion_test_path("tools/report.py") == "tools/test_report.py"
    assert companion_test_path("src/lib/util.test.ts") is None
    assert companion_test_path("prisma/schema.prisma") is None
