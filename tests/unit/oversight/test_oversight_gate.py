"""Oversight gate: classification order, queue ordering, decisions and sweeps."""

from __future__ import annotations

import pytest

from agent_foreman.constants import OVERSIGHT_DOCUMENT
from agent_foreman.oversight.gate import (
    ChangedFile,
    Changeset,
    CheckpointType,
    OversightError,
    OversightGate,
    UnknownCheckpointError,
    classify_changeset,
)
from agent_foreman.persistence.documents import DocumentStore
from agent_foreman.utils.clock import FrozenClock

try:
    from hypothesis import HealthCheck, given, settings
    from hypothesis import strategies as st
except ModuleNotFoundError:
    _HYPOTHESIS_AVAILABLE = False
else:
    _HYPOTHESIS_AVAILABLE = True


def _gate(store: DocumentStore, clock: FrozenClock, **config: object) -> OversightGate:
    return OversightGate(store, {"large_change_threshold": 500, "approval_log_cap": 1000, **config}, clock=clock)


def _changes(*paths: str, lines: int = 10, description: str = "", content: str | None = None) -> Changeset:
    return Changeset(
        files=tuple(ChangedFile(path, additions=lines, deletions=0, content=content) for path in paths),
        description=description,
    )


CRITICAL = _changes("src/lib/auth/session.ts")
MIGRATION = _changes("prisma/migrations/0004_orders/migration.sql")
BREAKING = _changes("src/app/api/orders/route.ts", description="Breaking change: removed v1 fields")
LARGE = _changes("src/lib/reports/builder.ts", lines=600)
DEPENDENCY = _changes("package.json", "package-lock.json")
STANDARD = _changes("src/components/Banner.tsx")


@pytest.mark.parametrize(
    ("changeset", "expected"),
    [
        (CRITICAL, CheckpointType.CRITICAL_CHANGE),
        (MIGRATION, CheckpointType.DATABASE_MIGRATION),
        (BREAKING, CheckpointType.API_BREAKING_CHANGE),
        (LARGE, CheckpointType.LARGE_CHANGE),
        (DEPENDENCY, CheckpointType.DEPENDENCY_UPDATE),
        (STANDARD, CheckpointType.STANDARD),
        (_changes("package.json", "src/components/Banner.tsx"), CheckpointType.STANDARD),
    ],
)
def test_classification(changeset: Changeset, expected: CheckpointType) -> None:
    assert classify_changeset(changeset) is expected


def test_critical_path_wins_over_every_other_match() -> None:
    changeset = Changeset(
        files=(
            ChangedFile("src/lib/payment/charge.ts", additions=900),
            ChangedFile("prisma/migrations/0005/migration.sql", additions=10),
        ),
        description="Breaking change to the checkout API",
    )

    assert classify_changeset(changeset) is CheckpointType.CRITICAL_CHANGE


def test_critical_content_match() -> None:
    changeset = _changes("src/lib/reports/export.ts", content="const apiKey = process.env.REPORTS_KEY")

    assert classify_changeset(changeset) is CheckpointType.CRITICAL_CHANGE


def test_large_change_queues_and_auto_approves_after_an_hour(
    document_store: DocumentStore, frozen_clock: FrozenClock
) -> None:
    gate = _gate(document_store, frozen_clock)
    checkpoint = gate.create_checkpoint("backend", "TICKET-7", LARGE)

    assert checkpoint.type is CheckpointType.LARGE_CHANGE
    (entry,) = gate.queue()
    assert entry.priority == 50
    assert entry.expires_at == "2026-03-02T10:30:00.000000Z"

    frozen_clock.advance(minutes=59)
    assert gate.process_auto_approvals() == 0
    assert gate.checkpoint(checkpoint.id).status == "pending"

    frozen_clock.advance(minutes=1)
    assert gate.process_auto_approvals() == 1

    approved = gate.checkpoint(checkpoint.id)
    assert approved.status == "approved"
    assert approved.approved_by == "auto-approval"
    assert gate.queue() == []
    assert gate.approval_log()[-1]["approvedBy"] == "auto-approval"


def test_auto_approval_sweep_skips_entries_decided_or_dropped_elsewhere(
    document_store: DocumentStore, frozen_clock: FrozenClock
) -> None:
    gate = _gate(document_store, frozen_clock)
    decided, dropped, waiting = (gate.create_checkpoint("a", f"T-{n}", LARGE) for n in range(3))

    def stale_queue(payload: dict[str, object]) -> None:
        # queue entries survive while their checkpoints change underneath
        records = payload["checkpoints"]
        for record in records:  # type: ignore[attr-defined]
            if record["id"] == decided.id:
                record["status"] = "rejected"
        payload["checkpoints"] = [r for r in records if r["id"] != dropped.id]  # type: ignore[attr-defined]

    document_store.update(OVERSIGHT_DOCUMENT, stale_queue)
    frozen_clock.advance(hours=1)

    assert gate.process_auto_approvals() == 1
    assert gate.checkpoint(waiting.id).approved_by == "auto-approval"
    assert gate.checkpoint(decided.id).status == "rejected"
    assert [entry.checkpoint_id for entry in gate.queue()] == [decided.id, dropped.id]


def test_critical_checkpoints_never_expire(document_store: DocumentStore, frozen_clock: FrozenClock) -> None:
    gate = _gate(document_store, frozen_clock)
    checkpoint = gate.create_checkpoint("backend", "TICKET-8", CRITICAL)

    frozen_clock.advance(hours=72)

    assert gate.process_auto_approvals() == 0
    assert gate.queue()[0].checkpoint_id == checkpoint.id
    assert gate.queue()[0].notified is True
    assert gate.report().critical_pending[0]["id"] == checkpoint.id


def test_standard_changes_are_recorded_but_not_queued(
    document_store: DocumentStore, frozen_clock: FrozenClock
) -> None:
    gate = _gate(document_store, frozen_clock)
    checkpoint = gate.create_checkpoint("frontend", "TICKET-9", STANDARD)

    assert gate.queue() == []
    assert gate.checkpoint(checkpoint.id).status == "pending"
    assert gate.merge_blockers("TICKET-9") == []


def test_queue_orders_by_priority_then_insertion(document_store: DocumentStore, frozen_clock: FrozenClock) -> None:
    gate = _gate(document_store, frozen_clock)
    first_large = gate.create_checkpoint("a", "T-1", LARGE)
    dependency = gate.create_checkpoint("a", "T-2", DEPENDENCY)
    second_large = gate.create_checkpoint("a", "T-3", LARGE)
    critical = gate.create_checkpoint("a", "T-4", CRITICAL)

    assert [entry.checkpoint_id for entry in gate.queue()] == [
        critical.id,
        first_large.id,
        second_large.id,
        dependency.id,
    ]


def test_decisions_are_terminal_and_idempotent(document_store: DocumentStore, frozen_clock: FrozenClock) -> None:
    gate = _gate(document_store, frozen_clock)
    checkpoint = gate.create_checkpoint("database", "TICKET-4", MIGRATION)

    with pytest.raises(OversightError, match="needs a reason"):
        gate.reject(checkpoint.id, "reviewer", "  ")

    rejected = gate.reject(checkpoint.id, "reviewer", "drops a column still in use")
    again = gate.reject(checkpoint.id, "someone-else", "duplicate click")

    assert rejected.status == again.status == "rejected"
    assert again.approved_by == "reviewer"
    assert len(gate.approval_log()) == 1
    assert [c.id for c in gate.merge_blockers("ticket-4")] == [checkpoint.id]
    with pytest.raises(OversightError, match="already rejected"):
        gate.approve(checkpoint.id, "reviewer")


def test_approval_log_is_capped(document_store: DocumentStore, frozen_clock: FrozenClock) -> None:
    gate = _gate(document_store, frozen_clock, approval_log_cap=2)
    ids = [gate.create_checkpoint("a", f"T-{n}", DEPENDENCY).id for n in range(3)]

    for checkpoint_id in ids:
        gate.approve(checkpoint_id, "reviewer")

    assert [entry["checkpointId"] for entry in gate.approval_log()] == ids[1:]


def test_unknown_checkpoint(document_store: DocumentStore, frozen_clock: FrozenClock) -> None:
    gate = _gate(document_store, frozen_clock)

    with pytest.raises(UnknownCheckpointError):
        gate.approve("deadbeef", "reviewer")


def test_comments_diff_and_report(document_store: DocumentStore, frozen_clock: FrozenClock) -> None:
    gate = _gate(document_store, frozen_clock)
    content = "\n".join(f"line {n}" for n in range(30))
    checkpoint = gate.create_checkpoint(
        "frontend", "TICKET-2", _changes("src/components/Chart.tsx", lines=30, content=content, description="")
    )

    gate.add_comment(checkpoint.id, "reviewer", "looks fine")
    diff = gate.show_diff(checkpoint.id)

    assert gate.checkpoint(checkpoint.id).comments[0].text == "looks fine"
    assert diff.splitlines()[0] == "File: src/components/Chart.tsx (+30/-0)"
    assert "  line 19" in diff
    assert "  line 20" not in diff
    assert "(10 more lines)" in diff

    report = gate.report()
    assert report.summary == {"total": 1, "pending": 1, "approved": 0, "rejected": 0, "autoApproved": 0}
    assert report.by_type == {"standard": 1}


if _HYPOTHESIS_AVAILABLE:
    _KINDS = {
        "critical": CRITICAL,
        "breaking": BREAKING,
        "migration": MIGRATION,
        "large": LARGE,
        "dependency": DEPENDENCY,
    }

    @settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(kinds=st.lists(st.sampled_from(sorted(_KINDS)), min_size=1, max_size=8))
    def test_queue_is_always_sorted_by_priority(
        kinds: list[str], document_store: DocumentStore, frozen_clock: FrozenClock
    ) -> None:
        document_store.delete("oversight")
        gate = _gate(document_store, frozen_clock)

        for index, kind in enumerate(kinds):
            gate.create_checkpoint("agent", f"T-{index}", _KINDS[kind])

        priorities = [entry.priority for entry in gate.queue()]
        assert priorities == sorted(priorities, reverse=True)
        assert len(priorities) == len(kinds)

else:

    def test_queue_is_always_sorted_by_priority() -> None:
        pytest.skip("hypothesis is not installed")
