"""
agent-foreman: human-oversight gate

File: src/agent_foreman/oversight/gate.py

Purpose
- Classify agent changesets, keep a priority-ordered review queue of the ones
  that need a human decision and record every decision in a capped approval
  log.

Functional requirements
- Classification rules run in a fixed order and the first match wins:
  critical, database migration, API breaking, large, dependency update,
  standard.
- Only checkpoint types that require approval enter the queue. The queue is
  sorted by priority descending with ties kept in insertion order.
- Approve and reject are terminal, one-way and idempotent. Rejection needs a
  reason.
- Auto-approval is a pull-based sweep; it approves entries with
  ``now >= expiresAt`` as ``auto-approval``.
- Critical checkpoints emit a ``critical_checkpoint`` warning event and run the
  configured notify command, if any.
"""

from __future__ import annotations

import json
import re
import secrets
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from pathlib import PurePosixPath
from types import MappingProxyType
from typing import Final, Literal

import structlog

from agent_foreman.constants import AUTO_APPROVAL_ACTOR, OVERSIGHT_DOCUMENT
from agent_foreman.integration.commands import run_command
from agent_foreman.persistence.documents import DocumentStore, Payload, append_capped
from agent_foreman.utils.clock import Clock, isoformat_z, parse_timestamp, system_clock
from agent_foreman.utils.rules import Rule, first_match

CheckpointStatus = Literal["pending", "approved", "rejected"]

DIFF_PREVIEW_LINES: Final[int] = 20
RECENT_ACTIVITY_COUNT: Final[int] = 10
DEPENDENCY_MANIFESTS: Final[frozenset[str]] = frozenset(
    {
        "package.json",
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "requirements.txt",
        "pyproject.toml",
        "poetry.lock",
        "Gemfile",
        "Gemfile.lock",
    }
)

logger = structlog.get_logger(__name__)


class OversightError(RuntimeError):
    """Base error for oversight gate failures."""


class UnknownCheckpointError(OversightError, KeyError):
    """Raised when a review checkpoint id is not in the checkpoint store."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown checkpoint"


class CheckpointType(StrEnum):
    CRITICAL_CHANGE = "critical_change"
    API_BREAKING_CHANGE = "api_breaking_change"
    DATABASE_MIGRATION = "database_migration"
    LARGE_CHANGE = "large_change"
    DEPENDENCY_UPDATE = "dependency_update"
    STANDARD = "standard"


@dataclass(frozen=True, slots=True)
class CheckpointPolicy:
    priority: int
    requires_approval: bool
    auto_approve_after: timedelta | None


# Standard changes are recorded for audit but never gated.
CHECKPOINT_POLICIES: Final[Mapping[CheckpointType, CheckpointPolicy]] = MappingProxyType(
    {
        CheckpointType.CRITICAL_CHANGE: CheckpointPolicy(100, True, None),
        CheckpointType.API_BREAKING_CHANGE: CheckpointPolicy(80, True, timedelta(hours=1)),
        CheckpointType.DATABASE_MIGRATION: CheckpointPolicy(70, True, timedelta(minutes=30)),
        CheckpointType.LARGE_CHANGE: CheckpointPolicy(50, True, timedelta(hours=1)),
        CheckpointType.DEPENDENCY_UPDATE: CheckpointPolicy(30, True, timedelta(minutes=10)),
        CheckpointType.STANDARD: CheckpointPolicy(10, False, None),
    }
)


@dataclass(frozen=True, slots=True)
class ChangedFile:
    path: str
    additions: int = 0
    deletions: int = 0
    content: str | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "path": self.path,
            "additions": self.additions,
            "deletions": self.deletions,
        }
        if self.content is not None:
            payload["content"] = self.content
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> ChangedFile:
        content = payload.get("content")
        return cls(
            path=str(payload["path"]),
            additions=int(payload.get("additions", 0) or 0),  # type: ignore[call-overload]
            deletions=int(payload.get("deletions", 0) or 0),  # type: ignore[call-overload]
            content=str(content) if content is not None else None,
        )


@dataclass(frozen=True, slots=True)
class Changeset:
    files: tuple[ChangedFile, ...]
    description: str = ""

    @property
    def total_lines(self) -> int:
        return sum(item.additions + item.deletions for item in self.files)

    def to_payload(self) -> dict[str, object]:
        return {"files": [item.to_payload() for item in self.files], "description": self.description}

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> Changeset:
        files = payload.get("files") or []
        return cls(
            files=tuple(ChangedFile.from_payload(item) for item in files),  # type: ignore[union-attr]
            description=str(payload.get("description", "") or ""),
        )


# Classification ------------------------------------------------------------

_CRITICAL_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"auth|security|payment|billing", re.IGNORECASE),
    re.compile(r"delete.*database|drop.*table", re.IGNORECASE),
    re.compile(r"api.*key|secret|password|token", re.IGNORECASE),
)
_MIGRATION_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"migration|schema.*change|alter.*table", re.IGNORECASE),
)
_BREAKING_PATTERN: Final[re.Pattern[str]] = re.compile(r"breaking.*change|deprecated|removed", re.IGNORECASE)


def _files_match(patterns: Sequence[re.Pattern[str]]) -> Callable[[Changeset], int]:
    def predicate(changeset: Changeset) -> int:
        return sum(
            1
            for item in changeset.files
            if any(p.search(item.path) or p.search(item.content or "") for p in patterns)
        )

    return predicate


def _description_breaking(changeset: Changeset) -> int:
    return 1 if _BREAKING_PATTERN.search(changeset.description) else 0


def _only_manifests(changeset: Changeset) -> int:
    names = [PurePosixPath(item.path).name for item in changeset.files]
    return 1 if names and all(name in DEPENDENCY_MANIFESTS for name in names) else 0


def classification_rules(large_change_threshold: int = 500) -> tuple[Rule[Changeset], ...]:
    """Ordered changeset rules; the weight is the checkpoint priority."""

    def is_large(changeset: Changeset) -> int:
        return 1 if changeset.total_lines > large_change_threshold else 0

    def rule(kind: CheckpointType, predicate: Callable[[Changeset], int]) -> Rule[Changeset]:
        return Rule(predicate, float(CHECKPOINT_POLICIES[kind].priority), kind.value)

    return (
        rule(CheckpointType.CRITICAL_CHANGE, _files_match(_CRITICAL_PATTERNS)),
        rule(CheckpointType.DATABASE_MIGRATION, _files_match(_MIGRATION_PATTERNS)),
        rule(CheckpointType.API_BREAKING_CHANGE, _description_breaking),
        rule(CheckpointType.LARGE_CHANGE, is_large),
        rule(CheckpointType.DEPENDENCY_UPDATE, _only_manifests),
    )


def classify_changeset(changeset: Changeset, *, large_change_threshold: int = 500) -> CheckpointType:
    matched = first_match(classification_rules(large_change_threshold), changeset)
    return CheckpointType(matched.label) if matched is not None else CheckpointType.STANDARD


# Records -------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ReviewComment:
    author: str
    text: str
    timestamp: str

    def to_payload(self) -> dict[str, object]:
        return {"author": self.author, "text": self.text, "timestamp": self.timestamp}


@dataclass(frozen=True, slots=True)
class ReviewCheckpoint:
    id: str
    agent_id: str
    task_id: str
    type: CheckpointType
    timestamp: str
    changeset: Changeset
    metadata: dict[str, object] = field(default_factory=dict)
    status: CheckpointStatus = "pending"
    approved_by: str | None = None
    approval_time: str | None = None
    reason: str | None = None
    comments: tuple[ReviewComment, ...] = ()

    @property
    def priority(self) -> int:
        return CHECKPOINT_POLICIES[self.type].priority

    @property
    def requires_approval(self) -> bool:
        return CHECKPOINT_POLICIES[self.type].requires_approval

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "taskId": self.task_id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "changeset": self.changeset.to_payload(),
            "metadata": dict(self.metadata),
            "status": self.status,
            "approvedBy": self.approved_by,
            "approvalTime": self.approval_time,
            "reason": self.reason,
            "comments": [comment.to_payload() for comment in self.comments],
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> ReviewCheckpoint:
        comments = payload.get("comments") or []
        return cls(
            id=str(payload["id"]),
            agent_id=str(payload["agentId"]),
            task_id=str(payload["taskId"]),
            type=CheckpointType(str(payload["type"])),
            timestamp=str(payload["timestamp"]),
            changeset=Changeset.from_payload(payload.get("changeset") or {}),  # type: ignore[arg-type]
            metadata=dict(payload.get("metadata") or {}),  # type: ignore[call-overload]
            status=payload.get("status", "pending"),  # type: ignore[arg-type]
            approved_by=_optional_str(payload.get("approvedBy")),
            approval_time=_optional_str(payload.get("approvalTime")),
            reason=_optional_str(payload.get("reason")),
            comments=tuple(
                ReviewComment(str(c["author"]), str(c["text"]), str(c["timestamp"]))
                for c in comments  # type: ignore[union-attr]
            ),
        )


@dataclass(frozen=True, slots=True)
class ReviewQueueEntry:
    checkpoint_id: str
    priority: int
    added_at: str
    expires_at: str | None
    notified: bool = False

    def to_payload(self) -> dict[str, object]:
        return {
            "checkpointId": self.checkpoint_id,
            "priority": self.priority,
            "addedAt": self.added_at,
            "expiresAt": self.expires_at,
            "notified": self.notified,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> ReviewQueueEntry:
        return cls(
            checkpoint_id=str(payload["checkpointId"]),
            priority=int(payload["priority"]),  # type: ignore[call-overload]
            added_at=str(payload["addedAt"]),
            expires_at=_optional_str(payload.get("expiresAt")),
            notified=bool(payload.get("notified", False)),
        )


@dataclass(frozen=True, slots=True)
class OversightReport:
    summary: dict[str, int]
    by_type: dict[str, int]
    recent_activity: list[dict[str, object]]
    critical_pending: list[dict[str, object]]

    def to_payload(self) -> dict[str, object]:
        return {
            "summary": self.summary,
            "byType": self.by_type,
            "recentActivity": self.recent_activity,
            "criticalPending": self.critical_pending,
        }


def _optional_str(value: object) -> str | None:
    return None if value is None else str(value)


def _empty_oversight() -> Payload:
    return {"checkpoints": [], "queue": [], "approvalLog": []}


def _sort_queue(queue: list[dict[str, object]]) -> None:
    queue.sort(key=lambda entry: -int(entry["priority"]))  # type: ignore[call-overload]


# Gate ----------------------------------------------------------------------


class OversightGate:
    """Review checkpoints, the priority queue over them and the approval log."""

    def __init__(
        self,
        store: DocumentStore,
        config: Mapping[str, object],
        *,
        clock: Clock = system_clock,
    ) -> None:
        self._store = store
        self._clock = clock
        self.large_change_threshold = int(config.get("large_change_threshold", 500))  # type: ignore[call-overload]
        self.approval_log_cap = int(config.get("approval_log_cap", 1000))  # type: ignore[call-overload]
        self.notify_command = str(config.get("notify_command", "") or "")

    def classify(self, changeset: Changeset) -> CheckpointType:
        return classify_changeset(changeset, large_change_threshold=self.large_change_threshold)

    def create_checkpoint(
        self,
        agent_id: str,
        task_id: str,
        changeset: Changeset,
        metadata: Mapping[str, object] | None = None,
    ) -> ReviewCheckpoint:
        now = self._clock()
        kind = self.classify(changeset)
        policy = CHECKPOINT_POLICIES[kind]
        checkpoint = ReviewCheckpoint(
            id=secrets.token_hex(8),
            agent_id=agent_id,
            task_id=task_id,
            type=kind,
            timestamp=isoformat_z(now),
            changeset=changeset,
            metadata=dict(metadata or {}),
        )
        entry: ReviewQueueEntry | None = None
        if policy.requires_approval:
            expires = now + policy.auto_approve_after if policy.auto_approve_after is not None else None
            entry = ReviewQueueEntry(
                checkpoint_id=checkpoint.id,
                priority=policy.priority,
                added_at=checkpoint.timestamp,
                expires_at=isoformat_z(expires) if expires is not None else None,
                notified=kind is CheckpointType.CRITICAL_CHANGE,
            )

        def mutate(payload: Payload) -> None:
            payload.setdefault("checkpoints", []).append(checkpoint.to_payload())
            if entry is not None:
                queue = payload.setdefault("queue", [])
                queue.append(entry.to_payload())
                _sort_queue(queue)

        self._store.update(OVERSIGHT_DOCUMENT, mutate, default_factory=_empty_oversight)
        logger.info(
            "review_checkpoint_created",
            checkpoint_id=checkpoint.id,
            agent_id=agent_id,
            ticket_id=task_id,
            checkpoint_type=kind.value,
            queued=entry is not None,
        )
        if kind is CheckpointType.CRITICAL_CHANGE:
            self._notify(checkpoint)
        return checkpoint

    def approve(self, checkpoint_id: str, actor: str, reason: str | None = None) -> ReviewCheckpoint:
        return self._decide(checkpoint_id, "approved", actor, reason)

    def reject(self, checkpoint_id: str, actor: str, reason: str | None = None) -> ReviewCheckpoint:
        if not reason or not reason.strip():
            raise OversightError("a rejection needs a reason")
        return self._decide(checkpoint_id, "rejected", actor, reason.strip())

    def _decide(
        self,
        checkpoint_id: str,
        status: CheckpointStatus,
        actor: str,
        reason: str | None,
    ) -> ReviewCheckpoint:
        timestamp = isoformat_z(self._clock())

        def mutate(payload: Payload) -> tuple[ReviewCheckpoint, bool]:
            record = _find_checkpoint(payload, checkpoint_id)
            current = str(record.get("status", "pending"))
            if current == status:
                return ReviewCheckpoint.from_payload(record), False
            if current != "pending":
                raise OversightError(f"checkpoint {checkpoint_id} is already {current}")
            record.update({"status": status, "approvedBy": actor, "approvalTime": timestamp, "reason": reason})
            payload["queue"] = [
                entry for entry in payload.get("queue", []) if entry.get("checkpointId") != checkpoint_id
            ]
            append_capped(
                payload.setdefault("approvalLog", []),
                {
                    "checkpointId": checkpoint_id,
                    "type": record.get("type"),
                    "status": status,
                    "approvedBy": actor,
                    "timestamp": timestamp,
                    "agentId": record.get("agentId"),
                    "taskId": record.get("taskId"),
                    "reason": reason,
                },
                self.approval_log_cap,
            )
            return ReviewCheckpoint.from_payload(record), True

        checkpoint, changed = self._store.update(OVERSIGHT_DOCUMENT, mutate, default_factory=_empty_oversight)
        if changed:
            logger.info(
                "review_checkpoint_decided",
                checkpoint_id=checkpoint_id,
                status=status,
                actor=actor,
                ticket_id=checkpoint.task_id,
            )
        return checkpoint

    def process_auto_approvals(self) -> int:
        """Approve every queued checkpoint whose ``expiresAt`` has passed."""

        now = self._clock()
        due = [
            entry.checkpoint_id
            for entry in self.queue()
            if entry.expires_at is not None and now >= parse_timestamp(entry.expires_at)
        ]
        approved = 0
        for checkpoint_id in due:
            # another process may decide or drop an entry between the read and the approve
            try:
                checkpoint = self.approve(checkpoint_id, AUTO_APPROVAL_ACTOR, "auto-approval timeout elapsed")
            except OversightError as exc:
                logger.warning("review_auto_approval_skipped", checkpoint_id=checkpoint_id, error=str(exc))
                continue
            if checkpoint.approved_by == AUTO_APPROVAL_ACTOR:
                approved += 1
        if approved:
            logger.info("review_auto_approvals_processed", count=approved)
        return approved

    def add_comment(self, checkpoint_id: str, author: str, text: str) -> ReviewCheckpoint:
        if not text.strip():
            raise OversightError("comment text must not be empty")
        comment = ReviewComment(author=author, text=text.strip(), timestamp=isoformat_z(self._clock()))

        def mutate(payload: Payload) -> ReviewCheckpoint:
            record = _find_checkpoint(payload, checkpoint_id)
            record.setdefault("comments", []).append(comment.to_payload())
            return ReviewCheckpoint.from_payload(record)

        return self._store.update(OVERSIGHT_DOCUMENT, mutate, default_factory=_empty_oversight)

    # Queries ------------------------------------------------------------

    def checkpoint(self, checkpoint_id: str) -> ReviewCheckpoint:
        payload = self._store.read(OVERSIGHT_DOCUMENT, _empty_oversight)
        return ReviewCheckpoint.from_payload(_find_checkpoint(payload, checkpoint_id))

    def checkpoints(self) -> list[ReviewCheckpoint]:
        payload = self._store.read(OVERSIGHT_DOCUMENT, _empty_oversight)
        return [ReviewCheckpoint.from_payload(item) for item in payload.get("checkpoints", [])]

    def queue(self) -> list[ReviewQueueEntry]:
        payload = self._store.read(OVERSIGHT_DOCUMENT, _empty_oversight)
        return [ReviewQueueEntry.from_payload(item) for item in payload.get("queue", [])]

    def approval_log(self) -> list[dict[str, object]]:
        payload = self._store.read(OVERSIGHT_DOCUMENT, _empty_oversight)
        return list(payload.get("approvalLog", []))

    def merge_blockers(self, task_id: str) -> list[ReviewCheckpoint]:
        """Checkpoints for ``task_id`` that still hold its merge: queued or rejected."""

        queued = {entry.checkpoint_id for entry in self.queue()}
        return [
            checkpoint
            for checkpoint in self.checkpoints()
            if checkpoint.task_id.upper() == task_id.upper()
            and (checkpoint.status == "rejected" or checkpoint.id in queued)
        ]

    def show_diff(self, checkpoint_id: str) -> str:
        checkpoint = self.checkpoint(checkpoint_id)
        lines: list[str] = []
        for item in checkpoint.changeset.files:
            lines.append(f"File: {item.path} (+{item.additions}/-{item.deletions})")
            if item.content:
                content_lines = item.content.splitlines()
                lines.extend(f"  {line}" for line in content_lines[:DIFF_PREVIEW_LINES])
                if len(content_lines) > DIFF_PREVIEW_LINES:
                    lines.append(f"  ... ({len(content_lines) - DIFF_PREVIEW_LINES} more lines)")
        return "\n".join(lines)

    def report(self) -> OversightReport:
        payload = self._store.read(OVERSIGHT_DOCUMENT, _empty_oversight)
        checkpoints = [ReviewCheckpoint.from_payload(item) for item in payload.get("checkpoints", [])]
        log = list(payload.get("approvalLog", []))
        by_type: dict[str, int] = {}
        for checkpoint in checkpoints:
            by_type[checkpoint.type.value] = by_type.get(checkpoint.type.value, 0) + 1
        summary = {
            "total": len(checkpoints),
            "pending": sum(1 for c in checkpoints if c.status == "pending"),
            "approved": sum(1 for c in checkpoints if c.status == "approved"),
            "rejected": sum(1 for c in checkpoints if c.status == "rejected"),
            "autoApproved": sum(1 for c in checkpoints if c.approved_by == AUTO_APPROVAL_ACTOR),
        }
        critical = [
            {"id": c.id, "agentId": c.agent_id, "taskId": c.task_id, "timestamp": c.timestamp}
            for c in checkpoints
            if c.status == "pending" and c.type is CheckpointType.CRITICAL_CHANGE
        ]
        return OversightReport(
            summary=summary,
            by_type=by_type,
            recent_activity=log[-RECENT_ACTIVITY_COUNT:],
            critical_pending=critical,
        )

    # Notification -------------------------------------------------------

    def _notify(self, checkpoint: ReviewCheckpoint) -> None:
        logger.warning(
            "critical_checkpoint",
            checkpoint_id=checkpoint.id,
            agent_id=checkpoint.agent_id,
            ticket_id=checkpoint.task_id,
            files=[item.path for item in checkpoint.changeset.files],
        )
        if not self.notify_command:
            return
        result = run_command(
            self.notify_command,
            cwd=".",
            env_overrides={
                "FOREMAN_CHECKPOINT_ID": checkpoint.id,
                "FOREMAN_CHECKPOINT_TYPE": checkpoint.type.value,
                "FOREMAN_AGENT_ID": checkpoint.agent_id,
                "FOREMAN_TASK_ID": checkpoint.task_id,
            },
            input_text=json.dumps(checkpoint.to_payload()),
            timeout_seconds=30.0,
        )
        if not result.ok:
            logger.warning(
                "critical_checkpoint_notify_failed",
                checkpoint_id=checkpoint.id,
                returncode=result.returncode,
                timed_out=result.timed_out,
                stderr=result.stderr.strip()[:500],
            )


def _find_checkpoint(payload: Payload, checkpoint_id: str) -> dict[str, object]:
    for record in payload.get("checkpoints", []):
        if record.get("id") == checkpoint_id:
            return record  # type: ignore[no-any-return]
    raise UnknownCheckpointError(f"checkpoint {checkpoint_id} not found")


__all__ = [
    "CHECKPOINT_POLICIES",
    "DEPENDENCY_MANIFESTS",
    "ChangedFile",
    "Changeset",
    "CheckpointPolicy",
    "CheckpointStatus",
    "CheckpointType",
    "OversightError",
    "OversightGate",
    "OversightReport",
    "ReviewCheckpoint",
    "ReviewComment",
    "ReviewQueueEntry",
    "UnknownCheckpointError",
    "classification_rules",
    "classify_changeset",
]
