"""
agent-foreman: failure recovery

File: src/agent_foreman/recovery/failure_recovery.py

Purpose
- Wrap retryable operations with a recovery checkpoint, bounded retries and
  exponential backoff.
- Keep a capped failure history and group it into a failure report.

Functional requirements
- One checkpoint is created before the first attempt and deleted exactly once,
  on the first success. After the last failed attempt it is left in place for
  inspection and only the age-based sweep removes it.
- The operation runs at most ``max_retries`` times. The delay before retry
  ``n`` is ``base_delay_ms * backoff_multiplier ** (n - 1)``.
- Recovery restores the branch and working directory, then merges missing
  environment variables back in without overwriting existing ones. Recovery
  failures are logged and never abort the retry loop.
- Captured environment values of secret-looking keys are redacted.
"""

from __future__ import annotations

import json
import os
import re
import secrets
import traceback
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Final, Protocol, TypeVar

import structlog

from agent_foreman.constants import RECOVERY_DOCUMENT
from agent_foreman.persistence.documents import DocumentStore, Payload, append_capped
from agent_foreman.utils.clock import Clock, Sleeper, isoformat_z, parse_timestamp, system_clock, system_sleep

T = TypeVar("T")

REDACTED_ENV_VALUE: Final[str] = "***"
UNKNOWN_BRANCH: Final[str] = "unknown"
_SECRET_ENV_RE: Final[re.Pattern[str]] = re.compile(r"(?i)(key|token|secret|password|credential)")

logger = structlog.get_logger(__name__)


class RecoveryError(RuntimeError):
    """Raised for checkpoint lookups and restore failures."""


class BranchOps(Protocol):
    def current_branch(self) -> str: ...

    def checkout(self, branch: str) -> None: ...


@dataclass(frozen=True, slots=True)
class RecoveryCheckpoint:
    id: str
    agent_id: str
    task_id: str
    timestamp: str
    data: dict[str, object]
    branch: str
    working_directory: str
    environment_snapshot: dict[str, str]

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "taskId": self.task_id,
            "timestamp": self.timestamp,
            "data": self.data,
            "branch": self.branch,
            "workingDirectory": self.working_directory,
            "environmentSnapshot": self.environment_snapshot,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> RecoveryCheckpoint:
        return cls(
            id=str(payload["id"]),
            agent_id=str(payload.get("agentId", "")),
            task_id=str(payload.get("taskId", "")),
            timestamp=str(payload.get("timestamp", "")),
            data=dict(payload.get("data") or {}),  # type: ignore[call-overload]
            branch=str(payload.get("branch", UNKNOWN_BRANCH)),
            working_directory=str(payload.get("workingDirectory", "")),
            environment_snapshot=dict(payload.get("environmentSnapshot") or {}),  # type: ignore[call-overload]
        )


@dataclass(frozen=True, slots=True)
class FailureGroup:
    message: str
    count: int
    last_occurrence: str
    agents: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class FailureReport:
    total_failures: int
    groups: tuple[FailureGroup, ...] = field(default_factory=tuple)

    @property
    def unique_errors(self) -> int:
        return len(self.groups)

    def to_payload(self) -> dict[str, object]:
        return {
            "totalFailures": self.total_failures,
            "uniqueErrors": self.unique_errors,
            "errorGroups": [
                {
                    "message": group.message,
                    "count": group.count,
                    "lastOccurrence": group.last_occurrence,
                    "agents": list(group.agents),
                }
                for group in self.groups
            ],
        }


@dataclass(slots=True)
class _GroupAccumulator:
    count: int = 0
    last_occurrence: str = ""
    agents: set[str] = field(default_factory=set)

    def add(self, agent_id: str, timestamp: str) -> None:
        self.count += 1
        self.agents.add(agent_id)
        if not self.last_occurrence or parse_timestamp(timestamp) > parse_timestamp(self.last_occurrence):
            self.last_occurrence = timestamp


def _empty_recovery() -> Payload:
    return {"agents": {}, "checkpoints": [], "failures": []}


class FailureRecovery:
    """Checkpoint plus bounded retry with exponential backoff."""

    def __init__(
        self,
        store: DocumentStore,
        config: Mapping[str, object],
        *,
        clock: Clock = system_clock,
        sleep: Sleeper = system_sleep,
        branch_ops: BranchOps | None = None,
        environ: MutableMapping[str, str] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._sleep = sleep
        self._branch_ops = branch_ops
        self._environ: MutableMapping[str, str] = os.environ if environ is None else environ
        self.max_retries = int(config.get("max_retries", 3))  # type: ignore[arg-type]
        self.backoff_multiplier = float(config.get("backoff_multiplier", 2.0))  # type: ignore[arg-type]
        self.base_delay_ms = int(config.get("base_delay_ms", 1000))  # type: ignore[arg-type]
        self.checkpoint_max_age_hours = float(config.get("checkpoint_max_age_hours", 24.0))  # type: ignore[arg-type]
        self.failure_history_cap = int(config.get("failure_history_cap", 100))  # type: ignore[arg-type]
        self.env_whitelist = tuple(config.get("env_whitelist", ("NODE_ENV", "PATH", "HOME", "CI")))  # type: ignore[arg-type]
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")

    def execute_with_recovery(
        self,
        agent_id: str,
        task_id: str,
        operation: Callable[[], T],
        context: Mapping[str, object] | None = None,
    ) -> T:
        checkpoint = self.create_checkpoint(agent_id, task_id, context or {})
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                result = operation()
            except Exception as exc:
                last_error = exc
                logger.error(
                    "operation_failed",
                    agent_id=agent_id,
                    ticket_id=task_id,
                    attempt=attempt,
                    max_retries=self.max_retries,
                    error=str(exc),
                )
                self.record_failure(agent_id, task_id, exc, attempt=attempt)
                if attempt >= self.max_retries:
                    break
                delay_ms = self.backoff_delay_ms(attempt)
                logger.info(
                    "operation_retry_scheduled",
                    agent_id=agent_id,
                    ticket_id=task_id,
                    delay_ms=delay_ms,
                    next_attempt=attempt + 1,
                )
                self._sleep(delay_ms / 1000.0)
                try:
                    self.recover_from_checkpoint(checkpoint.id)
                except (RecoveryError, OSError) as recovery_exc:
                    logger.error(
                        "checkpoint_recovery_failed",
                        checkpoint_id=checkpoint.id,
                        error=str(recovery_exc),
                    )
                continue

            self.delete_checkpoint(checkpoint.id)
            return result

        logger.error("retries_exhausted", agent_id=agent_id, ticket_id=task_id, checkpoint_id=checkpoint.id)
        assert last_error is not None
        raise last_error

    def backoff_delay_ms(self, attempt: int) -> float:
        return self.base_delay_ms * self.backoff_multiplier ** (attempt - 1)

    # Checkpoints ----------------------------------------------------------

    def create_checkpoint(
        self,
        agent_id: str,
        task_id: str,
        data: Mapping[str, object],
    ) -> RecoveryCheckpoint:
        checkpoint = RecoveryCheckpoint(
            id=secrets.token_hex(8),
            agent_id=agent_id,
            task_id=task_id,
            timestamp=isoformat_z(self._clock()),
            data=_jsonable(data),
            branch=self._current_branch(),
            working_directory=os.getcwd(),
            environment_snapshot=self.capture_environment(),
        )

        def mutate(payload: Payload) -> None:
            payload.setdefault("checkpoints", []).append(checkpoint.to_payload())  # type: ignore[union-attr]
            agents = payload.setdefault("agents", {})
            agents[agent_id] = {"lastTaskId": task_id, "lastCheckpointAt": checkpoint.timestamp}  # type: ignore[index]

        self._store.update(RECOVERY_DOCUMENT, mutate, default_factory=_empty_recovery)
        logger.info("checkpoint_created", checkpoint_id=checkpoint.id, agent_id=agent_id, ticket_id=task_id)
        return checkpoint

    def get_checkpoint(self, checkpoint_id: str) -> RecoveryCheckpoint:
        for item in self._load().get("checkpoints", []):  # type: ignore[union-attr]
            if item.get("id") == checkpoint_id:
                return RecoveryCheckpoint.from_payload(item)
        raise RecoveryError(f"checkpoint {checkpoint_id} not found")

    def list_checkpoints(self) -> list[RecoveryCheckpoint]:
        return [RecoveryCheckpoint.from_payload(item) for item in self._load().get("checkpoints", [])]  # type: ignore[union-attr]

    def recover_from_checkpoint(self, checkpoint_id: str) -> dict[str, object]:
        """Restore branch, directory and missing environment; return the checkpoint data."""

        checkpoint = self.get_checkpoint(checkpoint_id)
        if (
            self._branch_ops is not None
            and checkpoint.branch != UNKNOWN_BRANCH
            and checkpoint.branch != self._current_branch()
        ):
            logger.info("restoring_branch", checkpoint_id=checkpoint_id, branch=checkpoint.branch)
            try:
                self._branch_ops.checkout(checkpoint.branch)
            except Exception as exc:
                raise RecoveryError(f"unable to restore branch {checkpoint.branch}: {exc}") from exc

        if checkpoint.working_directory and Path(checkpoint.working_directory) != Path.cwd():
            os.chdir(checkpoint.working_directory)

        for key, value in checkpoint.environment_snapshot.items():
            if value != REDACTED_ENV_VALUE and not self._environ.get(key):
                self._environ[key] = value

        logger.info("checkpoint_recovered", checkpoint_id=checkpoint_id)
        return dict(checkpoint.data)

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        def mutate(payload: Payload) -> bool:
            checkpoints = payload.setdefault("checkpoints", [])
            kept = [item for item in checkpoints if item.get("id") != checkpoint_id]  # type: ignore[union-attr]
            payload["checkpoints"] = kept
            return len(kept) != len(checkpoints)  # type: ignore[arg-type]

        removed = self._store.update(RECOVERY_DOCUMENT, mutate, default_factory=_empty_recovery)
        if removed:
            logger.info("checkpoint_deleted", checkpoint_id=checkpoint_id)
        return removed

    def cleanup_old_checkpoints(self, max_age_hours: float | None = None) -> int:
        """Purge checkpoints older than ``max_age_hours``, whatever their outcome."""

        hours = self.checkpoint_max_age_hours if max_age_hours is None else max_age_hours
        cutoff = self._clock() - timedelta(hours=hours)

        def mutate(payload: Payload) -> int:
            checkpoints = payload.setdefault("checkpoints", [])
            kept = [
                item
                for item in checkpoints  # type: ignore[union-attr]
                if parse_timestamp(str(item.get("timestamp"))) >= cutoff
            ]
            payload["checkpoints"] = kept
            return len(checkpoints) - len(kept)  # type: ignore[arg-type]

        removed = self._store.update(RECOVERY_DOCUMENT, mutate, default_factory=_empty_recovery)
        logger.info("old_checkpoints_cleaned", removed=removed, max_age_hours=hours)
        return removed

    # Failures -------------------------------------------------------------

    def record_failure(self, agent_id: str, task_id: str, error: BaseException, *, attempt: int = 1) -> None:
        record = {
            "agentId": agent_id,
            "taskId": task_id,
            "timestamp": isoformat_z(self._clock()),
            "errorMessage": str(error) or type(error).__name__,
            "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
            "context": {
                "errorType": type(error).__name__,
                "attempt": attempt,
                "branch": self._current_branch(),
                "workingDirectory": os.getcwd(),
            },
        }

        def mutate(payload: Payload) -> None:
            failures = payload.setdefault("failures", [])
            append_capped(failures, record, self.failure_history_cap)  # type: ignore[arg-type]

        self._store.update(RECOVERY_DOCUMENT, mutate, default_factory=_empty_recovery)

    def failures(self, agent_id: str | None = None) -> list[dict[str, object]]:
        items = list(self._load().get("failures", []))  # type: ignore[call-overload]
        if agent_id is not None:
            items = [item for item in items if item.get("agentId") == agent_id]
        return items

    def failure_report(self, agent_id: str | None = None) -> FailureReport:
        """Group failures by message: count, most recent timestamp and distinct agents."""

        failures = self.failures(agent_id)
        grouped: dict[str, _GroupAccumulator] = {}
        for item in failures:
            message = str(item.get("errorMessage", ""))
            grouped.setdefault(message, _GroupAccumulator()).add(
                str(item.get("agentId")), str(item.get("timestamp", ""))
            )

        groups = tuple(
            FailureGroup(
                message=message,
                count=data.count,
                last_occurrence=data.last_occurrence,
                agents=tuple(sorted(data.agents)),
            )
            for message, data in grouped.items()
        )
        return FailureReport(total_failures=len(failures), groups=groups)

    # Helpers --------------------------------------------------------------

    def capture_environment(self) -> dict[str, str]:
        snapshot: dict[str, str] = {}
        for key in self.env_whitelist:
            value = self._environ.get(key)
            if value is None:
                continue
            snapshot[key] = REDACTED_ENV_VALUE if _SECRET_ENV_RE.search(key) else value
        return snapshot

    def _current_branch(self) -> str:
        if self._branch_ops is None:
            return UNKNOWN_BRANCH
        try:
            return self._branch_ops.current_branch() or UNKNOWN_BRANCH
        except Exception as exc:
            logger.debug("current_branch_unavailable", error=str(exc))
            return UNKNOWN_BRANCH

    def _load(self) -> Payload:
        return self._store.read(RECOVERY_DOCUMENT, _empty_recovery)


def _jsonable(data: Mapping[str, object]) -> dict[str, object]:
    return json.loads(json.dumps(dict(data), default=str))


__all__ = [
    "BranchOps",
    "FailureGroup",
    "FailureRecovery",
    "FailureReport",
    "REDACTED_ENV_VALUE",
    "RecoveryCheckpoint",
    "RecoveryError",
]
