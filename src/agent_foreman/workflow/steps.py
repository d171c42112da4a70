"""
agent-foreman: workflow catalogue and run records

File: src/agent_foreman/workflow/steps.py

Purpose
- Name every integration step as a ``StepKind`` and map workflow names to the
  ordered steps they run.
- Define the persisted ``WorkflowRun`` record and its per-step results.

Functional requirements
- Workflow names resolve to tuples of ``StepKind``; unknown names raise
  ``UnknownWorkflowError``.
- Step results are append-only: a step name is recorded at most once per run.
- Branches order by dependency tier (database, backend, integration,
  frontend); branches without a known tier go last, and ties keep their
  original order.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Final, Literal

from agent_foreman.constants import AGENT_ROLES, INTEGRATION_TIER_ORDER

StepStatus = Literal["completed", "failed", "skipped"]
RunStatus = Literal["running", "completed", "failed"]

ROLLBACK_STEP: Final[str] = "rollback"
DEFAULT_WORKFLOW: Final[str] = "standardIntegration"


class WorkflowError(RuntimeError):
    """Base error for workflow engine failures."""


class UnknownWorkflowError(WorkflowError, KeyError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"unknown workflow {name!r}; expected one of {', '.join(WORKFLOWS)}")

    def __str__(self) -> str:
        return str(self.args[0])


class StepFailedError(WorkflowError):
    """Raised by a step handler when the step's failure must stop the run."""

    def __init__(self, step: str, message: str, *, details: Mapping[str, object] | None = None) -> None:
        self.step = step
        self.details = dict(details or {})
        super().__init__(f"{step}: {message}")


class StepKind(StrEnum):
    FETCH = "fetch"
    REVIEW = "review"
    VALIDATE_BOUNDARIES = "validate-boundaries"
    RUN_TESTS = "run-tests"
    CHECK_CONFLICTS = "check-conflicts"
    MERGE_TO_INTEGRATION = "merge-to-integration"
    VALIDATE_INTEGRATION = "validate-integration"
    PUSH_TO_MAIN = "push-to-main"
    COLLECT_READY_BRANCHES = "collect-ready-branches"
    ORDER_BY_DEPENDENCY = "order-by-dependency"
    SEQUENTIAL_INTEGRATION = "sequential-integration"
    FULL_REGRESSION = "full-regression"


WORKFLOWS: Final[Mapping[str, tuple[StepKind, ...]]] = MappingProxyType(
    {
        "standardIntegration": (
            StepKind.FETCH,
            StepKind.REVIEW,
            StepKind.VALIDATE_BOUNDARIES,
            StepKind.RUN_TESTS,
            StepKind.CHECK_CONFLICTS,
            StepKind.MERGE_TO_INTEGRATION,
            StepKind.VALIDATE_INTEGRATION,
            StepKind.PUSH_TO_MAIN,
        ),
        "sequentialIntegration": (
            StepKind.COLLECT_READY_BRANCHES,
            StepKind.ORDER_BY_DEPENDENCY,
            StepKind.SEQUENTIAL_INTEGRATION,
            StepKind.FULL_REGRESSION,
        ),
        "quickCheck": (
            StepKind.FETCH,
            StepKind.REVIEW,
            StepKind.VALIDATE_BOUNDARIES,
            StepKind.CHECK_CONFLICTS,
        ),
    }
)


def resolve_workflow(name: str) -> tuple[StepKind, ...]:
    try:
        return WORKFLOWS[name]
    except KeyError:
        raise UnknownWorkflowError(name) from None


def role_for_branch(branch: str) -> str | None:
    """``feature/<role>/<ticket>`` names carry the owning role; anything else has none."""

    parts = branch.split("/")
    if len(parts) >= 3 and parts[1] in AGENT_ROLES:
        return parts[1]
    return None


def ticket_for_branch(branch: str) -> str | None:
    parts = branch.split("/")
    if len(parts) < 3 or parts[1] not in AGENT_ROLES or not parts[-1]:
        return None
    tail = parts[-1].upper()
    return tail if tail.startswith("TICKET-") else f"TICKET-{tail}"


def order_by_tier(branches: Iterable[str]) -> list[str]:
    tiers = {role: index for index, role in enumerate(INTEGRATION_TIER_ORDER)}
    fallback = len(INTEGRATION_TIER_ORDER)
    return sorted(branches, key=lambda branch: tiers.get(role_for_branch(branch) or "", fallback))


@dataclass(frozen=True, slots=True)
class StepResult:
    status: StepStatus
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)
    error: str | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "status": self.status,
            "timestamp": self.timestamp,
            "details": self.details,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> StepResult:
        error = payload.get("error")
        details = payload.get("details")
        return cls(
            status=payload["status"],  # type: ignore[arg-type]
            timestamp=str(payload["timestamp"]),
            details=dict(details) if isinstance(details, Mapping) else {},
            error=None if error is None else str(error),
        )


@dataclass(slots=True)
class WorkflowRun:
    id: str
    workflow: str
    start_time: str
    status: RunStatus = "running"
    end_time: str | None = None
    step_results: dict[str, StepResult] = field(default_factory=dict)

    def record(self, step: str, result: StepResult) -> None:
        if step in self.step_results:
            raise WorkflowError(f"step {step!r} already recorded for run {self.id}")
        self.step_results[step] = result

    @property
    def failed_step(self) -> str | None:
        for name, result in self.step_results.items():
            if result.status == "failed" and name != ROLLBACK_STEP and result.error is not None:
                return name
        return None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.id,
            "workflow": self.workflow,
            "startTime": self.start_time,
            "status": self.status,
            "stepResults": {name: result.to_payload() for name, result in self.step_results.items()},
        }
        if self.end_time is not None:
            payload["endTime"] = self.end_time
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> WorkflowRun:
        raw_steps = payload.get("stepResults")
        steps = raw_steps if isinstance(raw_steps, Mapping) else {}
        end_time = payload.get("endTime")
        return cls(
            id=str(payload["id"]),
            workflow=str(payload["workflow"]),
            start_time=str(payload["startTime"]),
            status=payload.get("status", "running"),  # type: ignore[arg-type]
            end_time=None if end_time is None else str(end_time),
            step_results={str(name): StepResult.from_payload(item) for name, item in steps.items()},
        )


__all__ = [
    "DEFAULT_WORKFLOW",
    "ROLLBACK_STEP",
    "WORKFLOWS",
    "RunStatus",
    "StepFailedError",
    "StepKind",
    "StepResult",
    "StepStatus",
    "UnknownWorkflowError",
    "WorkflowError",
    "WorkflowRun",
    "order_by_tier",
    "resolve_workflow",
    "role_for_branch",
    "ticket_for_branch",
]
