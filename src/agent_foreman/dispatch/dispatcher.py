"""
agent-foreman: ticket dispatcher

File: src/agent_foreman/dispatch/dispatcher.py

Purpose
- Classify tickets, persist one assignment per ticket and write the agent task
  file an agent reads its instructions from.

Functional requirements
- Assignment is idempotent. An assigned ticket is only re-assigned when an
  explicit role override names a different role.
- Status moves forward only: assigned -> in_progress -> completed.
- Dependencies that are not completed mark a ticket as blocked. Blocking is
  reported, never enforced.
- All state lives in the ``dispatcher`` document; task files are derived and
  rewritten on every (re)assignment.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Literal

import structlog

from agent_foreman.constants import DISPATCHER_DOCUMENT, TASK_DIR
from agent_foreman.dispatch.roles import DEFAULT_ROLES, RoleSpec
from agent_foreman.dispatch.rules import Classification, classify, suggest_model
from agent_foreman.dispatch.tickets import (
    DispatchError,
    Ticket,
    UnknownTicketError,
    normalize_ticket_id,
    parse_tickets,
)
from agent_foreman.persistence.documents import DocumentStore, Payload
from agent_foreman.utils.clock import Clock, isoformat_z, system_clock
from agent_foreman.utils.fs import atomic_write

AssignmentStatus = Literal["assigned", "in_progress", "completed"]

_STATUS_ORDER: Final[dict[str, int]] = {"assigned": 0, "in_progress": 1, "completed": 2}

logger = structlog.get_logger(__name__)


def branch_name_for(role: str, ticket_id: str) -> str:
    """``feature/{role}/{id}`` with the id lower-cased and its ``ticket-`` prefix removed."""

    return f"feature/{role}/{ticket_id.lower().replace('ticket-', '', 1)}"


@dataclass(frozen=True, slots=True)
class TaskInstructions:
    allowed_paths: tuple[str, ...]
    excluded_paths: tuple[str, ...]
    guidelines: tuple[str, ...]
    suggested_model: str

    def to_payload(self) -> dict[str, object]:
        return {
            "allowedPaths": list(self.allowed_paths),
            "excludedPaths": list(self.excluded_paths),
            "guidelines": list(self.guidelines),
            "suggestedModel": self.suggested_model,
        }


@dataclass(frozen=True, slots=True)
class Assignment:
    ticket_id: str
    role: str
    branch_name: str
    status: AssignmentStatus
    assigned_at: str
    confidence: int = 0
    complexity: str = "medium"
    reasoning: tuple[str, ...] = ()
    suggested_model: str = ""
    completed_at: str | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "ticketId": self.ticket_id,
            "role": self.role,
            "branchName": self.branch_name,
            "status": self.status,
            "assignedAt": self.assigned_at,
            "confidence": self.confidence,
            "complexity": self.complexity,
            "reasoning": list(self.reasoning),
            "suggestedModel": self.suggested_model,
        }
        if self.completed_at is not None:
            payload["completedAt"] = self.completed_at
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> Assignment:
        completed_at = payload.get("completedAt")
        return cls(
            ticket_id=str(payload["ticketId"]),
            role=str(payload["role"]),
            branch_name=str(payload["branchName"]),
            status=payload.get("status", "assigned"),  # type: ignore[arg-type]
            assigned_at=str(payload.get("assignedAt", "")),
            confidence=int(payload.get("confidence", 0)),  # type: ignore[arg-type]
            complexity=str(payload.get("complexity", "medium")),
            reasoning=tuple(str(item) for item in payload.get("reasoning", []) or []),  # type: ignore[union-attr]
            suggested_model=str(payload.get("suggestedModel", "")),
            completed_at=str(completed_at) if completed_at else None,
        )


@dataclass(frozen=True, slots=True)
class AgentTask:
    """What an agent needs to start work: the ticket, its assignment and instructions."""

    ticket: Ticket
    assignment: Assignment
    instructions: TaskInstructions
    blocked_by: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, object]:
        return {
            "ticket": self.ticket.id,
            "agent": self.assignment.role,
            "branch": self.assignment.branch_name,
            "status": self.assignment.status,
            "description": self.ticket.description,
            "dependencies": list(self.ticket.dependencies),
            "notes": list(self.ticket.notes),
            "assignedAt": self.assignment.assigned_at,
            "blockedBy": list(self.blocked_by),
            "instructions": self.instructions.to_payload(),
        }


@dataclass(frozen=True, slots=True)
class DispatchStatus:
    by_role: dict[str, list[dict[str, object]]] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)
    completed_count: int = 0
    blocked: dict[str, list[str]] = field(default_factory=dict)

    def to_payload(self) -> dict[str, object]:
        return {
            "byRole": self.by_role,
            "byStatus": self.by_status,
            "completedCount": self.completed_count,
            "blocked": self.blocked,
        }


def _empty_dispatcher() -> Payload:
    return {"activeAssignments": {}, "completedTasks": [], "taskQueue": [], "tickets": {}}


class Dispatcher:
    """Classifies tickets and owns the persisted assignment table."""

    def __init__(
        self,
        store: DocumentStore,
        roles: Mapping[str, RoleSpec] | None = None,
        *,
        task_dir: Path = Path(str(TASK_DIR)),
        clock: Clock = system_clock,
    ) -> None:
        self._store = store
        self._roles = dict(roles if roles is not None else DEFAULT_ROLES)
        self._task_dir = task_dir
        self._clock = clock

    @property
    def roles(self) -> Mapping[str, RoleSpec]:
        return self._roles

    @property
    def task_dir(self) -> Path:
        return self._task_dir

    # Parsing and classification ------------------------------------------

    def parse(self, value: str | Path) -> list[Ticket]:
        return parse_tickets(value)

    def classify(self, ticket: Ticket) -> Classification:
        return classify(ticket)

    # Assignment ---------------------------------------------------------

    def assign(
        self,
        tickets: Sequence[Ticket],
        overrides: Mapping[str, str] | None = None,
    ) -> list[Assignment]:
        """Persist one assignment per ticket and return them in ticket order."""

        requested = {normalize_ticket_id(ticket_id): role for ticket_id, role in (overrides or {}).items()}
        for role in requested.values():
            if role not in self._roles:
                raise DispatchError(f"unknown role override {role!r}; expected one of {', '.join(self._roles)}")

        now = isoformat_z(self._clock())
        planned: dict[str, tuple[Ticket, Classification]] = {
            ticket.id: (ticket, self.classify(ticket)) for ticket in tickets
        }

        def mutate(payload: Payload) -> tuple[list[Assignment], list[str]]:
            active = payload.setdefault("activeAssignments", {})
            stored_tickets = payload.setdefault("tickets", {})
            queue = payload.setdefault("taskQueue", [])
            results: list[Assignment] = []
            changed: list[str] = []
            for ticket_id, (ticket, classification) in planned.items():
                existing = active.get(ticket_id)
                override = requested.get(ticket_id)
                if existing is not None and (override is None or override == existing.get("role")):
                    results.append(Assignment.from_payload(existing))
                    continue
                role = override or classification.role
                assignment = Assignment(
                    ticket_id=ticket_id,
                    role=role,
                    branch_name=branch_name_for(role, ticket_id),
                    status="assigned" if existing is None else existing.get("status", "assigned"),
                    assigned_at=now,
                    confidence=100 if override else classification.confidence,
                    complexity=classification.complexity,
                    reasoning=(
                        (f"Role overridden to {role}",) if override else classification.reasoning
                    ),
                    suggested_model=self._suggest_model(ticket, role, classification),
                )
                active[ticket_id] = assignment.to_payload()
                stored_tickets[ticket_id] = ticket.to_payload()
                if ticket_id not in queue:
                    queue.append(ticket_id)
                results.append(assignment)
                changed.append(ticket_id)
            return results, changed

        assignments, changed = self._store.update(
            DISPATCHER_DOCUMENT, mutate, default_factory=_empty_dispatcher
        )
        completed = set(self.completed_tasks())
        for assignment in assignments:
            ticket = planned[assignment.ticket_id][0]
            if assignment.ticket_id in changed:
                self._write_task_file(self._agent_task(ticket, assignment, completed))
                logger.info(
                    "ticket_assigned",
                    ticket_id=assignment.ticket_id,
                    role=assignment.role,
                    branch=assignment.branch_name,
                    confidence=assignment.confidence,
                )
            else:
                logger.debug("ticket_already_assigned", ticket_id=assignment.ticket_id, role=assignment.role)
        return assignments

    def start(self, ticket_id: str) -> Assignment:
        return self._transition(ticket_id, "in_progress")

    def complete(self, ticket_id: str) -> Assignment:
        return self._transition(ticket_id, "completed")

    def _transition(self, ticket_id: str, target: AssignmentStatus) -> Assignment:
        key = normalize_ticket_id(ticket_id)
        now = isoformat_z(self._clock())

        def mutate(payload: Payload) -> Assignment:
            active = payload.setdefault("activeAssignments", {})
            current = active.get(key)
            if current is None:
                raise UnknownTicketError(f"no assignment for ticket {key}")
            status = str(current.get("status", "assigned"))
            if _STATUS_ORDER[status] > _STATUS_ORDER[target]:
                raise DispatchError(f"ticket {key} is {status}; cannot move back to {target}")
            current["status"] = target
            if target == "completed":
                current.setdefault("completedAt", now)
                completed = payload.setdefault("completedTasks", [])
                if key not in completed:
                    completed.append(key)
                queue = payload.setdefault("taskQueue", [])
                if key in queue:
                    queue.remove(key)
            return Assignment.from_payload(current)

        assignment = self._store.update(DISPATCHER_DOCUMENT, mutate, default_factory=_empty_dispatcher)
        logger.info("ticket_status_changed", ticket_id=key, status=target, role=assignment.role)
        return assignment

    # Queries ------------------------------------------------------------

    def assignments(self) -> list[Assignment]:
        payload = self._store.read(DISPATCHER_DOCUMENT, _empty_dispatcher)
        return [Assignment.from_payload(item) for item in payload.get("activeAssignments", {}).values()]

    def assignment(self, ticket_id: str) -> Assignment:
        key = normalize_ticket_id(ticket_id)
        payload = self._store.read(DISPATCHER_DOCUMENT, _empty_dispatcher)
        raw = payload.get("activeAssignments", {}).get(key)
        if raw is None:
            raise UnknownTicketError(f"no assignment for ticket {key}")
        return Assignment.from_payload(raw)

    def ticket(self, ticket_id: str) -> Ticket:
        key = normalize_ticket_id(ticket_id)
        payload = self._store.read(DISPATCHER_DOCUMENT, _empty_dispatcher)
        raw = payload.get("tickets", {}).get(key)
        if raw is None:
            raise UnknownTicketError(f"unknown ticket {key}")
        return Ticket.from_payload(raw)

    def completed_tasks(self) -> list[str]:
        payload = self._store.read(DISPATCHER_DOCUMENT, _empty_dispatcher)
        return [str(item) for item in payload.get("completedTasks", [])]

    def blocked_by(self, ticket: Ticket, completed: Iterable[str] | None = None) -> tuple[str, ...]:
        done = set(self.completed_tasks() if completed is None else completed)
        return tuple(dep for dep in ticket.dependencies if dep not in done)

    def status(self) -> DispatchStatus:
        payload = self._store.read(DISPATCHER_DOCUMENT, _empty_dispatcher)
        completed = [str(item) for item in payload.get("completedTasks", [])]
        done = set(completed)
        tickets = payload.get("tickets", {})
        by_role: dict[str, list[dict[str, object]]] = {}
        by_status: dict[str, int] = {}
        blocked: dict[str, list[str]] = {}
        for raw in payload.get("activeAssignments", {}).values():
            assignment = Assignment.from_payload(raw)
            by_status[assignment.status] = by_status.get(assignment.status, 0) + 1
            if assignment.status == "completed":
                continue
            waiting: list[str] = []
            ticket_payload = tickets.get(assignment.ticket_id)
            if ticket_payload is not None:
                waiting = [dep for dep in Ticket.from_payload(ticket_payload).dependencies if dep not in done]
            if waiting:
                blocked[assignment.ticket_id] = waiting
            entry = assignment.to_payload()
            entry["blockedBy"] = waiting
            by_role.setdefault(assignment.role, []).append(entry)
        return DispatchStatus(
            by_role=by_role,
            by_status=by_status,
            completed_count=len(completed),
            blocked=blocked,
        )

    def agent_tasks(self, role: str) -> list[AgentTask]:
        """Open work for ``role``: every assignment that is not completed."""

        if role not in self._roles:
            raise DispatchError(f"unknown role {role!r}; expected one of {', '.join(self._roles)}")
        payload = self._store.read(DISPATCHER_DOCUMENT, _empty_dispatcher)
        done = {str(item) for item in payload.get("completedTasks", [])}
        tickets = payload.get("tickets", {})
        tasks: list[AgentTask] = []
        for raw in payload.get("activeAssignments", {}).values():
            assignment = Assignment.from_payload(raw)
            if assignment.role != role or assignment.status == "completed":
                continue
            ticket_payload = tickets.get(assignment.ticket_id)
            if ticket_payload is None:
                continue
            tasks.append(self._agent_task(Ticket.from_payload(ticket_payload), assignment, done))
        return tasks

    def agent_task(self, ticket_id: str) -> AgentTask:
        return self._agent_task(self.ticket(ticket_id), self.assignment(ticket_id), set(self.completed_tasks()))

    # Task files ---------------------------------------------------------

    def instructions_for(self, ticket: Ticket, assignment: Assignment) -> TaskInstructions:
        spec = self._roles[assignment.role]
        return TaskInstructions(
            allowed_paths=spec.working_paths,
            excluded_paths=spec.exclude_paths,
            guidelines=(
                f"Work only in: {', '.join(spec.working_paths)}",
                f"Do not modify: {', '.join(spec.exclude_paths)}",
                "Follow existing code patterns",
                "Write tests for new functionality",
                f"Commit format: feat({ticket.id}): description",
            ),
            suggested_model=assignment.suggested_model or spec.models.standard,
        )

    def task_file_path(self, ticket_id: str) -> Path:
        return self._task_dir / f"{normalize_ticket_id(ticket_id)}.json"

    def _agent_task(self, ticket: Ticket, assignment: Assignment, completed: set[str]) -> AgentTask:
        return AgentTask(
            ticket=ticket,
            assignment=assignment,
            instructions=self.instructions_for(ticket, assignment),
            blocked_by=self.blocked_by(ticket, completed),
        )

    def _write_task_file(self, task: AgentTask) -> Path:
        path = self.task_file_path(task.ticket.id)
        atomic_write(path, json.dumps(task.to_payload(), indent=2) + "\n")
        return path

    def _suggest_model(self, ticket: Ticket, role: str, classification: Classification) -> str:
        testing = self._roles.get("testing", DEFAULT_ROLES["testing"])
        return suggest_model(ticket, self._roles[role], classification.complexity, testing=testing)  # type: ignore[arg-type]


__all__ = [
    "AgentTask",
    "Assignment",
    "AssignmentStatus",
    "DispatchStatus",
    "Dispatcher",
    "TaskInstructions",
    "branch_name_for",
]
