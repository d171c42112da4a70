"""
agent-foreman: ticket parsing

File: src/agent_foreman/dispatch/tickets.py

Purpose
- Turn free text, ticket files and structured JSON into immutable ``Ticket``
  records.

Functional requirements
- Free-text markers: ``TICKET-n:``, ``ticket-n:``, ``#n:``, ``TICKET-<word>:``
  and bulleted ``- TICKET-n:``. ``#n`` markers are normalized to ``TICKET-n``.
- Ticket ids are upper-cased and must be unique within one input.
- Lines containing ``depends on:`` or ``dependencies:`` contribute
  ``TICKET-...`` references; other lines starting with ``-`` or ``*`` become
  notes.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

_MARKER_RE: Final[re.Pattern[str]] = re.compile(
    r"^\s*[-*]\s*(?P<bullet>TICKET-[\w-]+):"
    r"|^\s*(?P<word>TICKET-[\w-]+):"
    r"|(?P<plain>TICKET-\d+|#\d+):",
    re.IGNORECASE,
)
_DEPENDENCY_RE: Final[re.Pattern[str]] = re.compile(r"TICKET-[\w-]+", re.IGNORECASE)
_DEPENDENCY_LINE_MARKERS: Final[tuple[str, ...]] = ("depends on:", "dependencies:")
_TEXT_SUFFIXES: Final[frozenset[str]] = frozenset({".txt", ".md"})


class DispatchError(RuntimeError):
    """Base error for ticket dispatch failures."""


class TicketParseError(DispatchError, ValueError):
    """Raised when ticket input cannot be parsed."""


class UnknownTicketError(DispatchError, KeyError):
    """Raised when a ticket id has no assignment."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown ticket"


@dataclass(frozen=True, slots=True)
class Ticket:
    id: str
    description: str
    notes: tuple[str, ...] = field(default_factory=tuple)
    dependencies: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        normalized = normalize_ticket_id(self.id)
        if not normalized:
            raise TicketParseError("ticket id must not be empty")
        object.__setattr__(self, "id", normalized)
        object.__setattr__(self, "notes", tuple(self.notes))
        object.__setattr__(
            self, "dependencies", tuple(normalize_ticket_id(dep) for dep in self.dependencies)
        )

    @property
    def text(self) -> str:
        """Description and notes, the text classification runs over."""

        return " ".join((self.description, *self.notes))

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "description": self.description,
            "notes": list(self.notes),
            "dependencies": list(self.dependencies),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> Ticket:
        ticket_id = payload.get("id")
        if not isinstance(ticket_id, str) or not ticket_id.strip():
            raise TicketParseError(f"ticket object is missing an 'id': {dict(payload)!r}")
        description = payload.get("description", payload.get("title", ""))
        notes = payload.get("notes") or []
        dependencies = payload.get("dependencies") or []
        if not isinstance(notes, list) or not isinstance(dependencies, list):
            raise TicketParseError(f"ticket {ticket_id}: 'notes' and 'dependencies' must be lists")
        return cls(
            id=ticket_id,
            description=str(description).strip(),
            notes=tuple(str(note) for note in notes),
            dependencies=tuple(str(dep) for dep in dependencies),
        )


def normalize_ticket_id(raw: str) -> str:
    value = raw.strip().upper()
    if value.startswith("#"):
        value = f"TICKET-{value[1:]}"
    return value


def parse_ticket_text(content: str) -> list[Ticket]:
    tickets: list[Ticket] = []
    current: dict[str, object] | None = None

    for line in content.splitlines():
        match = _MARKER_RE.search(line)
        if match is not None:
            if current is not None:
                tickets.append(_ticket_from_draft(current))
            marker = match.group("bullet") or match.group("word") or match.group("plain")
            current = {
                "id": marker,
                "description": line[match.end() :].strip(),
                "notes": [],
                "dependencies": [],
            }
            continue
        stripped = line.strip()
        if current is None or not stripped:
            continue
        lowered = stripped.lower()
        if any(marker in lowered for marker in _DEPENDENCY_LINE_MARKERS):
            current["dependencies"].extend(  # type: ignore[attr-defined]
                dep.upper() for dep in _DEPENDENCY_RE.findall(stripped)
            )
        elif stripped.startswith(("-", "*")):
            current["notes"].append(stripped[1:].strip())  # type: ignore[attr-defined]

    if current is not None:
        tickets.append(_ticket_from_draft(current))
    return _ensure_unique(tickets)


def parse_structured(payload: object) -> list[Ticket]:
    """Parse a JSON list of ticket objects, or an object with a ``tickets`` list."""

    items: object = payload
    if isinstance(payload, Mapping):
        items = payload.get("tickets")
    if not isinstance(items, list):
        raise TicketParseError("structured ticket input must be a list or an object with a 'tickets' list")
    tickets: list[Ticket] = []
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            raise TicketParseError(f"tickets[{index}] must be an object")
        tickets.append(Ticket.from_payload(item))
    return _ensure_unique(tickets)


def parse_tickets(value: str | Path) -> list[Ticket]:
    """Parse a ticket file path, a JSON document or free text."""

    candidate = Path(value) if isinstance(value, Path) else _as_existing_path(value)
    if candidate is not None:
        try:
            content = candidate.read_text(encoding="utf-8")
        except OSError as exc:
            raise TicketParseError(f"unable to read ticket file {candidate}: {exc}") from exc
        if candidate.suffix.lower() == ".json":
            return parse_structured(_load_json(content, source=str(candidate)))
        return parse_ticket_text(content)

    text = str(value)
    if text.lstrip().startswith(("{", "[")):
        return parse_structured(_load_json(text, source="input"))
    return parse_ticket_text(text)


def _as_existing_path(value: str) -> Path | None:
    stripped = value.strip()
    if not stripped or "\n" in stripped or len(stripped) > 4096:
        return None
    path = Path(stripped).expanduser()
    if path.suffix.lower() in _TEXT_SUFFIXES | {".json"}:
        if not path.is_file():
            raise TicketParseError(f"ticket file not found: {path}")
        return path
    return None


def _load_json(text: str, *, source: str) -> object:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise TicketParseError(f"invalid JSON in {source}: {exc}") from exc


def _ticket_from_draft(draft: Mapping[str, object]) -> Ticket:
    return Ticket(
        id=str(draft["id"]),
        description=str(draft["description"]),
        notes=tuple(draft["notes"]),  # type: ignore[arg-type]
        dependencies=tuple(dict.fromkeys(draft["dependencies"])),  # type: ignore[arg-type]
    )


def _ensure_unique(tickets: Sequence[Ticket]) -> list[Ticket]:
    seen: set[str] = set()
    for ticket in tickets:
        if ticket.id in seen:
            raise TicketParseError(f"duplicate ticket id {ticket.id}")
        seen.add(ticket.id)
    return list(tickets)


__all__ = [
    "DispatchError",
    "Ticket",
    "TicketParseError",
    "UnknownTicketError",
    "normalize_ticket_id",
    "parse_structured",
    "parse_ticket_text",
    "parse_tickets",
]
