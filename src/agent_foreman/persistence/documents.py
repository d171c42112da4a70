"""
agent-foreman

File: src/agent_foreman/persistence/documents.py

Purpose
- Versioned JSON documents on top of ``StateDB``. Each foreman concern
  (dispatcher, recovery, oversight, usage, validation, workflow runs) owns one
  logical document.

Functional requirements
- Writes are compare-and-swap on the document version; a lost race raises
  ``StaleDocumentError`` instead of silently overwriting another process.
- ``update`` re-reads and re-applies the mutation on conflict, up to a bounded
  number of attempts.
- A reloaded payload is deep-equal to the payload that was written.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Final, TypeVar

import structlog

from agent_foreman.persistence.state_db import StateDB, StateDBError, _utc_now_iso, canonical_json

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
Payload = dict[str, object]
T = TypeVar("T")

DEFAULT_UPDATE_ATTEMPTS: Final[int] = 8

logger = structlog.get_logger(__name__)


class StaleDocumentError(StateDBError):
    """Raised when a document changed between read and compare-and-swap write."""

    def __init__(self, name: str, expected_version: int, actual_version: int) -> None:
        self.name = name
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"document {name!r} is stale: expected version {expected_version}, "
            f"found {actual_version}"
        )


@dataclass(frozen=True, slots=True)
class VersionedDocument:
    """Snapshot of one document. Version 0 means the document does not exist yet."""

    name: str
    version: int
    payload: Payload
    updated_at: str | None = None

    @property
    def exists(self) -> bool:
        return self.version > 0


class DocumentStore:
    """Optimistic-concurrency document store backed by the ``documents`` table."""

    def __init__(self, db: StateDB, *, max_update_attempts: int = DEFAULT_UPDATE_ATTEMPTS) -> None:
        if max_update_attempts < 1:
            raise ValueError("max_update_attempts must be >= 1")
        self._db = db
        self._max_update_attempts = max_update_attempts
        self._db.migrate()

    @property
    def db(self) -> StateDB:
        return self._db

    def load(self, name: str) -> VersionedDocument:
        _validate_name(name)
        row = self._db.query_one(
            "SELECT version, payload_json, updated_at FROM documents WHERE name = ?",
            (name,),
        )
        if row is None:
            return VersionedDocument(name=name, version=0, payload={})
        version = row["version"]
        payload_json = row["payload_json"]
        if not isinstance(version, int) or not isinstance(payload_json, str):
            raise StateDBError(f"documents row for {name!r} is malformed")
        payload = json.loads(payload_json)
        if not isinstance(payload, dict):
            raise StateDBError(f"document {name!r} payload must be a JSON object")
        updated_at = row["updated_at"]
        return VersionedDocument(
            name=name,
            version=version,
            payload=payload,
            updated_at=updated_at if isinstance(updated_at, str) else None,
        )

    def read(self, name: str, default_factory: Callable[[], Payload] | None = None) -> Payload:
        """Return a detached copy of the payload, or the default for a missing document."""

        document = self.load(name)
        if not document.exists and default_factory is not None:
            return default_factory()
        return copy.deepcopy(document.payload)

    def save(self, name: str, payload: Mapping[str, object], *, expected_version: int) -> int:
        """Compare-and-swap write. Returns the new version."""

        _validate_name(name)
        if expected_version < 0:
            raise ValueError("expected_version must be >= 0")
        payload_json = canonical_json(dict(payload))
        now = _utc_now_iso()

        with self._db.transaction(immediate=True) as tx:
            if expected_version == 0:
                inserted = self._db.execute(
                    """
                    INSERT INTO documents (name, version, payload_json, created_at, updated_at)
                    VALUES (?, 1, ?, ?, ?)
                    ON CONFLICT(name) DO NOTHING
                    """,
                    (name, payload_json, now, now),
                    conn=tx,
                )
                if inserted == 1:
                    return 1
            else:
                updated = self._db.execute(
                    """
                    UPDATE documents
                    SET version = version + 1, payload_json = ?, updated_at = ?
                    WHERE name = ? AND version = ?
                    """,
                    (payload_json, now, name, expected_version),
                    conn=tx,
                )
                if updated == 1:
                    return expected_version + 1

            row = self._db.query_one(
                "SELECT version FROM documents WHERE name = ?",
                (name,),
                conn=tx,
            )
        actual = row["version"] if row is not None and isinstance(row["version"], int) else 0
        raise StaleDocumentError(name, expected_version, actual)

    def update(
        self,
        name: str,
        mutator: Callable[[Payload], T],
        *,
        default_factory: Callable[[], Payload] = dict,
    ) -> T:
        """Read-modify-write with optimistic retry.

        ``mutator`` receives a mutable copy of the current payload (or of
        ``default_factory()`` when the document is missing) and may change it in
        place. Its return value is passed back to the caller once the write wins.
        The mutator can run more than once, so it must not have side effects
        outside the payload.
        """

        last_error: StaleDocumentError | None = None
        for attempt in range(1, self._max_update_attempts + 1):
            document = self.load(name)
            payload = copy.deepcopy(document.payload) if document.exists else default_factory()
            result = mutator(payload)
            try:
                self.save(name, payload, expected_version=document.version)
            except StaleDocumentError as exc:
                last_error = exc
                logger.debug(
                    "document_update_conflict",
                    document=name,
                    attempt=attempt,
                    expected_version=exc.expected_version,
                    actual_version=exc.actual_version,
                )
                continue
            return result
        assert last_error is not None
        raise last_error

    def delete(self, name: str) -> bool:
        _validate_name(name)
        return self._db.execute("DELETE FROM documents WHERE name = ?", (name,)) > 0

    def names(self) -> list[str]:
        rows = self._db.query_all("SELECT name FROM documents ORDER BY name ASC")
        return [str(row["name"]) for row in rows]


def _validate_name(name: str) -> None:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("document name must be a non-empty string")


def append_capped(items: list[T], item: T, cap: int) -> list[T]:
    """Append ``item`` and evict the oldest entries beyond ``cap``."""

    if cap < 1:
        raise ValueError("cap must be >= 1")
    items.append(item)
    overflow = len(items) - cap
    if overflow > 0:
        del items[:overflow]
    return items


__all__ = [
    "DEFAULT_UPDATE_ATTEMPTS",
    "DocumentStore",
    "JSONValue",
    "Payload",
    "StaleDocumentError",
    "VersionedDocument",
    "append_capped",
]
