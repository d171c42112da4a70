"""Persistence layer: SQLite state DB and versioned documents."""

from __future__ import annotations

from agent_foreman.persistence.documents import DocumentStore, StaleDocumentError, VersionedDocument
from agent_foreman.persistence.state_db import StateDB, StateDBError

__all__ = [
    "DocumentStore",
    "StaleDocumentError",
    "StateDB",
    "StateDBError",
    "VersionedDocument",
]
