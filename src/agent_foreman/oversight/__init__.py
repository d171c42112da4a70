"""Human-oversight gate: changeset classification, review queue and approvals."""

from agent_foreman.oversight.gate import (
    ChangedFile,
    Changeset,
    CheckpointType,
    OversightError,
    OversightGate,
    ReviewCheckpoint,
    ReviewQueueEntry,
    UnknownCheckpointError,
)
from agent_foreman.oversight.review import ReviewDecision, ReviewSession

__all__ = [
    "ChangedFile",
    "Changeset",
    "CheckpointType",
    "OversightError",
    "OversightGate",
    "ReviewCheckpoint",
    "ReviewDecision",
    "ReviewQueueEntry",
    "ReviewSession",
    "UnknownCheckpointError",
]
