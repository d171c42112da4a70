"""Checkpointed retry with backoff and failure reporting."""

from agent_foreman.recovery.failure_recovery import (
    BranchOps,
    FailureRecovery,
    FailureReport,
    RecoveryCheckpoint,
    RecoveryError,
)

__all__ = ["BranchOps", "FailureRecovery", "FailureReport", "RecoveryCheckpoint", "RecoveryError"]
