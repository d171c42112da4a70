"""Stable constants shared across foreman subsystems."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Git branch names.
DEFAULT_MAIN_BRANCH: Final[str] = "main"
DEFAULT_INTEGRATION_BRANCH: Final[str] = "integration"
DEFAULT_REMOTE: Final[str] = "origin"
DEFAULT_BRANCH_PREFIXES: Final[tuple[str, ...]] = ("feature/", "test/", "fix/")

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the repository root unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
TASK_DIR: Final[PurePosixPath] = PurePosixPath(".agent-tasks")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Logical document names in the state store.
DISPATCHER_DOCUMENT: Final[str] = "dispatcher"
RECOVERY_DOCUMENT: Final[str] = "recovery"
OVERSIGHT_DOCUMENT: Final[str] = "oversight"
USAGE_DOCUMENT: Final[str] = "usage"
VALIDATION_DOCUMENT: Final[str] = "validation"
WORKFLOW_RUNS_DOCUMENT: Final[str] = "workflow_runs"

# Agent roles, in integration dependency-tier order where relevant.
AGENT_ROLES: Final[tuple[str, ...]] = (
    "frontend",
    "backend",
    "database",
    "integration",
    "testing",
)
DEFAULT_ROLE: Final[str] = "backend"
INTEGRATION_TIER_ORDER: Final[tuple[str, ...]] = (
    "database",
    "backend",
    "integration",
    "frontend",
)

AUTO_APPROVAL_ACTOR: Final[str] = "auto-approval"
AUTOMATED_RESOLUTION_MESSAGE: Final[str] = "Automated conflict resolution"

__all__ = [
    "AGENT_ROLES",
    "AUTOMATED_RESOLUTION_MESSAGE",
    "AUTO_APPROVAL_ACTOR",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_BRANCH_PREFIXES",
    "DEFAULT_INTEGRATION_BRANCH",
    "DEFAULT_MAIN_BRANCH",
    "DEFAULT_REMOTE",
    "DEFAULT_ROLE",
    "DISPATCHER_DOCUMENT",
    "INTEGRATION_TIER_ORDER",
    "LOG_DIR",
    "OVERSIGHT_DOCUMENT",
    "RECOVERY_DOCUMENT",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "TASK_DIR",
    "USAGE_DOCUMENT",
    "VALIDATION_DOCUMENT",
    "WORKFLOW_RUNS_DOCUMENT",
]
