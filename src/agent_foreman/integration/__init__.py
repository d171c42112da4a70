"""Version control, merge conflict policy and external command execution."""

from agent_foreman.integration.commands import CommandFailedError, CommandResult, run_checked, run_command
from agent_foreman.integration.conflict_resolution import (
    ConflictResolver,
    MergeAbortedError,
    ResolutionReport,
    ResolutionStrategy,
    resolve_merge_conflicts,
)
from agent_foreman.integration.git_engine import (
    BranchHead,
    ChangedFileEntry,
    GitCommandError,
    GitEngine,
    GitEngineError,
    MergeOutcome,
)

__all__ = [
    "BranchHead",
    "ChangedFileEntry",
    "CommandFailedError",
    "CommandResult",
    "ConflictResolver",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "MergeAbortedError",
    "MergeOutcome",
    "ResolutionReport",
    "ResolutionStrategy",
    "resolve_merge_conflicts",
    "run_checked",
    "run_command",
]
