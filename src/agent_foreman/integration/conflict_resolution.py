"""
agent-foreman: automatic merge conflict resolution

File: src/agent_foreman/integration/conflict_resolution.py

Purpose
- Decide, per conflicted file, which version of an in-progress merge survives
  and apply the decision to the working tree.

Functional requirements
- Lock files keep the local version and are regenerated with the configured
  install command.
- JSON and YAML files are shallow-merged key by key with the incoming version
  winning. If either side does not parse to a mapping, the incoming version is
  taken wholesale.
- Every other file follows the configured default: ``theirs``, ``ours`` or
  ``abort``. ``abort`` cancels the whole merge before anything is touched.
- The resolution is committed with a message that names the automated
  resolution and the merged branch.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Final, Literal

import structlog
import yaml

from agent_foreman.constants import AUTOMATED_RESOLUTION_MESSAGE
from agent_foreman.integration.commands import CommandResult, run_command
from agent_foreman.integration.git_engine import GitEngine, GitEngineError

if TYPE_CHECKING:
    from collections.abc import Sequence

ConflictDefault = Literal["theirs", "ours", "abort"]

logger = structlog.get_logger(__name__)

LOCK_FILE_NAMES: Final[frozenset[str]] = frozenset(
    {
        "package-lock.json",
        "npm-shrinkwrap.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "poetry.lock",
        "Pipfile.lock",
        "uv.lock",
        "Cargo.lock",
        "Gemfile.lock",
        "composer.lock",
    }
)
_JSON_SUFFIXES: Final[frozenset[str]] = frozenset({".json"})
_YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yaml", ".yml"})


class ResolutionStrategy(StrEnum):
    """How one conflicted file is settled."""

    KEEP_OURS_REGENERATE = "keep_ours_regenerate"
    SHALLOW_MERGE = "shallow_merge"
    TAKE_THEIRS = "take_theirs"
    TAKE_OURS = "take_ours"
    ABORT = "abort"


class MergeAbortedError(GitEngineError):
    """Raised when the conflict policy refuses to resolve a merge."""

    def __init__(self, source: str, paths: Sequence[str]) -> None:
        self.source = source
        self.paths = tuple(paths)
        super().__init__(f"merge of {source} aborted: unresolved conflicts in {', '.join(self.paths)}")


@dataclass(frozen=True, slots=True)
class ConflictInput:
    """Both sides of one conflicted path. ``None`` means that side deleted the file."""

    path: str
    ours_content: str | None
    theirs_content: str | None


@dataclass(frozen=True, slots=True)
class ResolvedConflict:
    path: str
    strategy: ResolutionStrategy
    content: str | None = None
    note: str = ""

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"path": self.path, "strategy": self.strategy.value}
        if self.note:
            payload["note"] = self.note
        return payload


@dataclass(frozen=True, slots=True)
class ResolutionReport:
    source: str
    resolved: tuple[ResolvedConflict, ...]
    commit: str
    regenerate: CommandResult | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "source": self.source,
            "commit": self.commit,
            "resolved": [item.to_payload() for item in self.resolved],
        }
        if self.regenerate is not None:
            payload["regenerate"] = self.regenerate.to_dict()
        return payload


def is_lock_file(path: str) -> bool:
    return PurePosixPath(path).name in LOCK_FILE_NAMES


def strategy_for(path: str, default: ConflictDefault = "theirs") -> ResolutionStrategy:
    if is_lock_file(path):
        return ResolutionStrategy.KEEP_OURS_REGENERATE
    suffix = PurePosixPath(path).suffix.lower()
    if suffix in _JSON_SUFFIXES or suffix in _YAML_SUFFIXES:
        return ResolutionStrategy.SHALLOW_MERGE
    if default == "ours":
        return ResolutionStrategy.TAKE_OURS
    if default == "abort":
        return ResolutionStrategy.ABORT
    return ResolutionStrategy.TAKE_THEIRS


def shallow_merge(path: str, ours: str, theirs: str) -> str | None:
    """Merge two mapping documents key by key, incoming keys winning.

    Returns ``None`` when either side fails to parse or is not a mapping.
    """

    is_yaml = PurePosixPath(path).suffix.lower() in _YAML_SUFFIXES
    try:
        if is_yaml:
            ours_doc = yaml.safe_load(ours)
            theirs_doc = yaml.safe_load(theirs)
        else:
            ours_doc = json.loads(ours)
            theirs_doc = json.loads(theirs)
    except (ValueError, yaml.YAMLError):
        return None
    if not isinstance(ours_doc, Mapping) or not isinstance(theirs_doc, Mapping):
        return None

    merged = {**ours_doc, **theirs_doc}
    if is_yaml:
        return yaml.safe_dump(merged, sort_keys=False, allow_unicode=True)
    return json.dumps(merged, indent=2, ensure_ascii=False) + "\n"


class ConflictResolver:
    """Pure per-file policy. It never touches the repository."""

    def __init__(self, *, default: ConflictDefault = "theirs") -> None:
        self._default = default

    @property
    def default(self) -> ConflictDefault:
        return self._default

    def resolve(self, conflict: ConflictInput) -> ResolvedConflict:
        strategy = strategy_for(conflict.path, self._default)
        if strategy is ResolutionStrategy.KEEP_OURS_REGENERATE:
            return ResolvedConflict(conflict.path, strategy, conflict.ours_content)
        if strategy is ResolutionStrategy.TAKE_OURS:
            return ResolvedConflict(conflict.path, strategy, conflict.ours_content)
        if strategy is ResolutionStrategy.ABORT:
            return ResolvedConflict(conflict.path, strategy)
        if strategy is ResolutionStrategy.SHALLOW_MERGE:
            if conflict.ours_content is not None and conflict.theirs_content is not None:
                merged = shallow_merge(conflict.path, conflict.ours_content, conflict.theirs_content)
                if merged is not None:
                    return ResolvedConflict(conflict.path, strategy, merged)
            return ResolvedConflict(
                conflict.path,
                ResolutionStrategy.TAKE_THEIRS,
                conflict.theirs_content,
                note="structured merge failed; took incoming version",
            )
        return ResolvedConflict(conflict.path, ResolutionStrategy.TAKE_THEIRS, conflict.theirs_content)


def resolve_merge_conflicts(
    git: GitEngine,
    resolver: ConflictResolver,
    *,
    source: str,
    regenerate_command: str | None = None,
    timeout_seconds: float | None = None,
) -> ResolutionReport:
    """Resolve every conflicted path of the in-progress merge of ``source`` and commit."""

    paths = git.conflicted_files()
    decisions = [
        resolver.resolve(
            ConflictInput(
                path=path,
                ours_content=git.show_stage("ours", path),
                theirs_content=git.show_stage("theirs", path),
            )
        )
        for path in paths
    ]
    refused = [item.path for item in decisions if item.strategy is ResolutionStrategy.ABORT]
    if refused:
        git.abort_merge()
        logger.warning("merge_aborted", branch=source, paths=refused)
        raise MergeAbortedError(source, refused)

    for decision in decisions:
        _apply(git, decision)
        logger.info(
            "conflict_resolved",
            branch=source,
            path=decision.path,
            strategy=decision.strategy.value,
        )

    regenerate: CommandResult | None = None
    lock_paths = [
        item.path
        for item in decisions
        if item.strategy is ResolutionStrategy.KEEP_OURS_REGENERATE and item.content is not None
    ]
    if lock_paths and regenerate_command:
        regenerate = run_command(regenerate_command, cwd=git.repo_path, timeout_seconds=timeout_seconds)
        if regenerate.ok:
            git.add(*lock_paths)
        else:
            logger.warning(
                "lock_file_regeneration_failed",
                branch=source,
                command=regenerate_command,
                returncode=regenerate.returncode,
            )

    commit = git.commit(f"{AUTOMATED_RESOLUTION_MESSAGE}: {source}")
    return ResolutionReport(source=source, resolved=tuple(decisions), commit=commit, regenerate=regenerate)


def _apply(git: GitEngine, decision: ResolvedConflict) -> None:
    if decision.content is None:
        git.remove(decision.path)
        return
    if decision.strategy is ResolutionStrategy.SHALLOW_MERGE:
        target = Path(git.repo_path, decision.path)
        target.write_text(decision.content, encoding="utf-8")
    elif decision.strategy is ResolutionStrategy.TAKE_THEIRS:
        git.checkout_side(decision.path, "theirs")
    else:
        git.checkout_side(decision.path, "ours")
    git.add(decision.path)


__all__ = [
    "LOCK_FILE_NAMES",
    "ConflictDefault",
    "ConflictInput",
    "ConflictResolver",
    "MergeAbortedError",
    "ResolutionReport",
    "ResolutionStrategy",
    "ResolvedConflict",
    "is_lock_file",
    "resolve_merge_conflicts",
    "shallow_merge",
    "strategy_for",
]
