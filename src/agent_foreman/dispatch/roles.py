"""
agent-foreman: agent role table

File: src/agent_foreman/dispatch/roles.py

Purpose
- Describe each agent role: the path prefixes it may touch, the paths it must
  leave alone, its preferred models by complexity and a persona line used in
  producer prompts.

Functional requirements
- Built-in defaults cover every role in ``AGENT_ROLES``.
- A project may override any role field from a YAML file with a top-level
  ``roles:`` mapping. Overrides merge per role; unspecified fields keep their
  defaults.
- Unknown roles, unknown fields and malformed YAML raise ``RoleTableError``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from types import MappingProxyType
from typing import Final, Literal

import structlog
import yaml

from agent_foreman.constants import AGENT_ROLES

Complexity = Literal["low", "medium", "high"]

logger = structlog.get_logger(__name__)

_MODEL_TIERS: Final[tuple[str, ...]] = ("fast", "standard", "complex")
_ROLE_FIELDS: Final[frozenset[str]] = frozenset(
    {"working_paths", "exclude_paths", "models", "persona"}
)


class RoleTableError(ValueError):
    """Raised when a role table file is malformed."""


@dataclass(frozen=True, slots=True)
class RoleModels:
    fast: str
    standard: str
    complex: str

    def for_complexity(self, complexity: Complexity) -> str:
        if complexity == "high":
            return self.complex
        if complexity == "low":
            return self.fast
        return self.standard


@dataclass(frozen=True, slots=True)
class RoleSpec:
    name: str
    working_paths: tuple[str, ...]
    exclude_paths: tuple[str, ...]
    models: RoleModels
    persona: str

    def permits(self, path: str) -> bool:
        """True when ``path`` falls inside a working path and outside every excluded path."""

        if self.excludes(path):
            return False
        normalized = _normalize(path)
        return any(_matches_prefix(normalized, allowed) for allowed in self.working_paths)

    def excludes(self, path: str) -> bool:
        normalized = _normalize(path)
        return any(_matches_prefix(normalized, excluded) for excluded in self.exclude_paths)


def _normalize(path: str) -> str:
    return path.replace("\\", "/").removeprefix("./").lstrip("/")


def _matches_prefix(path: str, pattern: str) -> bool:
    prefix = pattern.replace("**/", "").replace("**", "").rstrip("/")
    if not prefix:
        return True
    return path.startswith(prefix) or f"/{prefix}" in f"/{path}"


DEFAULT_ROLES: Final[Mapping[str, RoleSpec]] = MappingProxyType(
    {
        "frontend": RoleSpec(
            name="frontend",
            working_paths=("src/components/", "src/app/", "src/pages/", "src/styles/", "public/"),
            exclude_paths=("src/app/api/", "prisma/", "src/lib/db/"),
            models=RoleModels(
                fast="openai/gpt-4.1-mini",
                standard="openai/gpt-4.1-mini",
                complex="anthropic/claude-sonnet-4",
            ),
            persona="You are a senior React/Next.js developer.",
        ),
        "backend": RoleSpec(
            name="backend",
            working_paths=("src/app/api/", "src/lib/", "src/server/", "src/api/"),
            exclude_paths=("src/components/", "prisma/migrations/"),
            models=RoleModels(
                fast="openai/gpt-4.1-mini",
                standard="openai/gpt-4.1-mini",
                complex="openai/gpt-4.1",
            ),
            persona="You are a senior Node.js/API developer.",
        ),
        "database": RoleSpec(
            name="database",
            working_paths=("prisma/", "src/lib/db/"),
            exclude_paths=("src/components/", "src/app/"),
            models=RoleModels(
                fast="google/gemini-2.5-flash",
                standard="google/gemini-2.5-flash",
                complex="anthropic/claude-sonnet-4",
            ),
            persona="You are a database architect.",
        ),
        "integration": RoleSpec(
            name="integration",
            working_paths=("src/lib/integrations/", "src/app/api/integrations/", "src/lib/"),
            exclude_paths=("src/components/", "prisma/migrations/"),
            models=RoleModels(
                fast="openai/gpt-4.1-mini",
                standard="openai/gpt-4.1",
                complex="anthropic/claude-sonnet-4",
            ),
            persona="You are a senior integration engineer working with third-party APIs.",
        ),
        "testing": RoleSpec(
            name="testing",
            working_paths=("tests/", "__tests__/", "src/**/__tests__/", "e2e/"),
            exclude_paths=("prisma/migrations/",),
            models=RoleModels(
                fast="openai/gpt-4.1-mini",
                standard="openai/gpt-4.1-mini",
                complex="openai/gpt-4.1",
            ),
            persona="You are a QA engineer.",
        ),
    }
)


def load_role_table(path: Path | None = None) -> dict[str, RoleSpec]:
    """Return the built-in role table merged with the overrides in ``path``."""

    table = dict(DEFAULT_ROLES)
    if path is None or not path.is_file():
        return table

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise RoleTableError(f"{path}: invalid YAML ({exc})") from exc
    except OSError as exc:
        raise RoleTableError(f"{path}: unable to read role table ({exc})") from exc
    if raw is None:
        return table
    if not isinstance(raw, Mapping) or not isinstance(raw.get("roles", {}), Mapping):
        raise RoleTableError(f"{path}: expected a top-level 'roles' mapping")

    for role, overrides in raw.get("roles", {}).items():
        if role not in table:
            raise RoleTableError(f"{path}: unknown role {role!r}; expected one of {', '.join(AGENT_ROLES)}")
        if not isinstance(overrides, Mapping):
            raise RoleTableError(f"{path}: roles.{role} must be a mapping")
        table[role] = _merge_role(table[role], overrides, source=f"{path}: roles.{role}")

    logger.debug("role_table_loaded", path=str(path), roles=sorted(table))
    return table


def _merge_role(base: RoleSpec, overrides: Mapping[str, object], *, source: str) -> RoleSpec:
    unknown = set(overrides) - _ROLE_FIELDS
    if unknown:
        raise RoleTableError(f"{source}: unknown field(s) {', '.join(sorted(map(str, unknown)))}")

    changes: dict[str, object] = {}
    for key in ("working_paths", "exclude_paths"):
        if key in overrides:
            changes[key] = _string_tuple(overrides[key], source=f"{source}.{key}")
    if "persona" in overrides:
        persona = overrides["persona"]
        if not isinstance(persona, str) or not persona.strip():
            raise RoleTableError(f"{source}.persona must be a non-empty string")
        changes["persona"] = persona.strip()
    if "models" in overrides:
        models = overrides["models"]
        if not isinstance(models, Mapping):
            raise RoleTableError(f"{source}.models must be a mapping")
        unknown_tiers = set(models) - set(_MODEL_TIERS)
        if unknown_tiers:
            raise RoleTableError(f"{source}.models: unknown tier(s) {', '.join(sorted(map(str, unknown_tiers)))}")
        for tier, value in models.items():
            if not isinstance(value, str) or not value.strip():
                raise RoleTableError(f"{source}.models.{tier} must be a non-empty string")
        changes["models"] = replace(base.models, **{str(k): str(v).strip() for k, v in models.items()})
    return replace(base, **changes)  # type: ignore[arg-type]


def _string_tuple(value: object, *, source: str) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(item, str) and item.strip() for item in value):
        raise RoleTableError(f"{source} must be a list of non-empty strings")
    return tuple(item.strip() for item in value)


__all__ = [
    "DEFAULT_ROLES",
    "Complexity",
    "RoleModels",
    "RoleSpec",
    "RoleTableError",
    "load_role_table",
]
