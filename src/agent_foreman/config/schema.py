"""
agent-foreman: configuration schema and validation.

File: src/agent_foreman/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

What lives here
- Section TypedDicts plus the built-in defaults.
- A declarative field table per section (type, bounds, enums) evaluated by one
  validator, so every section reports issues the same way.
- Profile overlays, deterministic deep-merge, and redaction for dumps.

Functional requirements
- Validation returns structured issues (field path + message).
- Embedded secrets are rejected; credentials are referenced via ``*_env`` names.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from agent_foreman.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BRANCH_PREFIXES,
    DEFAULT_INTEGRATION_BRANCH,
    DEFAULT_MAIN_BRANCH,
    DEFAULT_REMOTE,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "apikey",
        "private",
        "credential",
        "credentials",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "refresh_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "task_dir"),
    ("paths", "roles_file"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class ProducerConfig(TypedDict):
    provider: Literal["openrouter", "openai"]
    api_key_env: str
    base_url: str
    default_model: str
    temperature: float
    timeout_seconds: float


class GitConfig(TypedDict):
    main_branch: str
    integration_branch: str
    remote: str
    branch_prefixes: list[str]
    ready_max_age_hours: int


class WorkflowConfig(TypedDict):
    can_override_boundaries: bool
    can_override_any_agent: bool
    auto_resolve_conflicts: bool
    conflict_default: Literal["theirs", "ours", "abort"]
    rollback_on_failure: bool
    build_command: str
    test_command: str
    lint_command: str
    install_command: str
    command_timeout_seconds: float


class RecoveryConfig(TypedDict):
    max_retries: int
    backoff_multiplier: float
    base_delay_ms: int
    checkpoint_max_age_hours: float
    failure_history_cap: int
    env_whitelist: list[str]


class OversightConfig(TypedDict):
    large_change_threshold: int
    approval_log_cap: int
    notify_command: str


class ResourcesConfig(TypedDict):
    max_tokens_per_hour: int
    max_cost_per_day: float
    max_active_agents: int
    max_memory_gb: float
    max_cpu_percent: float
    sample_interval_seconds: float
    sample_retention: int
    alert_log_cap: int


class ValidationConfig(TypedDict):
    max_complexity: int
    max_file_lines: int
    history_cap: int
    run_external_tools: bool


class PathsConfig(TypedDict):
    state_db: str
    task_dir: str
    roles_file: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class ForemanConfig(TypedDict):
    meta: MetaConfig
    producer: ProducerConfig
    git: GitConfig
    workflow: WorkflowConfig
    recovery: RecoveryConfig
    oversight: OversightConfig
    resources: ResourcesConfig
    validation: ValidationConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, dict[str, object]]


DEFAULT_CONFIG: Final[ForemanConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "producer": {
        "provider": "openrouter",
        "api_key_env": "OPENROUTER_API_KEY",
        "base_url": "https://openrouter.ai/api/v1",
        "default_model": "openai/gpt-4.1-mini",
        "temperature": 0.2,
        "timeout_seconds": 120.0,
    },
    "git": {
        "main_branch": DEFAULT_MAIN_BRANCH,
        "integration_branch": DEFAULT_INTEGRATION_BRANCH,
        "remote": DEFAULT_REMOTE,
        "branch_prefixes": list(DEFAULT_BRANCH_PREFIXES),
        "ready_max_age_hours": 24,
    },
    "workflow": {
        "can_override_boundaries": True,
        "can_override_any_agent": False,
        "auto_resolve_conflicts": True,
        "conflict_default": "theirs",
        "rollback_on_failure": True,
        "build_command": "npm run build",
        "test_command": "npm test",
        "lint_command": "npm run lint",
        "install_command": "npm install",
        "command_timeout_seconds": 900.0,
    },
    "recovery": {
        "max_retries": 3,
        "backoff_multiplier": 2.0,
        "base_delay_ms": 1000,
        "checkpoint_max_age_hours": 24.0,
        "failure_history_cap": 100,
        "env_whitelist": ["NODE_ENV", "PATH", "HOME", "CI"],
    },
    "oversight": {
        "large_change_threshold": 500,
        "approval_log_cap": 1000,
        "notify_command": "",
    },
    "resources": {
        "max_tokens_per_hour": 500_000,
        "max_cost_per_day": 50.0,
        "max_active_agents": 5,
        "max_memory_gb": 4.0,
        "max_cpu_percent": 80.0,
        "sample_interval_seconds": 5.0,
        "sample_retention": 100,
        "alert_log_cap": 1000,
    },
    "validation": {
        "max_complexity": 10,
        "max_file_lines": 500,
        "history_cap": 100,
        "run_external_tools": True,
    },
    "paths": {
        "state_db": "state/foreman.sqlite",
        "task_dir": ".agent-tasks/",
        "roles_file": "foreman-roles.yaml",
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "workflow": {"can_override_boundaries": False, "auto_resolve_conflicts": False},
            "resources": {"max_cost_per_day": 10.0, "max_active_agents": 2},
        },
        "permissive": {
            "resources": {"max_tokens_per_hour": 2_000_000, "max_cost_per_day": 200.0},
        },
    },
}


FieldKind = Literal["str", "path", "env", "bool", "int", "float", "enum", "str_list", "text"]
Issues = list["ConfigValidationIssue"]


@dataclass(frozen=True, slots=True)
class _Field:
    kind: FieldKind
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] = ()

    def check(self, value: object, path: str, issues: Issues) -> object | None:
        """Return the normalized value, or ``None`` after recording an issue."""

        def fail(message: str) -> object | None:
            issues.append(ConfigValidationIssue(path, message))
            return None

        got = type(value).__name__
        if self.kind == "str_list":
            if not isinstance(value, (list, tuple)):
                return fail(f"expected list of strings, got {got}")
            items = [_Field("str").check(item, f"{path}[{i}]", issues) for i, item in enumerate(value)]
            return [item for item in items if item is not None]
        if self.kind == "bool":
            return value if isinstance(value, bool) else fail(f"expected boolean, got {got}")
        if self.kind in ("int", "float"):
            accepted = (int,) if self.kind == "int" else (int, float)
            if isinstance(value, bool) or not isinstance(value, accepted):
                return fail(f"expected {'integer' if self.kind == 'int' else 'number'}, got {got}")
            number = value if self.kind == "int" else float(value)
            if not math.isfinite(number):
                return fail("must be finite")
            if self.minimum is not None and number < self.minimum:
                return fail(f"must be >= {self.minimum:g}")
            if self.maximum is not None and number > self.maximum:
                return fail(f"must be <= {self.maximum:g}")
            return number

        if not isinstance(value, str):
            return fail(f"expected string, got {got}")
        text = value.strip()
        if self.kind == "text":
            # Blank commands disable their step.
            return text
        if not text:
            return fail("must not be empty")
        if self.kind == "path" and "\x00" in text:
            return fail("must not contain NUL bytes")
        if self.kind == "env" and not _ENV_NAME_PATTERN.fullmatch(text):
            return fail("must be an env var name (example: OPENROUTER_API_KEY)")
        if self.kind == "enum" and text not in self.choices:
            return fail(f"invalid value {text!r}; expected one of: {', '.join(sorted(self.choices))}")
        return text


_SECTION_FIELDS: Final[dict[str, dict[str, _Field]]] = {
    "meta": {"schema_version": _Field("int", minimum=1)},
    "producer": {
        "provider": _Field("enum", choices=("openrouter", "openai")),
        "api_key_env": _Field("env"),
        "base_url": _Field("str"),
        "default_model": _Field("str"),
        "temperature": _Field("float", minimum=0.0, maximum=2.0),
        "timeout_seconds": _Field("float", minimum=1.0),
    },
    "git": {
        "main_branch": _Field("str"),
        "integration_branch": _Field("str"),
        "remote": _Field("str"),
        "branch_prefixes": _Field("str_list"),
        "ready_max_age_hours": _Field("int", minimum=1),
    },
    "workflow": {
        "can_override_boundaries": _Field("bool"),
        "can_override_any_agent": _Field("bool"),
        "auto_resolve_conflicts": _Field("bool"),
        "conflict_default": _Field("enum", choices=("theirs", "ours", "abort")),
        "rollback_on_failure": _Field("bool"),
        "build_command": _Field("text"),
        "test_command": _Field("text"),
        "lint_command": _Field("text"),
        "install_command": _Field("text"),
        "command_timeout_seconds": _Field("float", minimum=1.0),
    },
    "recovery": {
        "max_retries": _Field("int", minimum=1),
        "backoff_multiplier": _Field("float", minimum=1.0),
        "base_delay_ms": _Field("int", minimum=0),
        "checkpoint_max_age_hours": _Field("float", minimum=0.0),
        "failure_history_cap": _Field("int", minimum=1),
        "env_whitelist": _Field("str_list"),
    },
    "oversight": {
        "large_change_threshold": _Field("int", minimum=1),
        "approval_log_cap": _Field("int", minimum=1),
        "notify_command": _Field("text"),
    },
    "resources": {
        "max_tokens_per_hour": _Field("int", minimum=1),
        "max_cost_per_day": _Field("float", minimum=0.0),
        "max_active_agents": _Field("int", minimum=1),
        "max_memory_gb": _Field("float", minimum=0.0),
        "max_cpu_percent": _Field("float", minimum=0.0, maximum=100.0),
        "sample_interval_seconds": _Field("float", minimum=0.1),
        "sample_retention": _Field("int", minimum=1),
        "alert_log_cap": _Field("int", minimum=1),
    },
    "validation": {
        "max_complexity": _Field("int", minimum=1),
        "max_file_lines": _Field("int", minimum=1),
        "history_cap": _Field("int", minimum=1),
        "run_external_tools": _Field("bool"),
    },
    "paths": {
        "state_db": _Field("path"),
        "task_dir": _Field("path"),
        "roles_file": _Field("path"),
    },
    "observability": {
        "log_level": _Field("enum", choices=("DEBUG", "INFO", "WARNING", "ERROR")),
        "log_dir": _Field("path"),
        "log_to_stdout": _Field("bool"),
        "redact_secrets": _Field("bool"),
    },
}

SECTION_NAMES: Final[tuple[str, ...]] = tuple(_SECTION_FIELDS)


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Normalized config when valid, otherwise the collected issues."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {item.path}: {item.message}" for item in self.issues] or ["unknown validation failure"]
        super().__init__("invalid config:\n" + "\n".join(lines))


def default_config() -> ForemanConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade foreman.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade agent-foreman"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``. Tables merge, everything else replaces."""

    merged = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping):
            merged[key] = merge_config(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile onto ``config`` and re-validate the result."""

    selected = (profile or "").strip()
    if not selected:
        return merge_config({}, config)

    profiles = config.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError((ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),))
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate ``config`` and return structured issues with dotted field paths."""

    issues: Issues = []
    root = _table(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    normalized = _validate_root(root, issues)
    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if selected:
        profiles = normalized.get("profiles", {})
        if selected in profiles:
            _validate_root(merge_config(normalized, profiles[selected]), issues)
        else:
            issues.append(ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"))

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking keys masked, for logs and ``foreman config``."""

    def scrub(value: object) -> object:
        if isinstance(value, Mapping):
            return {
                key: "<redacted>" if _looks_sensitive_key(key) else scrub(item)
                for key, item in sorted(value.items())
            }
        if isinstance(value, (list, tuple)):
            return [scrub(item) for item in value]
        return value

    return scrub(config) if isinstance(config, Mapping) else {}  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Validation walk
# ---------------------------------------------------------------------------


def _validate_root(payload: Mapping[str, object], issues: Issues) -> dict[str, Any]:
    _check_keys(payload, "", issues, allowed={*SECTION_NAMES, "profiles"}, required=SECTION_NAMES)

    out: dict[str, Any] = {}
    for section in SECTION_NAMES:
        if payload.get(section) is None:
            continue
        table = _table(payload[section], section, issues)
        if table is not None:
            out[section] = _validate_section(section, table, section, issues, partial=False)

    version = out.get("meta", {}).get("schema_version")
    if isinstance(version, int) and version != ConfigSchemaVersion:
        issues.append(ConfigValidationIssue("meta.schema_version", migration_guidance(version)))

    if payload.get("profiles") is not None:
        profiles = _table(payload["profiles"], "profiles", issues)
        if profiles is not None:
            out["profiles"] = _validate_profiles(profiles, issues)
    return out


def _validate_section(
    section: str,
    payload: Mapping[str, object],
    path: str,
    issues: Issues,
    *,
    partial: bool,
) -> dict[str, Any]:
    fields = _SECTION_FIELDS[section]
    _check_keys(payload, path, issues, allowed=fields, required=() if partial else fields)
    out: dict[str, Any] = {}
    for key in sorted(fields.keys() & payload.keys()):
        value = fields[key].check(payload[key], f"{path}.{key}", issues)
        if value is not None:
            out[key] = value
    return out


def _validate_profiles(payload: Mapping[str, object], issues: Issues) -> dict[str, Any]:
    """Profiles are partial overlays of every section except ``meta``."""

    overlay_sections = [name for name in SECTION_NAMES if name != "meta"]
    out: dict[str, Any] = {}
    for name in sorted(payload):
        path = f"profiles.{name}"
        if not _PROFILE_NAME_PATTERN.fullmatch(name):
            issues.append(ConfigValidationIssue(path, "profile name must match ^[a-z][a-z0-9_-]*$"))
            continue
        overlay = _table(payload[name], path, issues)
        if overlay is None:
            continue
        _check_keys(overlay, path, issues, allowed=overlay_sections, required=())
        validated: dict[str, Any] = {}
        for section in overlay_sections:
            if overlay.get(section) is None:
                continue
            table = _table(overlay[section], f"{path}.{section}", issues)
            if table is not None:
                validated[section] = _validate_section(section, table, f"{path}.{section}", issues, partial=True)
        out[name] = validated
    return out


def _table(value: object, path: str, issues: Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.append(ConfigValidationIssue(path, f"expected object, got {type(value).__name__}"))
        return None
    bad_keys = [key for key in value if not isinstance(key, str)]
    for key in bad_keys:
        issues.append(ConfigValidationIssue(path, f"object key must be string, got {type(key).__name__}"))
    return {key: item for key, item in value.items() if isinstance(key, str)}


def _check_keys(
    payload: Mapping[str, object],
    path: str,
    issues: Issues,
    *,
    allowed: Iterable[str],
    required: Iterable[str],
) -> None:
    prefix = f"{path}." if path else ""
    allowed_set = set(allowed)
    for key in sorted(payload):
        if key in allowed_set:
            continue
        if _looks_sensitive_key(key):
            message = "embedded secret values are forbidden; use an *_env key with an env var name"
        else:
            message = "unknown field"
        issues.append(ConfigValidationIssue(prefix + key, message))
    for key in sorted(set(required) - payload.keys()):
        issues.append(ConfigValidationIssue(prefix + key, "missing required field"))


def _looks_sensitive_key(key: str) -> bool:
    snake = _NON_ALNUM.sub("_", _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip()).lower()).strip("_")
    if snake.endswith("_env"):
        return False
    if any(phrase in snake for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return any(part in _SENSITIVE_KEY_TOKENS for part in snake.split("_"))


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "ForemanConfig",
    "PATH_FIELDS",
    "SECTION_NAMES",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
