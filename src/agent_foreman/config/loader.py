"""
agent-foreman: runtime config loader.

File: src/agent_foreman/config/loader.py

Purpose
- Load the effective runtime config from defaults, ``foreman.toml``,
  ``FOREMAN_*`` environment variables, and CLI overrides.

Functional requirements
- Precedence: CLI > env > file > defaults.
- Env names derive from the key path, e.g.
  ``FOREMAN_RESOURCES_MAX_COST_PER_DAY``; values are coerced to the default's
  scalar type. List fields accept comma-separated values.
- Path fields are normalized relative to the config file directory.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from agent_foreman.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "foreman.toml"
ENV_PREFIX: Final[str] = "FOREMAN_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_ENV_EXEMPT_SECTIONS: Final[frozenset[str]] = frozenset({"profiles", "meta"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load effective config with precedence CLI > env > file > defaults."""

    resolved_path = _resolve_config_path(config_path)
    env_map = dict(os.environ if environ is None else environ)
    cli_map = dict(cli_overrides or {})

    file_payload = _load_toml_file(resolved_path, required=config_path is not None)
    selected_profile = _resolve_profile(profile=profile, cli_overrides=cli_map, environ=env_map)

    merged = assert_valid_config(merge_config(default_config(), file_payload))
    if selected_profile is not None:
        merged = apply_profile_overlay(merged, selected_profile)

    merged = merge_config(merged, _collect_env_overrides(merged, env_map))
    merged = merge_config(merged, _materialize_cli_overrides(cli_map))
    merged = assert_valid_config(merged, active_profile=selected_profile)

    return normalize_paths(merged, base_dir=resolved_path.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Normalize configured path fields relative to ``base_dir``."""

    materialized = merge_config({}, config)
    for field_path in PATH_FIELDS:
        value = _get_nested(materialized, field_path)
        if isinstance(value, str):
            _set_nested(materialized, field_path, _normalize_one_path(value, base_dir))
    return materialized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Return a deterministic JSON dump of the redacted effective config."""

    return json.dumps(
        redact_config(config), sort_keys=True, indent=2, ensure_ascii=False
    )


def require_env_value(config: Mapping[str, object], environ: Mapping[str, str] | None = None) -> str:
    """Return the producer credential or raise with guidance naming the variable."""

    env_map = os.environ if environ is None else environ
    env_name = _get_nested(config, ("producer", "api_key_env"))
    if not isinstance(env_name, str):
        raise ConfigLoadError("producer.api_key_env is not configured")
    value = env_map.get(env_name, "").strip()
    if not value:
        raise ConfigLoadError(
            f"missing API credential: set the {env_name} environment variable "
            f"(for example `export {env_name}=...`) or point producer.api_key_env "
            "at a variable that holds the key"
        )
    return value


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _resolve_profile(
    *,
    profile: str | None,
    cli_overrides: Mapping[str, object],
    environ: Mapping[str, str],
) -> str | None:
    candidate: object = profile
    if candidate is None:
        candidate = cli_overrides.get("profile", environ.get(f"{ENV_PREFIX}PROFILE"))
    if candidate is None:
        return None
    if not isinstance(candidate, str):
        raise ConfigLoadError("profile override must be a string")
    return candidate.strip() or None


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY or lowered in _FALSY:
        return lowered in _TRUTHY
    raise ValueError("expected a boolean (true/false/1/0/yes/no/on/off)")


def _parse_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


# bool precedes int: isinstance(True, int) holds.
_COERCERS: Final[tuple[tuple[type, Callable[[str], object]], ...]] = (
    (bool, _parse_bool),
    (int, int),
    (float, float),
    (str, str),
    (list, _parse_list),
)


def _collect_env_overrides(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    """Map ``FOREMAN_SECTION_KEY`` variables onto leaves of the current config.

    The current value's type decides how the raw string is coerced.
    """

    overrides: dict[str, Any] = {}
    for path, current in _leaves(config):
        if path[0] in _ENV_EXEMPT_SECTIONS:
            continue
        env_name = ENV_PREFIX + "_".join(part.upper() for part in path)
        raw = environ.get(env_name)
        if raw is None:
            continue
        coerce = next((fn for kind, fn in _COERCERS if isinstance(current, kind)), None)
        if coerce is None:
            continue
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(path)}: {exc}") from exc
        _set_nested(overrides, path, value)
    return overrides


def _leaves(payload: Mapping[str, object], prefix: tuple[str, ...] = ()) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _materialize_cli_overrides(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    """Expand dotted CLI keys (``resources.max_active_agents``) into nested tables."""

    payload: dict[str, Any] = {}
    for key, value in sorted(cli_overrides.items()):
        if key == "profile":
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _set_nested(payload, path, value)
    return payload


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    *parents, leaf = path
    for part in parents:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[leaf] = value


def _get_nested(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    node: object = payload
    for part in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node


def _normalize_one_path(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
    "require_env_value",
]
