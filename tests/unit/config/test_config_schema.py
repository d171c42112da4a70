"""Config schema validation, profile overlays and redaction."""

from __future__ import annotations

import pytest

from agent_foreman.config.schema import (
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)


def test_default_config_is_valid_and_detached() -> None:
    first = default_config()
    first["recovery"]["max_retries"] = 99

    assert default_config()["recovery"]["max_retries"] == 3
    assert validate_config(default_config()).is_valid


def test_issues_carry_field_paths() -> None:
    config = merge_config(
        default_config(),
        {
            "recovery": {"max_retries": 0},
            "resources": {"max_cpu_percent": 140},
            "workflow": {"conflict_default": "merge"},
            "git": {"branch_prefixes": ["feature/", ""]},
        },
    )

    result = validate_config(config)

    assert not result.is_valid
    paths = {issue.path for issue in result.issues}
    assert {
        "recovery.max_retries",
        "resources.max_cpu_percent",
        "workflow.conflict_default",
        "git.branch_prefixes[1]",
    } <= paths


def test_unknown_and_missing_fields() -> None:
    config = default_config()
    del config["oversight"]["approval_log_cap"]
    config["oversight"]["colour"] = "red"  # type: ignore[typeddict-unknown-key]

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    rendered = str(excinfo.value)
    assert "oversight.approval_log_cap: missing required field" in rendered
    assert "oversight.colour: unknown field" in rendered


def test_booleans_are_not_integers() -> None:
    config = merge_config(default_config(), {"validation": {"max_complexity": True}})
    result = validate_config(config)
    assert [issue.path for issue in result.issues] == ["validation.max_complexity"]


def test_schema_version_mismatch_gives_guidance() -> None:
    config = merge_config(default_config(), {"meta": {"schema_version": 7}})
    result = validate_config(config)
    assert any("newer than supported" in issue.message for issue in result.issues)


def test_profile_overlay_is_validated() -> None:
    config = merge_config(
        default_config(),
        {"profiles": {"night": {"resources": {"max_active_agents": "two"}}}},
    )
    result = validate_config(config)
    assert any(issue.path == "profiles.night.resources.max_active_agents" for issue in result.issues)


def test_apply_profile_overlay_merges_partial_sections() -> None:
    applied = apply_profile_overlay(default_config(), "permissive")

    assert applied["resources"]["max_cost_per_day"] == 200.0
    assert applied["resources"]["max_active_agents"] == 5


def test_redact_config_masks_secret_looking_keys() -> None:
    payload = {"producer": {"api_key_env": "OPENROUTER_API_KEY", "client_secret": "x"}}
    redacted = redact_config(payload)

    assert redacted["producer"]["api_key_env"] == "OPENROUTER_API_KEY"
    assert redacted["producer"]["client_secret"] == "<redacted>"
