"""
Structured logging tests: JSON lines, redaction, correlation fields and
structlog routing.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from agent_foreman.observability.logging import (
    REDACTED_VALUE,
    LoggingConfig,
    correlation_scope,
    default_log_redactor,
    redact_text,
    setup_structured_logging,
)

if TYPE_CHECKING:
    from pathlib import Path


def _logger_name() -> str:
    return f"agent_foreman.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_json_lines_redact_secrets_and_carry_correlation(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(session_id="sess-1", log_dir=tmp_path, logger_name=logger_name)
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(agent_id="backend-agent", ticket_id="TICKET-7"):
        logger.info(
            "calling producer with api_key=sk-FAKE123456789012345",
            extra={"nested": {"password": "hunter2", "input_tokens": 42}},
        )
    handle.shutdown()

    [event] = _read_json_lines(handle.log_path)
    assert event["session_id"] == "sess-1"
    assert event["agent_id"] == "backend-agent"
    assert event["ticket_id"] == "TICKET-7"
    assert "sk-FAKE" not in str(event["message"])
    assert event["fields"] == {"nested": {"password": REDACTED_VALUE, "input_tokens": 42}}


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            session_id="sess-2",
            log_dir=tmp_path,
            logger_name=logger_name,
            redact_secrets=False,
        )
    )
    logging.getLogger(logger_name).warning("password=plain")
    handle.shutdown()

    [event] = _read_json_lines(handle.log_path)
    assert event["message"] == "password=plain"
    assert event["level"] == "WARNING"


def test_structlog_events_land_in_fields(tmp_path: Path) -> None:
    handle = setup_structured_logging(
        LoggingConfig(session_id="sess-3", log_dir=tmp_path, logger_name="agent_foreman")
    )
    structlog.get_logger("agent_foreman.dispatch").info(
        "ticket_assigned", ticket_id="TICKET-1", role="backend"
    )
    handle.shutdown()

    events = _read_json_lines(handle.log_path)
    assigned = [event for event in events if event["message"] == "ticket_assigned"]
    assert len(assigned) == 1
    assert assigned[0]["ticket_id"] == "TICKET-1"
    assert assigned[0]["fields"] == {"role": "backend"}


def test_shutdown_is_idempotent(tmp_path: Path) -> None:
    handle = setup_structured_logging(
        LoggingConfig(session_id="sess-4", log_dir=tmp_path, logger_name=_logger_name())
    )
    handle.shutdown()
    handle.shutdown()
    assert handle.is_shutdown
    assert handle.dropped_records == 0


def test_invalid_config_values_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        setup_structured_logging(LoggingConfig(session_id=" ", log_dir=tmp_path))
    with pytest.raises(ValueError):
        setup_structured_logging(
            LoggingConfig(session_id="s", log_dir=tmp_path, log_filename="a/b.jsonl")
        )
    with pytest.raises(ValueError):
        setup_structured_logging(LoggingConfig(session_id="s", log_dir=tmp_path, level="LOUD"))


def test_credential_shapes_are_redacted_in_text() -> None:
    text = (
        "or=sk-or-v1-0123456789abcdef ant=sk-ant-REDACTED "
        "oai=sk-0123456789abcdefXYZ header Bearer abc.def"
    )
    redacted = redact_text(text)

    assert "0123456789abcdef" not in redacted
    assert "abc.def" not in redacted


def test_env_name_keys_are_not_redacted() -> None:
    payload = {"api_key_env": "OPENROUTER_API_KEY", "token": "abc", "max_tokens_per_hour": 5}
    assert default_log_redactor(payload) == {
        "api_key_env": "OPENROUTER_API_KEY",
        "token": REDACTED_VALUE,
        "max_tokens_per_hour": 5,
    }
