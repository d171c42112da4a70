"""
agent-foreman: validation layer

File: src/agent_foreman/validation/layer.py

Purpose
- Run the syntax, security, quality and hallucination checks over one
  artifact and fold them into a ``ValidationReport``.
- Keep a capped audit history of every report in the ``validation`` document.

Functional requirements
- ``valid`` is true exactly when the report has no errors.
- Every invocation is appended to the history, whatever the outcome.
- Batch mode validates files sequentially and returns one report per file.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path

import structlog

from agent_foreman.constants import VALIDATION_DOCUMENT
from agent_foreman.persistence.documents import DocumentStore, Payload, append_capped
from agent_foreman.utils.clock import Clock, isoformat_z, system_clock
from agent_foreman.validation.imports import check_hallucinations
from agent_foreman.validation.rules import (
    CheckOutcome,
    ValidationIssue,
    ValidationReport,
    check_quality,
    check_security,
)
from agent_foreman.validation.syntax import check_syntax

logger = structlog.get_logger(__name__)


class ValidationLayerError(RuntimeError):
    """Raised when an artifact cannot be read for validation."""


def _empty_history() -> Payload:
    return {"history": []}


class ValidationLayer:
    """Structural, security, quality and hallucination checks on generated artifacts."""

    def __init__(
        self,
        store: DocumentStore,
        config: Mapping[str, object],
        *,
        project_root: Path | str,
        clock: Clock = system_clock,
        command_timeout_seconds: float = 120.0,
    ) -> None:
        self._store = store
        self._clock = clock
        self.project_root = Path(project_root).resolve()
        self.max_complexity = int(config.get("max_complexity", 10))  # type: ignore[arg-type]
        self.max_file_lines = int(config.get("max_file_lines", 500))  # type: ignore[arg-type]
        self.history_cap = int(config.get("history_cap", 100))  # type: ignore[arg-type]
        self.run_external_tools = bool(config.get("run_external_tools", True))
        self.command_timeout_seconds = command_timeout_seconds

    def validate(
        self,
        artifact_text: str,
        file_path: str,
        context: Mapping[str, object] | None = None,
    ) -> ValidationReport:
        outcome = CheckOutcome()
        outcome.extend(
            check_syntax(
                artifact_text,
                file_path,
                run_external_tools=self.run_external_tools,
                timeout_seconds=self.command_timeout_seconds,
            )
        )
        outcome.extend(check_security(artifact_text))
        outcome.extend(
            check_quality(
                artifact_text,
                file_path,
                max_file_lines=self.max_file_lines,
                max_complexity=self.max_complexity,
            )
        )
        outcome.extend(check_hallucinations(artifact_text, file_path, project_root=self.project_root))

        report = ValidationReport.build(
            outcome,
            timestamp=isoformat_z(self._clock()),
            file_path=file_path,
            context=dict(context or {}),
        )
        self._record(report)
        logger.info(
            "artifact_validated",
            file_path=file_path,
            valid=report.valid,
            errors=len(report.errors),
            warnings=len(report.warnings),
            suggestions=len(report.suggestions),
        )
        return report

    def validate_file(self, path: Path | str, context: Mapping[str, object] | None = None) -> ValidationReport:
        target = Path(path)
        try:
            text = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ValidationLayerError(f"unable to read {target}: {exc}") from exc
        return self.validate(text, str(target), context)

    def validate_batch(self, paths: Sequence[Path | str]) -> list[ValidationReport]:
        return [self.validate_file(path) for path in paths]

    def history(self) -> list[ValidationReport]:
        payload = self._store.read(VALIDATION_DOCUMENT, _empty_history)
        return [_report_from_payload(item) for item in payload.get("history", [])]  # type: ignore[union-attr]

    def _record(self, report: ValidationReport) -> None:
        def mutate(payload: Payload) -> None:
            history = payload.setdefault("history", [])
            append_capped(history, report.to_payload(), self.history_cap)  # type: ignore[arg-type]

        self._store.update(VALIDATION_DOCUMENT, mutate, default_factory=_empty_history)


def _report_from_payload(payload: Mapping[str, object]) -> ValidationReport:
    def issues(key: str) -> tuple[ValidationIssue, ...]:
        raw = payload.get(key) or []
        return tuple(ValidationIssue.from_payload(item) for item in raw)  # type: ignore[union-attr]

    context = payload.get("context")
    return ValidationReport(
        valid=bool(payload.get("valid")),
        errors=issues("errors"),
        warnings=issues("warnings"),
        suggestions=issues("suggestions"),
        timestamp=str(payload.get("timestamp", "")),
        file_path=str(payload.get("filePath", "")),
        context=dict(context) if isinstance(context, Mapping) else {},
    )


__all__ = ["ValidationLayer", "ValidationLayerError"]
