"""Validation of generated artifacts."""

from agent_foreman.validation.layer import ValidationLayer, ValidationLayerError
from agent_foreman.validation.rules import ValidationIssue, ValidationReport

__all__ = ["ValidationIssue", "ValidationLayer", "ValidationLayerError", "ValidationReport"]
