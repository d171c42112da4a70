"""
agent-foreman: validation issue model and static rule tables

File: src/agent_foreman/validation/rules.py

Purpose
- Issue and report value types shared by every validation check.
- Security pattern table and quality heuristics (length, doc comment,
  simplified cyclomatic complexity).

Functional requirements
- Security rules tagged ``high`` produce errors; ``medium`` produce warnings.
  Each issue carries the occurrence count.
- Quality checks never produce errors.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Final, Literal

from agent_foreman.utils.rules import Rule, count_matches

Severity = Literal["critical", "high", "medium", "low", "info"]
Category = Literal["syntax", "security", "quality", "complexity", "hallucination"]


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    category: Category
    message: str
    severity: Severity
    line: int | None = None
    count: int | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "category": self.category,
            "message": self.message,
            "severity": self.severity,
        }
        if self.line is not None:
            payload["line"] = self.line
        if self.count is not None:
            payload["count"] = self.count
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> ValidationIssue:
        line = payload.get("line")
        count = payload.get("count")
        return cls(
            category=payload["category"],  # type: ignore[arg-type]
            message=str(payload["message"]),
            severity=payload["severity"],  # type: ignore[arg-type]
            line=line if isinstance(line, int) else None,
            count=count if isinstance(count, int) else None,
        )


@dataclass(slots=True)
class CheckOutcome:
    """Issues contributed by one check category."""

    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    suggestions: list[ValidationIssue] = field(default_factory=list)

    def extend(self, other: CheckOutcome) -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.suggestions.extend(other.suggestions)


@dataclass(frozen=True, slots=True)
class ValidationReport:
    valid: bool
    errors: tuple[ValidationIssue, ...]
    warnings: tuple[ValidationIssue, ...]
    suggestions: tuple[ValidationIssue, ...]
    timestamp: str
    file_path: str
    context: dict[str, object] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        outcome: CheckOutcome,
        *,
        timestamp: str,
        file_path: str,
        context: dict[str, object] | None = None,
    ) -> ValidationReport:
        return cls(
            valid=len(outcome.errors) == 0,
            errors=tuple(outcome.errors),
            warnings=tuple(outcome.warnings),
            suggestions=tuple(outcome.suggestions),
            timestamp=timestamp,
            file_path=file_path,
            context=dict(context or {}),
        )

    def to_payload(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "errors": [issue.to_payload() for issue in self.errors],
            "warnings": [issue.to_payload() for issue in self.warnings],
            "suggestions": [issue.to_payload() for issue in self.suggestions],
            "timestamp": self.timestamp,
            "filePath": self.file_path,
            "context": self.context,
        }


# Security ------------------------------------------------------------------

_HIGH: Final[float] = 2.0
_MEDIUM: Final[float] = 1.0

SECURITY_RULES: Final[tuple[Rule[str], ...]] = (
    Rule(
        count_matches(
            re.compile(
                r"(?i)\b(api[_-]?key|secret|password|passwd|token|private[_-]?key)\b"
                r"\s*[:=]\s*['\"][^'\"]{8,}['\"]"
            )
        ),
        _HIGH,
        "Potential hardcoded secret",
    ),
    Rule(
        count_matches(
            re.compile(
                r"(?<![.\w])eval\s*\(|\bnew\s+Function\s*\(|(?<![.\w])exec\s*\(|"
                r"\bset(?:Timeout|Interval)\s*\(\s*['\"`]|\bshell\s*=\s*True\b"
            )
        ),
        _HIGH,
        "Dangerous dynamic code execution",
    ),
    Rule(
        count_matches(
            re.compile(
                r"(?i)`[^`]*\b(?:select|insert|update|delete)\b[^`]*\$\{|"
                r"\bf['\"][^'\"]*\b(?:select|insert|update|delete)\b[^'\"]*\{|"
                r"dangerouslySetInnerHTML|\.innerHTML\s*=|\|\s*safe\b"
            )
        ),
        _MEDIUM,
        "Unescaped interpolation risk",
    ),
    Rule(
        count_matches(re.compile(r"(?i)<script\b|\bon(?:click|error|load|mouseover)\s*=")),
        _MEDIUM,
        "Potential script injection (XSS)",
    ),
)


def check_security(text: str) -> CheckOutcome:
    outcome = CheckOutcome()
    for rule in SECURITY_RULES:
        hits = rule.predicate(text)
        if hits <= 0:
            continue
        if rule.weight >= _HIGH:
            outcome.errors.append(ValidationIssue("security", rule.label, "high", count=hits))
        else:
            outcome.warnings.append(ValidationIssue("security", rule.label, "medium", count=hits))
    return outcome


# Quality -------------------------------------------------------------------

_JSDOC_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\s*/\*\*[\s\S]*?\*/")
_PY_DOCSTRING_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^(?:\s*#[^\n]*\n|\s*\n)*\s*[rRuU]?(?:\"\"\"|''')"
)
_DOC_REQUIREMENTS: Final[tuple[tuple[frozenset[str], re.Pattern[str], str], ...]] = (
    (frozenset({".js", ".jsx", ".ts", ".tsx"}), _JSDOC_PATTERN, "Missing JSDoc comment"),
    (frozenset({".py"}), _PY_DOCSTRING_PATTERN, "Missing module docstring"),
)
_BRANCH_KEYWORDS: Final[re.Pattern[str]] = re.compile(
    r"\b(?:if|elif|else|for|while|case|catch|except)\b"
)


def estimate_complexity(text: str) -> int:
    """One plus the count of branch, loop and case keywords."""

    return 1 + sum(1 for _ in _BRANCH_KEYWORDS.finditer(text))


def check_quality(text: str, file_path: str, *, max_file_lines: int, max_complexity: int) -> CheckOutcome:
    outcome = CheckOutcome()
    line_count = len(text.split("\n"))
    if line_count > max_file_lines:
        outcome.warnings.append(
            ValidationIssue(
                "quality",
                f"File exceeds {max_file_lines} lines ({line_count} lines)",
                "low",
            )
        )

    suffix = PurePosixPath(file_path).suffix.lower()
    for suffixes, pattern, message in _DOC_REQUIREMENTS:
        if suffix in suffixes and not pattern.search(text):
            outcome.suggestions.append(ValidationIssue("quality", message, "info"))

    complexity = estimate_complexity(text)
    if complexity > max_complexity:
        outcome.warnings.append(
            ValidationIssue(
                "complexity",
                f"High cyclomatic complexity: {complexity} (max: {max_complexity})",
                "low",
            )
        )
    return outcome


__all__ = [
    "SECURITY_RULES",
    "CheckOutcome",
    "ValidationIssue",
    "ValidationReport",
    "check_quality",
    "check_security",
    "estimate_complexity",
]
