"""
agent-foreman: ticket classification rules

File: src/agent_foreman/dispatch/rules.py

Purpose
- Score every agent role against a ticket and infer the ticket's complexity.

Functional requirements
- +10 per role keyword found in the description or notes, matched at a word
  start and counted once per keyword.
- +15 per note containing one of the role's path patterns.
- The highest score wins. Ties and all-zero scores resolve to ``backend``.
- Confidence is ``min(100, max_score * 5)``.
- Complexity rules run in order and the first match wins; the fallback is
  ``medium``.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Final

from agent_foreman.constants import AGENT_ROLES, DEFAULT_ROLE
from agent_foreman.dispatch.roles import Complexity, RoleSpec
from agent_foreman.dispatch.tickets import Ticket
from agent_foreman.utils.rules import Rule, evaluate, first_match, total_by_label, word_prefix_pattern

KEYWORD_WEIGHT: Final[float] = 10.0
PATH_WEIGHT: Final[float] = 15.0

ROLE_KEYWORDS: Final[Mapping[str, tuple[str, ...]]] = MappingProxyType(
    {
        "frontend": (
            "component", "ui", "display", "button", "form", "page", "view", "chart",
            "visualization", "style", "css", "layout", "responsive", "animation",
            "progress", "prompt", "chat",
        ),
        "backend": (
            "api", "endpoint", "service", "webhook", "auth", "security", "validation",
            "business logic", "calculation", "algorithm", "analytics", "query",
            "template", "parser", "natural language",
        ),
        "database": (
            "database", "model", "schema", "migration", "field", "table", "relation",
            "index", "constraint", "package definition", "order model",
        ),
        "integration": (
            "integration", "google", "search console", "third-party", "external",
            "sync", "import", "export", "connect", "escalation",
        ),
        "testing": ("test", "coverage", "unit test", "integration test", "e2e", "spec"),
    }
)

ROLE_PATHS: Final[Mapping[str, tuple[str, ...]]] = MappingProxyType(
    {
        "frontend": ("src/components", "src/pages", "src/app", "src/styles"),
        "backend": ("src/server", "src/api", "src/lib/api", "src/lib/analytics"),
        "database": ("prisma", "src/lib/db"),
        "integration": ("src/lib/integrations",),
        "testing": ("tests", "__tests__"),
    }
)


def _keyword_predicate(keyword: str) -> Callable[[Ticket], int]:
    pattern = word_prefix_pattern(keyword)

    def predicate(ticket: Ticket) -> int:
        return 1 if pattern.search(ticket.text) else 0

    return predicate


def _path_predicate(fragment: str) -> Callable[[Ticket], int]:
    def predicate(ticket: Ticket) -> int:
        return sum(1 for note in ticket.notes if fragment in note)

    return predicate


def _build_role_rules() -> tuple[Rule[Ticket], ...]:
    rules: list[Rule[Ticket]] = []
    for role in AGENT_ROLES:
        rules.extend(Rule(_keyword_predicate(word), KEYWORD_WEIGHT, role) for word in ROLE_KEYWORDS[role])
        rules.extend(Rule(_path_predicate(path), PATH_WEIGHT, role) for path in ROLE_PATHS[role])
    return tuple(rules)


ROLE_RULES: Final[tuple[Rule[Ticket], ...]] = _build_role_rules()


def _any_word(*words: str) -> Callable[[Ticket], int]:
    pattern = re.compile(r"\b(?:" + "|".join(re.escape(word) for word in words) + r")\b", re.IGNORECASE)

    def predicate(ticket: Ticket) -> int:
        return 1 if pattern.search(ticket.text) else 0

    return predicate


COMPLEXITY_RULES: Final[tuple[Rule[Ticket], ...]] = (
    Rule(_any_word("refactor", "major", "integration"), 1.0, "high"),
    Rule(_any_word("simple", "quick", "minor"), 1.0, "low"),
)

_MODEL_UPGRADE_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(?:refactor|optimi[sz]e|algorithm|complex)", re.IGNORECASE
)
_TEST_RE: Final[re.Pattern[str]] = re.compile(r"\btest", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class Classification:
    role: str
    confidence: int
    reasoning: tuple[str, ...]
    complexity: Complexity
    scores: Mapping[str, float]

    def to_payload(self) -> dict[str, object]:
        return {
            "role": self.role,
            "confidence": self.confidence,
            "reasoning": list(self.reasoning),
            "complexity": self.complexity,
            "scores": dict(self.scores),
        }


def score_roles(ticket: Ticket) -> dict[str, float]:
    totals = total_by_label(evaluate(ROLE_RULES, ticket))
    return {role: totals.get(role, 0.0) for role in AGENT_ROLES}


def infer_complexity(ticket: Ticket) -> Complexity:
    rule = first_match(COMPLEXITY_RULES, ticket)
    return rule.label if rule is not None else "medium"  # type: ignore[return-value]


def classify(ticket: Ticket) -> Classification:
    scores = score_roles(ticket)
    max_score = max(scores.values())
    leaders = [role for role, score in scores.items() if score == max_score]
    role = leaders[0] if max_score > 0 and len(leaders) == 1 else DEFAULT_ROLE

    reasoning: list[str] = []
    for candidate in AGENT_ROLES:
        if scores[candidate] > 0:
            reasoning.append(f"{candidate} score: {scores[candidate]:g}")
    if max_score <= 0:
        reasoning.append(f"No keyword or path matches; defaulting to {DEFAULT_ROLE}")
    elif len(leaders) > 1:
        reasoning.append(f"Tie between {', '.join(leaders)}; defaulting to {DEFAULT_ROLE}")

    return Classification(
        role=role,
        confidence=int(min(100.0, max_score * 5)),
        reasoning=tuple(reasoning),
        complexity=infer_complexity(ticket),
        scores=MappingProxyType(scores),
    )


def suggest_model(ticket: Ticket, role: RoleSpec, complexity: Complexity, *, testing: RoleSpec) -> str:
    """Pick the model for a task: keyword overrides first, then the role's complexity tier."""

    if _MODEL_UPGRADE_RE.search(ticket.description):
        return role.models.complex
    if _TEST_RE.search(ticket.description):
        return testing.models.fast
    return role.models.for_complexity(complexity)


__all__ = [
    "COMPLEXITY_RULES",
    "KEYWORD_WEIGHT",
    "PATH_WEIGHT",
    "ROLE_KEYWORDS",
    "ROLE_PATHS",
    "ROLE_RULES",
    "Classification",
    "classify",
    "infer_complexity",
    "score_roles",
    "suggest_model",
]
