"""
agent-foreman: ordered rule tables

File: src/agent_foreman/utils/rules.py

Purpose
- Heuristic tables (role scoring, complexity, change classification, security
  patterns) are expressed as ordered ``Rule`` lists and evaluated
  deterministically in declaration order.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

S = TypeVar("S")

# A predicate returns how many times the rule hit; ``0`` means no match.
Predicate = Callable[[S], int]


@dataclass(frozen=True, slots=True)
class Rule(Generic[S]):
    predicate: Predicate[S]
    weight: float
    label: str


@dataclass(frozen=True, slots=True)
class RuleHit:
    label: str
    hits: int
    score: float


def evaluate(rules: Iterable[Rule[S]], subject: S) -> list[RuleHit]:
    """Return one hit per matching rule, in rule order."""

    matched: list[RuleHit] = []
    for rule in rules:
        hits = int(rule.predicate(subject))
        if hits > 0:
            matched.append(RuleHit(label=rule.label, hits=hits, score=hits * rule.weight))
    return matched


def first_match(rules: Iterable[Rule[S]], subject: S) -> Rule[S] | None:
    for rule in rules:
        if rule.predicate(subject) > 0:
            return rule
    return None


def total_by_label(hits: Sequence[RuleHit]) -> dict[str, float]:
    totals: dict[str, float] = {}
    for hit in hits:
        totals[hit.label] = totals.get(hit.label, 0.0) + hit.score
    return totals


def count_matches(pattern: re.Pattern[str]) -> Callable[[str], int]:
    """Predicate counting non-overlapping matches of ``pattern`` in a string."""

    def predicate(text: str) -> int:
        return sum(1 for _ in pattern.finditer(text))

    return predicate


def word_prefix_pattern(keyword: str) -> re.Pattern[str]:
    """Case-insensitive match of ``keyword`` at a word start (``auth`` hits ``authentication``)."""

    return re.compile(rf"(?<![A-Za-z0-9]){re.escape(keyword)}", re.IGNORECASE)


__all__ = [
    "Predicate",
    "Rule",
    "RuleHit",
    "count_matches",
    "evaluate",
    "first_match",
    "total_by_label",
    "word_prefix_pattern",
]
