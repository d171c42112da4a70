"""
agent-foreman: clock and timestamp helpers

File: src/agent_foreman/utils/clock.py

Purpose
- One timestamp format for every persisted record (ISO-8601, UTC, ``Z``).
- Injectable clock and sleep callables so TTL and backoff logic is testable.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

Clock = Callable[[], datetime]
Sleeper = Callable[[float], None]

__all__ = [
    "Clock",
    "FrozenClock",
    "Sleeper",
    "UTC",
    "isoformat_z",
    "parse_timestamp",
    "system_clock",
    "system_sleep",
]


def system_clock() -> datetime:
    return datetime.now(UTC)


def system_sleep(seconds: float) -> None:
    if seconds > 0:
        time.sleep(seconds)


def isoformat_z(value: datetime) -> str:
    """Render an aware or naive datetime as UTC ISO-8601 with a ``Z`` suffix."""

    if value.tzinfo is None or value.utcoffset() is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(text: str) -> datetime:
    """Parse a persisted timestamp back into an aware UTC datetime."""

    normalized = text.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


class FrozenClock:
    """Manually advanced clock; also usable as a sleeper that advances time."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start if start is not None else datetime(2026, 1, 1, tzinfo=UTC)
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self._now

    def advance(self, *, seconds: float = 0.0, minutes: float = 0.0, hours: float = 0.0) -> None:
        self._now += timedelta(seconds=seconds, minutes=minutes, hours=hours)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds=seconds)
