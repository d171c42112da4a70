"""
agent-foreman: resource governor

File: src/agent_foreman/resources/governor.py

Purpose
- Account tokens and cost per usage session and globally.
- Check rolling ceilings after every tracked call and keep a capped alert log.
- Aggregate usage into reports and a per-call CSV export.

Functional requirements
- Limit checks consider sessions by start time: tokens over the trailing hour,
  cost over the trailing day, and the count of currently active sessions.
  Process CPU and resident memory are checked against a sampler reading.
- Alerts are advisory; the governor never blocks a caller.
- All state lives in the ``usage`` document and is written with
  compare-and-swap updates.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Final, Literal

import structlog

from agent_foreman.constants import USAGE_DOCUMENT
from agent_foreman.persistence.documents import DocumentStore, Payload, append_capped
from agent_foreman.resources.pricing import calculate_cost
from agent_foreman.resources.sampler import ProcessSample
from agent_foreman.utils.clock import Clock, isoformat_z, parse_timestamp, system_clock
from agent_foreman.utils.fs import atomic_write

ReportPeriod = Literal["hour", "day", "week", "all"]
AlertSeverity = Literal["high", "medium", "low"]

DEFAULT_EXPORT_FILENAME: Final[str] = "agent-cost-report.csv"
CSV_HEADER: Final[tuple[str, ...]] = (
    "Date",
    "Agent",
    "Task",
    "Model",
    "Input Tokens",
    "Output Tokens",
    "Cost",
)
TOP_TASK_COUNT: Final[int] = 10
_BYTES_PER_GB: Final[int] = 1024**3

_PERIODS: Final[Mapping[str, timedelta]] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}

logger = structlog.get_logger(__name__)


class ResourceError(RuntimeError):
    """Base error for resource governor failures."""


class UnknownSessionError(ResourceError):
    """Raised when a session id is not present in the usage log."""


@dataclass(frozen=True, slots=True)
class ResourceAlert:
    type: str
    message: str
    severity: AlertSeverity
    timestamp: str

    def to_payload(self) -> dict[str, object]:
        return {
            "type": self.type,
            "message": self.message,
            "severity": self.severity,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class TrackedCall:
    """Outcome of one tracked API call: its cost plus any ceilings it tripped."""

    session_id: str
    cost: float
    alerts: tuple[ResourceAlert, ...] = ()


@dataclass(frozen=True, slots=True)
class UsageReport:
    period: str
    summary: dict[str, object]
    by_agent: dict[str, dict[str, object]]
    by_model: dict[str, dict[str, object]]
    top_tasks: list[dict[str, object]] = field(default_factory=list)

    def to_payload(self) -> dict[str, object]:
        return {
            "period": self.period,
            "summary": self.summary,
            "byAgent": self.by_agent,
            "byModel": self.by_model,
            "topTasks": self.top_tasks,
        }


def _empty_usage() -> Payload:
    return {
        "sessions": [],
        "totals": {"tokens": 0, "cost": 0.0, "apiCalls": 0},
        "alerts": [],
    }


class ResourceGovernor:
    """Usage sessions, cost accounting and advisory ceilings."""

    def __init__(
        self,
        store: DocumentStore,
        config: Mapping[str, object],
        *,
        clock: Clock = system_clock,
    ) -> None:
        self._store = store
        self._clock = clock
        self.max_tokens_per_hour = int(config.get("max_tokens_per_hour", 500_000))  # type: ignore[arg-type]
        self.max_cost_per_day = float(config.get("max_cost_per_day", 50.0))  # type: ignore[arg-type]
        self.max_active_agents = int(config.get("max_active_agents", 5))  # type: ignore[arg-type]
        self.max_memory_gb = float(config.get("max_memory_gb", 4.0))  # type: ignore[arg-type]
        self.max_cpu_percent = float(config.get("max_cpu_percent", 80.0))  # type: ignore[arg-type]
        self.alert_log_cap = int(config.get("alert_log_cap", 1000))  # type: ignore[arg-type]

    # Sessions -------------------------------------------------------------

    def start_session(self, agent_id: str, task_id: str) -> str:
        now = self._clock()
        base_id = f"{agent_id}-{task_id}-{int(now.timestamp() * 1000)}"

        def mutate(payload: Payload) -> str:
            sessions = _sessions(payload)
            existing = {str(item.get("id")) for item in sessions}
            session_id = base_id
            suffix = 1
            while session_id in existing:
                suffix += 1
                session_id = f"{base_id}-{suffix}"
            sessions.append(
                {
                    "id": session_id,
                    "agentId": agent_id,
                    "taskId": task_id,
                    "startTime": isoformat_z(now),
                    "endTime": None,
                    "tokens": {"input": 0, "output": 0},
                    "apiCalls": [],
                    "cost": 0.0,
                    "status": "active",
                    "samples": [],
                }
            )
            return session_id

        session_id = self._store.update(USAGE_DOCUMENT, mutate, default_factory=_empty_usage)
        logger.info("usage_session_started", session_id=session_id, agent_id=agent_id, ticket_id=task_id)
        return session_id

    def track_api_call(
        self,
        session_id: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
    ) -> TrackedCall:
        """Record one call against an active session, then run the limit checks."""

        cost = calculate_cost(model, input_tokens, output_tokens)
        timestamp = isoformat_z(self._clock())

        def mutate(payload: Payload) -> None:
            session = _find_session(payload, session_id)
            if session.get("status") != "active":
                raise ResourceError(f"usage session {session_id!r} is already completed")
            tokens = session.setdefault("tokens", {"input": 0, "output": 0})
            tokens["input"] = int(tokens.get("input", 0)) + input_tokens
            tokens["output"] = int(tokens.get("output", 0)) + output_tokens
            session["cost"] = float(session.get("cost", 0.0)) + cost
            session.setdefault("apiCalls", []).append(
                {
                    "timestamp": timestamp,
                    "model": model,
                    "inputTokens": input_tokens,
                    "outputTokens": output_tokens,
                    "cost": cost,
                }
            )
            totals = _totals(payload)
            totals["tokens"] = int(totals.get("tokens", 0)) + input_tokens + output_tokens
            totals["cost"] = float(totals.get("cost", 0.0)) + cost
            totals["apiCalls"] = int(totals.get("apiCalls", 0)) + 1

        self._store.update(USAGE_DOCUMENT, mutate, default_factory=_empty_usage)
        logger.info(
            "api_call_tracked",
            session_id=session_id,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=round(cost, 6),
        )
        return TrackedCall(session_id=session_id, cost=cost, alerts=tuple(self.check_resource_limits()))

    def end_session(
        self,
        session_id: str,
        samples: Sequence[ProcessSample] | None = None,
    ) -> dict[str, object]:
        """Mark a session completed and attach its retained samples."""

        end_time = isoformat_z(self._clock())

        def mutate(payload: Payload) -> dict[str, object]:
            session = _find_session(payload, session_id)
            if session.get("status") == "active":
                session["status"] = "completed"
                session["endTime"] = end_time
            if samples:
                session["samples"] = [sample.to_payload() for sample in samples]
            return dict(session)

        session = self._store.update(USAGE_DOCUMENT, mutate, default_factory=_empty_usage)
        logger.info(
            "usage_session_ended",
            session_id=session_id,
            cost=round(float(session.get("cost", 0.0)), 6),  # type: ignore[arg-type]
            api_calls=len(session.get("apiCalls", [])),  # type: ignore[arg-type]
        )
        return session

    def session(self, session_id: str) -> dict[str, object]:
        return dict(_find_session(self._load(), session_id))

    # Limits ---------------------------------------------------------------

    def current_usage(self, payload: Payload | None = None) -> dict[str, object]:
        data = self._load() if payload is None else payload
        now = self._clock()
        hour_sessions = _sessions_since(data, now - timedelta(hours=1))
        day_sessions = _sessions_since(data, now - timedelta(days=1))
        return {
            "tokensLastHour": sum(_session_tokens(item) for item in hour_sessions),
            "costLastDay": sum(float(item.get("cost", 0.0)) for item in day_sessions),
            "activeSessions": sum(1 for item in _sessions(data) if item.get("status") == "active"),
        }

    def check_resource_limits(self, latest_sample: ProcessSample | None = None) -> list[ResourceAlert]:
        """Evaluate every ceiling once and append any violations to the alert log.

        CPU and memory ceilings are only checked when a process sample is given.
        """

        usage = self.current_usage()
        timestamp = isoformat_z(self._clock())
        alerts: list[ResourceAlert] = []

        tokens = int(usage["tokensLastHour"])  # type: ignore[arg-type]
        if tokens > self.max_tokens_per_hour:
            alerts.append(
                ResourceAlert(
                    type="token_limit",
                    message=f"Token limit exceeded: {tokens}/{self.max_tokens_per_hour}",
                    severity="high",
                    timestamp=timestamp,
                )
            )
        cost = float(usage["costLastDay"])  # type: ignore[arg-type]
        if cost > self.max_cost_per_day:
            alerts.append(
                ResourceAlert(
                    type="cost_limit",
                    message=f"Daily cost limit exceeded: ${cost:.2f}/${self.max_cost_per_day:.2f}",
                    severity="high",
                    timestamp=timestamp,
                )
            )
        active = int(usage["activeSessions"])  # type: ignore[arg-type]
        if active > self.max_active_agents:
            alerts.append(
                ResourceAlert(
                    type="agent_limit",
                    message=f"Too many active agents: {active}/{self.max_active_agents}",
                    severity="medium",
                    timestamp=timestamp,
                )
            )
        if latest_sample is not None:
            alerts.extend(self._process_alerts(latest_sample, timestamp))
        self._record_alerts(alerts)
        return alerts

    def check_process_limits(self, sample: ProcessSample) -> list[ResourceAlert]:
        """Check one process sample against the CPU and memory ceilings."""

        alerts = self._process_alerts(sample, isoformat_z(self._clock()))
        self._record_alerts(alerts)
        return alerts

    def _process_alerts(self, sample: ProcessSample, timestamp: str) -> list[ResourceAlert]:
        alerts: list[ResourceAlert] = []
        rss_gb = sample.rss_bytes / _BYTES_PER_GB
        if rss_gb > self.max_memory_gb:
            alerts.append(
                ResourceAlert(
                    type="memory_limit",
                    message=f"Memory limit exceeded: {rss_gb:.2f}GB/{self.max_memory_gb:.2f}GB",
                    severity="medium",
                    timestamp=timestamp,
                )
            )
        if sample.cpu_percent > self.max_cpu_percent:
            alerts.append(
                ResourceAlert(
                    type="cpu_limit",
                    message=f"CPU limit exceeded: {sample.cpu_percent:.1f}%/{self.max_cpu_percent:.1f}%",
                    severity="medium",
                    timestamp=timestamp,
                )
            )
        return alerts

    def _record_alerts(self, alerts: Sequence[ResourceAlert]) -> None:
        if not alerts:
            return

        def mutate(payload: Payload) -> None:
            log = payload.setdefault("alerts", [])
            for alert in alerts:
                append_capped(log, alert.to_payload(), self.alert_log_cap)

        self._store.update(USAGE_DOCUMENT, mutate, default_factory=_empty_usage)
        for alert in alerts:
            logger.warning(
                "resource_limit_exceeded",
                alert_type=alert.type,
                severity=alert.severity,
                detail=alert.message,
            )

    def alerts(self) -> list[dict[str, object]]:
        return list(self._load().get("alerts", []))  # type: ignore[arg-type]

    def limits_view(self, latest_sample: ProcessSample | None = None) -> dict[str, object]:
        """Configured ceilings next to current usage and the latest process sample."""

        return {
            "limits": {
                "maxTokensPerHour": self.max_tokens_per_hour,
                "maxCostPerDay": self.max_cost_per_day,
                "maxActiveAgents": self.max_active_agents,
                "maxMemoryGB": self.max_memory_gb,
                "maxCPUPercent": self.max_cpu_percent,
            },
            "current": self.current_usage(),
            "latestSample": latest_sample.to_payload() if latest_sample is not None else None,
        }

    # Reporting ------------------------------------------------------------

    def report(self, period: str = "day") -> UsageReport:
        """Aggregate sessions started within ``period`` (hour/day/week; anything else is all)."""

        data = self._load()
        window = _PERIODS.get(period)
        if window is None:
            period = "all"
            sessions = _sessions(data)
        else:
            sessions = _sessions_since(data, self._clock() - window)

        by_agent: dict[str, dict[str, object]] = {}
        by_model: dict[str, dict[str, object]] = {}
        total_tokens = 0
        total_cost = 0.0
        total_calls = 0
        for session in sessions:
            tokens = _session_tokens(session)
            cost = float(session.get("cost", 0.0))
            calls = list(session.get("apiCalls", []))
            total_tokens += tokens
            total_cost += cost
            total_calls += len(calls)

            agent = by_agent.setdefault(
                str(session.get("agentId")), {"sessions": 0, "tokens": 0, "cost": 0.0, "apiCalls": 0}
            )
            agent["sessions"] = int(agent["sessions"]) + 1  # type: ignore[arg-type]
            agent["tokens"] = int(agent["tokens"]) + tokens  # type: ignore[arg-type]
            agent["cost"] = float(agent["cost"]) + cost  # type: ignore[arg-type]
            agent["apiCalls"] = int(agent["apiCalls"]) + len(calls)  # type: ignore[arg-type]

            for call in calls:
                model = by_model.setdefault(str(call.get("model")), {"calls": 0, "tokens": 0, "cost": 0.0})
                model["calls"] = int(model["calls"]) + 1  # type: ignore[arg-type]
                model["tokens"] = (
                    int(model["tokens"])  # type: ignore[arg-type]
                    + int(call.get("inputTokens", 0))
                    + int(call.get("outputTokens", 0))
                )
                model["cost"] = float(model["cost"]) + float(call.get("cost", 0.0))  # type: ignore[arg-type]

        ranked = sorted(sessions, key=lambda item: float(item.get("cost", 0.0)), reverse=True)
        top_tasks = [
            {
                "taskId": item.get("taskId"),
                "agentId": item.get("agentId"),
                "tokens": _session_tokens(item),
                "cost": float(item.get("cost", 0.0)),
            }
            for item in ranked[:TOP_TASK_COUNT]
        ]
        return UsageReport(
            period=period,
            summary={
                "totalSessions": len(sessions),
                "activeSessions": sum(1 for item in sessions if item.get("status") == "active"),
                "totalTokens": total_tokens,
                "totalCost": total_cost,
                "totalAPICalls": total_calls,
            },
            by_agent=by_agent,
            by_model=by_model,
            top_tasks=top_tasks,
        )

    def export_csv(self, path: str | Path = DEFAULT_EXPORT_FILENAME) -> Path:
        """Write one CSV row per tracked API call and return the written path."""

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        rows = 0
        for session in _sessions(self._load()):
            for call in session.get("apiCalls", []):
                writer.writerow(
                    [
                        call.get("timestamp"),
                        session.get("agentId"),
                        session.get("taskId"),
                        call.get("model"),
                        call.get("inputTokens"),
                        call.get("outputTokens"),
                        f"{float(call.get('cost', 0.0)):.4f}",
                    ]
                )
                rows += 1
        target = Path(path)
        atomic_write(target, buffer.getvalue())
        logger.info("usage_exported", path=str(target), rows=rows)
        return target

    def _load(self) -> Payload:
        return self._store.read(USAGE_DOCUMENT, _empty_usage)


def _sessions(payload: Payload) -> list[dict[str, object]]:
    sessions = payload.setdefault("sessions", [])
    assert isinstance(sessions, list)
    return sessions


def _totals(payload: Payload) -> dict[str, object]:
    totals = payload.setdefault("totals", {"tokens": 0, "cost": 0.0, "apiCalls": 0})
    assert isinstance(totals, dict)
    return totals


def _find_session(payload: Payload, session_id: str) -> dict[str, object]:
    for session in _sessions(payload):
        if session.get("id") == session_id:
            return session
    raise UnknownSessionError(f"unknown usage session {session_id!r}")


def _session_tokens(session: Mapping[str, object]) -> int:
    tokens = session.get("tokens") or {}
    assert isinstance(tokens, Mapping)
    return int(tokens.get("input", 0)) + int(tokens.get("output", 0))


def _sessions_since(payload: Payload, cutoff: datetime) -> list[dict[str, object]]:
    return [
        item
        for item in _sessions(payload)
        if isinstance(item.get("startTime"), str) and parse_timestamp(str(item["startTime"])) >= cutoff
    ]


__all__ = [
    "CSV_HEADER",
    "DEFAULT_EXPORT_FILENAME",
    "ResourceAlert",
    "ResourceError",
    "ResourceGovernor",
    "TrackedCall",
    "UnknownSessionError",
    "UsageReport",
]
