"""
agent-foreman

File: src/agent_foreman/observability/logging.py

Purpose
- One JSON line per log event for a foreman session, written off the calling
  thread through a bounded queue.
- structlog is the logging front end; stdlib ``logging`` owns the handlers.

Functional requirements
- Every line carries ``timestamp``, ``level``, ``logger``, ``message`` and the
  ``session_id``. Correlation keys (workflow run, agent, ticket) bound with
  ``correlation_scope`` are lifted to the top level; all other event data goes
  under ``fields``.
- Secret-looking keys and credential-shaped strings are masked unless
  redaction is disabled in configuration.
- A full queue drops records and counts them instead of blocking callers.
"""

from __future__ import annotations

import logging
import logging.handlers
import queue
import re
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog
from structlog.typing import EventDict, WrappedLogger

REDACTED_VALUE: Final[str] = "***REDACTED***"
CORRELATION_KEYS: Final[tuple[str, ...]] = ("session_id", "workflow_run_id", "agent_id", "ticket_id")

_RECORD_ATTRS: Final[frozenset[str]] = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "correlation",
}

# Substring matches; ``*_env`` keys name an environment variable and are kept.
_SECRET_KEY_PARTS: Final[tuple[str, ...]] = (
    "secret",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)
# Exact matches, so ``input_tokens`` and friends survive.
_SECRET_KEYS: Final[frozenset[str]] = frozenset(
    {"token", "access_token", "refresh_token", "id_token", "bearer"}
)
_SECRET_TEXT: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b(\s*[:=]\s*)[^\s,;]+"),
        rf"\1\2{REDACTED_VALUE}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED_VALUE}"),
    (re.compile(r"\bsk-(?:or|ant)-[A-Za-z0-9_-]{12,}"), REDACTED_VALUE),
    (re.compile(r"\bsk-[A-Za-z0-9]{12,}\b"), REDACTED_VALUE),
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    session_id: str
    log_dir: Path | str = Path("logs")
    logger_name: str = "agent_foreman"
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = "foreman.jsonl"
    log_to_stdout: bool = False
    redact_secrets: bool = True

    @classmethod
    def from_observability(cls, observability: Mapping[str, object], *, session_id: str) -> LoggingConfig:
        """Build from the ``[observability]`` section of ``foreman.toml``."""

        level = observability.get("log_level", "INFO")
        log_dir = observability.get("log_dir", "logs")
        return cls(
            session_id=session_id,
            log_dir=log_dir if isinstance(log_dir, (str, Path)) else "logs",
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(observability.get("log_to_stdout", False)),
            redact_secrets=bool(observability.get("redact_secrets", True)),
        )


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Queue handler that never blocks. Correlation is captured on the caller's thread."""

    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        prepared = super().prepare(record)
        prepared.correlation = {
            key: value
            for key, value in structlog.contextvars.get_contextvars().items()
            if key in CORRELATION_KEYS
        }
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            # emit() runs under the handler lock
            self.dropped += 1


class StructuredLoggingHandle:
    """Owner of an active logging setup. ``shutdown`` drains the queue and closes sinks."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session_id: str,
        log_path: Path,
        queue_handler: _DroppingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.session_id = session_id
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._lock = threading.Lock()
        self._is_shutdown = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def shutdown(self) -> None:
        with self._lock:
            if self._is_shutdown:
                return
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._is_shutdown = True


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Install queue-backed JSON-lines logging under ``config.logger_name``.

    Existing handlers on that logger are replaced. The caller owns the handle.
    """

    session_id = _nonblank(config.session_id, "session_id")
    name = _nonblank(config.logger_name, "logger_name")
    filename = _nonblank(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must be a bare file name")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level(config.level)

    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / filename

    formatter = _json_formatter(session_id, redact=config.redact_secrets)
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    log_queue: queue.Queue[Any] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    configure_structlog()
    return StructuredLoggingHandle(
        logger=logger,
        session_id=session_id,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )


def configure_structlog() -> None:
    """Route structlog events into stdlib logging; keyword arguments become record extras."""

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation keys for every log event emitted inside the block."""

    bound = {key: value for key, value in fields.items() if value}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def redact_text(text: str) -> str:
    for pattern, replacement in _SECRET_TEXT:
        text = pattern.sub(replacement, text)
    return text


def default_log_redactor(value: Any, *, key: str | None = None) -> Any:
    """Deep-mask secret-looking keys and credential-shaped strings."""

    if key is not None and _is_secret_key(key):
        return REDACTED_VALUE
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, Mapping):
        return {str(k): default_log_redactor(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [default_log_redactor(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Formatter pipeline
# ---------------------------------------------------------------------------


def _json_formatter(session_id: str, *, redact: bool) -> structlog.stdlib.ProcessorFormatter:
    def shape(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
        record: logging.LogRecord = event_dict["_record"]
        line: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": str(event_dict.get("event", "")),
            "session_id": session_id,
        }
        line.update(getattr(record, "correlation", {}))
        extras = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and not k.startswith("_")}
        for key in CORRELATION_KEYS:
            value = extras.pop(key, None)
            if isinstance(value, str) and value.strip():
                line[key] = value.strip()
        if extras:
            line["fields"] = extras
        if redact:
            line["message"] = redact_text(line["message"])
            if "fields" in line:
                line["fields"] = default_log_redactor(line["fields"])
        return line

    return structlog.stdlib.ProcessorFormatter(
        processors=[
            shape,
            structlog.processors.JSONRenderer(
                sort_keys=True,
                separators=(",", ":"),
                ensure_ascii=False,
                default=_json_default,
            ),
        ],
    )


def _json_default(value: object) -> object:
    if isinstance(value, datetime):
        aware = value if value.tzinfo else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if isinstance(value, (Path, bytes)):
        return value.decode("utf-8", "replace") if isinstance(value, bytes) else str(value)
    return repr(value)


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    if lowered.endswith("_env"):
        return False
    return lowered in _SECRET_KEYS or any(part in lowered for part in _SECRET_KEY_PARTS)


def _nonblank(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string")
    return value.strip()


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return resolved


__all__ = [
    "CORRELATION_KEYS",
    "REDACTED_VALUE",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "redact_text",
    "setup_structured_logging",
]
