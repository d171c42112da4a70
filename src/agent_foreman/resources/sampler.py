"""
agent-foreman: process resource sampling

File: src/agent_foreman/resources/sampler.py

Purpose
- Capture lightweight process snapshots while a usage session is active.

Functional requirements
- CPU percentage is derived from idle/total CPU-time deltas between two
  consecutive readings; the first reading of a sampler reports the
  since-boot ratio.
- Memory figures come from the current process (RSS, VMS) plus the host's
  used-memory percentage.
- Each sampler keeps only the most recent ``retention`` samples.
- Samplers run on a daemon thread and stop promptly when asked.
"""

from __future__ import annotations

import os
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import psutil
import structlog

from agent_foreman.utils.clock import Clock, isoformat_z, system_clock

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ProcessSample:
    """One point-in-time process resource reading."""

    timestamp: datetime
    cpu_percent: float
    rss_bytes: int
    vms_bytes: int
    system_memory_percent: float

    def to_payload(self) -> dict[str, object]:
        return {
            "timestamp": isoformat_z(self.timestamp),
            "cpuPercent": round(self.cpu_percent, 2),
            "rssBytes": self.rss_bytes,
            "vmsBytes": self.vms_bytes,
            "systemMemoryPercent": round(self.system_memory_percent, 2),
        }


@dataclass(frozen=True, slots=True)
class _CpuTicks:
    idle: float
    total: float


def _read_cpu_ticks() -> _CpuTicks:
    times = psutil.cpu_times()
    total = float(sum(times))
    idle = float(times.idle) + float(getattr(times, "iowait", 0.0))
    return _CpuTicks(idle=idle, total=total)


def _cpu_percent(previous: _CpuTicks | None, current: _CpuTicks) -> float:
    if previous is None:
        idle, total = current.idle, current.total
    else:
        idle, total = current.idle - previous.idle, current.total - previous.total
    if total <= 0:
        return 0.0
    return max(0.0, min(100.0, 100.0 * (1.0 - idle / total)))


def take_sample(
    *,
    previous_ticks: _CpuTicks | None = None,
    clock: Clock = system_clock,
    pid: int | None = None,
) -> tuple[ProcessSample, _CpuTicks]:
    """Read one sample; returns the CPU ticks to feed into the next call."""

    ticks = _read_cpu_ticks()
    memory = psutil.Process(os.getpid() if pid is None else pid).memory_info()
    sample = ProcessSample(
        timestamp=clock(),
        cpu_percent=_cpu_percent(previous_ticks, ticks),
        rss_bytes=int(memory.rss),
        vms_bytes=int(memory.vms),
        system_memory_percent=float(psutil.virtual_memory().percent),
    )
    return sample, ticks


class SessionSampler:
    """Ring buffer of samples for one session, filled by a background thread."""

    def __init__(
        self,
        session_id: str,
        *,
        interval_seconds: float,
        retention: int,
        clock: Clock = system_clock,
        reader: Callable[..., tuple[ProcessSample, _CpuTicks]] = take_sample,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if retention < 1:
            raise ValueError("retention must be >= 1")
        self.session_id = session_id
        self._interval = interval_seconds
        self._clock = clock
        self._reader = reader
        self._samples: deque[ProcessSample] = deque(maxlen=retention)
        self._ticks: _CpuTicks | None = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"foreman-sampler-{self.session_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        self._thread = None

    def sample_once(self) -> ProcessSample:
        sample, ticks = self._reader(previous_ticks=self._ticks, clock=self._clock)
        with self._lock:
            self._ticks = ticks
            self._samples.append(sample)
        return sample

    def samples(self) -> list[ProcessSample]:
        with self._lock:
            return list(self._samples)

    def latest(self) -> ProcessSample | None:
        with self._lock:
            return self._samples[-1] if self._samples else None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.sample_once()
            except psutil.Error as exc:
                logger.warning("resource_sample_failed", session_id=self.session_id, error=str(exc))
            if self._stop.wait(self._interval):
                break


__all__ = ["ProcessSample", "SessionSampler", "take_sample"]
