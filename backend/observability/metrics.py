"""
Timing helpers for observability.

Responsibilities:
- Measure durations using monotonic time (immune to clock changes)
- Emit one METRIC_TIMER JSONL event per measurement via observability.logger
- Hand the measured duration back to the caller so it can feed adaptation

Design notes:
- Durations use monotonic time for correctness
- Event timestamps (ts_ms) use wall-clock time for human readability
- Prefer the `timed()` context manager to avoid leaked timers
"""

from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from observability.logger import log_event


# -----------------------------------------------------------------------------
# Internal timer storage
# -----------------------------------------------------------------------------
# timer_id -> (metric_name, start_time_ns)
_active_timers: dict[str, tuple[str, int]] = {}


@dataclass
class TimerResult:
    """
    Filled in when a `timed()` block exits.

    duration_ms stays None while the block is running.
    """
    duration_ms: int | None = None

    @property
    def duration_s(self) -> float:
        return (self.duration_ms or 0) / 1000.0


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

def start_timer(name: str) -> str:
    """
    Start a monotonic timer.

    Returns:
        timer_id (str): Opaque ID required to stop the timer later.

    Callers MUST call stop_timer() in a finally block
    unless using the `timed()` context manager.
    """
    timer_id = f"timer_{uuid.uuid4().hex[:12]}"
    _active_timers[timer_id] = (name, time.monotonic_ns())
    return timer_id


def stop_timer(
    timer_id: str,
    *,
    zone: str | None = None,
    user_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> int | None:
    """
    Stop a previously started timer and emit a metric event.

    Returns:
        duration_ms if the timer existed, else None
    """
    entry = _active_timers.pop(timer_id, None)
    if entry is None:
        return None

    name, start_ns = entry
    duration_ms = (time.monotonic_ns() - start_ns) // 1_000_000

    log_event({
        "ts_ms": int(time.time() * 1000),
        "event_type": "METRIC_TIMER",
        "metric": name,
        "value_ms": duration_ms,
        "zone": zone,
        "user_id": user_id,
        "details": details or {},
    })

    return duration_ms


def active_timer_count() -> int:
    return len(_active_timers)


# -----------------------------------------------------------------------------
# Safe API: context manager
# -----------------------------------------------------------------------------

@contextmanager
def timed(
    name: str,
    *,
    zone: str | None = None,
    user_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[TimerResult]:
    """
    Context manager for measuring durations safely.

    Guarantees:
    - Timer is ALWAYS stopped (no leaks)
    - Metric is emitted exactly once
    - Exceptions inside the block do NOT suppress timing

    Usage:
        with timed("transcription_latency", zone="worker", user_id=uid) as t:
            await client.transcribe(chunk)
        buffer.update_metrics(latency_s=t.duration_s)
    """
    result = TimerResult()
    timer_id = start_timer(name)
    try:
        yield result
    finally:
        result.duration_ms = stop_timer(
            timer_id,
            zone=zone,
            user_id=user_id,
            details=details,
        )
