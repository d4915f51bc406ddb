"""
Circuit breaker for the transcription endpoint.

    CLOSED ---(failures >= threshold, or failure rate >= 0.5
               over >= min_requests in the window)---> OPEN
    OPEN   ---(reset_timeout elapsed)------------------> HALF_OPEN
    HALF_OPEN --(half_open_requests successes)---------> CLOSED
    HALF_OPEN --(any failure)--------------------------> OPEN

The rolling window holds (timestamp, success) pairs and is pruned to
monitoring_period on every request. While OPEN nothing is issued before
next_retry_at; HALF_OPEN admits exactly half_open_requests probes.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from constants import (
    CIRCUIT_FAILURE_RATE_THRESHOLD,
    CIRCUIT_FAILURE_THRESHOLD,
    CIRCUIT_HALF_OPEN_REQUESTS,
    CIRCUIT_MIN_REQUESTS,
    CIRCUIT_MONITORING_PERIOD_S,
    CIRCUIT_RESET_TIMEOUT_S,
)
from errors import CircuitOpenError
from observability.logger import log_event

T = TypeVar("T")


class CircuitPhase(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD
    reset_timeout_s: float = CIRCUIT_RESET_TIMEOUT_S
    monitoring_period_s: float = CIRCUIT_MONITORING_PERIOD_S
    failure_rate_threshold: float = CIRCUIT_FAILURE_RATE_THRESHOLD
    min_requests: int = CIRCUIT_MIN_REQUESTS
    half_open_requests: int = CIRCUIT_HALF_OPEN_REQUESTS


StateChangeCallback = Callable[[CircuitPhase, CircuitPhase], None]
FailureCallback = Callable[[BaseException], None]


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig = CircuitBreakerConfig(),
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateChangeCallback] = None,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        self.name = name
        self.config = config
        self._clock = clock
        self._on_state_change = on_state_change
        self._on_failure = on_failure

        self._phase = CircuitPhase.CLOSED
        self._failure_count = 0
        self._window: deque[tuple[float, bool]] = deque()
        self._next_retry_at: Optional[float] = None

        self._half_open_admitted = 0
        self._half_open_successes = 0

        self.total_requests = 0
        self.total_rejected = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def phase(self) -> CircuitPhase:
        return self._phase

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def next_retry_at(self) -> Optional[float]:
        return self._next_retry_at

    def _transition(self, target: CircuitPhase, *, reason: str) -> None:
        previous = self._phase
        if previous is target:
            return
        self._phase = target

        if target is CircuitPhase.OPEN:
            self._next_retry_at = self._clock() + self.config.reset_timeout_s
        elif target is CircuitPhase.HALF_OPEN:
            self._half_open_admitted = 0
            self._half_open_successes = 0
        elif target is CircuitPhase.CLOSED:
            self._failure_count = 0
            self._next_retry_at = None

        log_event({
            "event_type": "CIRCUIT_STATE_CHANGED",
            "zone": "worker",
            "circuit": self.name,
            "from": previous.value,
            "to": target.value,
            "reason": reason,
            "failure_count": self._failure_count,
        })
        if self._on_state_change is not None:
            self._on_state_change(previous, target)

    def _prune(self, now: float) -> None:
        horizon = now - self.config.monitoring_period_s
        while self._window and self._window[0][0] < horizon:
            self._window.popleft()

    def failure_rate(self) -> float:
        if not self._window:
            return 0.0
        failures = sum(1 for _, ok in self._window if not ok)
        return failures / len(self._window)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def allow_request(self) -> bool:
        """
        Decide whether one request may go out now. An admitted HALF_OPEN
        probe consumes one of the probe slots.
        """
        now = self._clock()
        self._prune(now)

        if self._phase is CircuitPhase.OPEN:
            assert self._next_retry_at is not None
            if now < self._next_retry_at:
                self.total_rejected += 1
                return False
            self._transition(CircuitPhase.HALF_OPEN, reason="reset_timeout")

        if self._phase is CircuitPhase.HALF_OPEN:
            if self._half_open_admitted >= self.config.half_open_requests:
                self.total_rejected += 1
                return False
            self._half_open_admitted += 1

        self.total_requests += 1
        return True

    def record_success(self) -> None:
        now = self._clock()
        self._window.append((now, True))

        if self._phase is CircuitPhase.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self.config.half_open_requests:
                self._transition(CircuitPhase.CLOSED, reason="probes_succeeded")
        elif self._phase is CircuitPhase.CLOSED:
            self._failure_count = 0

    def record_failure(self, error: BaseException) -> None:
        now = self._clock()
        self._window.append((now, False))
        self._failure_count += 1

        log_event({
            "event_type": "CIRCUIT_FAILURE",
            "zone": "worker",
            "circuit": self.name,
            "phase": self._phase.value,
            "failure_count": self._failure_count,
            "exception": type(error).__name__,
            "message": str(error),
        })
        if self._on_failure is not None:
            self._on_failure(error)

        if self._phase is CircuitPhase.HALF_OPEN:
            self._transition(CircuitPhase.OPEN, reason="probe_failed")
            return

        if self._phase is CircuitPhase.CLOSED:
            self._prune(now)
            if self._failure_count >= self.config.failure_threshold:
                self._transition(CircuitPhase.OPEN, reason="failure_threshold")
            elif (
                len(self._window) >= self.config.min_requests
                and self.failure_rate() >= self.config.failure_rate_threshold
            ):
                self._transition(CircuitPhase.OPEN, reason="failure_rate")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        fallback: Optional[Callable[[], T]] = None,
    ) -> T:
        """
        Run fn through the breaker.

        Raises:
            CircuitOpenError when short-circuited and no fallback is given.
            Whatever fn raises, after recording the failure.
        """
        if not self.allow_request():
            if fallback is not None:
                return fallback()
            raise CircuitOpenError(
                f"circuit {self.name} is {self._phase.value}",
                code="circuit-open",
            )
        try:
            result = await fn()
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result

    # ------------------------------------------------------------------
    # Manual control
    # ------------------------------------------------------------------

    def force_open(self) -> None:
        self._transition(CircuitPhase.OPEN, reason="forced")

    def force_close(self) -> None:
        self._transition(CircuitPhase.CLOSED, reason="forced")

    def reset(self) -> None:
        self._window.clear()
        self._failure_count = 0
        self._transition(CircuitPhase.CLOSED, reason="reset")
        self._next_retry_at = None

    def snapshot(self) -> dict[str, Any]:
        retry_in = None
        if self._next_retry_at is not None:
            retry_in = max(0.0, self._next_retry_at - self._clock())
        return {
            "name": self.name,
            "phase": self._phase.value,
            "failure_count": self._failure_count,
            "window_size": len(self._window),
            "failure_rate": round(self.failure_rate(), 3),
            "retry_in_s": retry_in,
            "total_requests": self.total_requests,
            "total_rejected": self.total_rejected,
        }
