"""
Reconnection coordinator.

Responsibilities:
- Snapshot the active user ids at trigger time
- Announce each attempt, probe the page zone, back off between failures
  (base * backoff^(n-1), clamped), give up after max_attempts
- On success, resume every preserved user concurrently and report which
  were restored and which failed
- Supersede: a new trigger cancels the in-flight run; the new run covers
  the union of both snapshots

Non-responsibilities:
- Sending messages (probe/resume/notify are injected coroutines)
- Deciding when a disconnect happened (the Bridge triggers)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from constants import (
    RECONNECT_BACKOFF,
    RECONNECT_BASE_DELAY_S,
    RECONNECT_MAX_ATTEMPTS,
    RECONNECT_MAX_DELAY_S,
    RECONNECT_PROBE_TIMEOUT_S,
    RECONNECT_RESUME_TIMEOUT_S,
)
from observability.logger import log_event
from protocol.messages import MessageType


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class ReconnectionPolicy:
    base_delay_s: float = RECONNECT_BASE_DELAY_S
    backoff: float = RECONNECT_BACKOFF
    max_delay_s: float = RECONNECT_MAX_DELAY_S
    max_attempts: int = RECONNECT_MAX_ATTEMPTS
    probe_timeout_s: float = RECONNECT_PROBE_TIMEOUT_S
    resume_timeout_s: float = RECONNECT_RESUME_TIMEOUT_S

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt N (1-based)."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        return min(self.base_delay_s * self.backoff ** (attempt - 1), self.max_delay_s)


@dataclass
class ReconnectionContext:
    user_ids: frozenset[str]
    reason: str
    disconnected_at_ms: int = field(default_factory=_now_ms)
    attempt: int = 0
    next_delay_s: float = 0.0

    def describe(self) -> dict[str, Any]:
        return {
            "user_ids": sorted(self.user_ids),
            "reason": self.reason,
            "disconnected_at_ms": self.disconnected_at_ms,
            "attempt": self.attempt,
            "next_delay_s": self.next_delay_s,
        }


@dataclass(frozen=True)
class ReconnectionOutcome:
    success: bool
    attempts: int
    restored: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()


Probe = Callable[[], Awaitable[bool]]
Resume = Callable[[str], Awaitable[bool]]
Notify = Callable[[MessageType, dict[str, Any]], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class ReconnectionCoordinator:
    def __init__(
        self,
        *,
        probe: Probe,
        resume: Resume,
        notify: Notify,
        policy: ReconnectionPolicy = ReconnectionPolicy(),
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._probe = probe
        self._resume = resume
        self._notify = notify
        self.policy = policy
        self._sleep = sleep

        self._context: Optional[ReconnectionContext] = None
        self._task: Optional[asyncio.Task[ReconnectionOutcome]] = None
        self.runs = 0
        self.last_outcome: Optional[ReconnectionOutcome] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def context(self) -> Optional[ReconnectionContext]:
        return self._context

    def trigger(self, user_ids: Iterable[str], *, reason: str) -> asyncio.Task[ReconnectionOutcome]:
        snapshot = frozenset(user_ids)
        if self.active and self._context is not None:
            snapshot |= self._context.user_ids
            assert self._task is not None
            self._task.cancel()
            log_event({
                "event_type": "RECONNECT_SUPERSEDED",
                "zone": "bridge",
                "reason": reason,
                "previous_reason": self._context.reason,
                "user_ids": sorted(snapshot),
            })

        context = ReconnectionContext(user_ids=snapshot, reason=reason)
        self._context = context
        self.runs += 1
        self._task = asyncio.create_task(self._run(context), name=f"reconnect-{self.runs}")
        return self._task

    async def cancel(self) -> None:
        task, self._task = self._task, None
        self._context = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self, ctx: ReconnectionContext) -> ReconnectionOutcome:
        log_event({"event_type": "RECONNECT_STARTED", "zone": "bridge", **ctx.describe()})

        connected = False
        for attempt in range(1, self.policy.max_attempts + 1):
            ctx.attempt = attempt
            await self._notify(MessageType.RECONNECTING, {"attempt": attempt, "reason": ctx.reason})
            if await self._probe():
                connected = True
                break
            if attempt == self.policy.max_attempts:
                break
            ctx.next_delay_s = self.policy.delay_for(attempt)
            log_event({
                "event_type": "RECONNECT_ATTEMPT_FAILED",
                "zone": "bridge",
                "attempt": attempt,
                "next_delay_s": ctx.next_delay_s,
            })
            await self._sleep(ctx.next_delay_s)

        if not connected:
            outcome = ReconnectionOutcome(success=False, attempts=ctx.attempt, failed=tuple(sorted(ctx.user_ids)))
            self._finish(ctx, outcome)
            await self._notify(MessageType.RECONNECTION_FAILED, {"attempts": ctx.attempt})
            return outcome

        users = sorted(ctx.user_ids)
        results = await asyncio.gather(*(self._resume(u) for u in users), return_exceptions=True)
        restored = tuple(u for u, r in zip(users, results) if r is True)
        failed = tuple(u for u, r in zip(users, results) if r is not True)
        for user_id, result in zip(users, results):
            if isinstance(result, BaseException):
                log_event({
                    "event_type": "RECONNECT_RESUME_ERROR",
                    "zone": "bridge",
                    "user_id": user_id,
                    "exception": type(result).__name__,
                    "message": str(result),
                })

        outcome = ReconnectionOutcome(success=True, attempts=ctx.attempt, restored=restored, failed=failed)
        self._finish(ctx, outcome)
        await self._notify(MessageType.RECONNECTED, {
            "attempts": ctx.attempt,
            "restored": list(restored),
            "failed": list(failed),
        })
        return outcome

    def _finish(self, ctx: ReconnectionContext, outcome: ReconnectionOutcome) -> None:
        self.last_outcome = outcome
        if self._context is ctx:
            self._context = None
        log_event({
            "event_type": "RECONNECT_FINISHED",
            "zone": "bridge",
            "success": outcome.success,
            "attempts": outcome.attempts,
            "restored": list(outcome.restored),
            "failed": list(outcome.failed),
            "elapsed_ms": _now_ms() - ctx.disconnected_at_ms,
        })
