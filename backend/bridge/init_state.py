"""
Bridge initialization state machine.

    PENDING -> SETTING_UP_AUDIO -> CAPTURING -> READY
                               \\-------------> READY   (auto-start off)
    any     -> FAILED
    FAILED  -> PENDING                                  (retry)

Transitions are forward-only; anything else is a programmer error.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional

from errors import InvariantViolation
from observability.logger import log_event


class InitState(str, Enum):
    PENDING = "pending"
    SETTING_UP_AUDIO = "setting_up_audio"
    CAPTURING = "capturing"
    READY = "ready"
    FAILED = "failed"


_ALLOWED: dict[InitState, frozenset[InitState]] = {
    InitState.PENDING: frozenset({InitState.SETTING_UP_AUDIO}),
    InitState.SETTING_UP_AUDIO: frozenset({InitState.CAPTURING, InitState.READY}),
    InitState.CAPTURING: frozenset({InitState.READY}),
    InitState.READY: frozenset(),
    InitState.FAILED: frozenset({InitState.PENDING}),
}


def can_transition(current: InitState, target: InitState) -> bool:
    if target is InitState.FAILED:
        return current is not InitState.FAILED
    return target in _ALLOWED[current]


class InitStateMachine:
    def __init__(self) -> None:
        self._state = InitState.PENDING
        self._history: list[tuple[int, InitState]] = [(time.time_ns() // 1_000_000, InitState.PENDING)]
        self.failed_phase: Optional[InitState] = None

    @property
    def state(self) -> InitState:
        return self._state

    @property
    def history(self) -> list[InitState]:
        return [s for _, s in self._history]

    def transition(self, target: InitState) -> None:
        """
        Raises:
            InvariantViolation on a transition the machine does not allow.
        """
        current = self._state
        if not can_transition(current, target):
            raise InvariantViolation(f"invalid init transition {current.value} -> {target.value}")

        if target is InitState.FAILED:
            self.failed_phase = current
        elif target is InitState.PENDING:
            self.failed_phase = None

        self._state = target
        self._history.append((time.time_ns() // 1_000_000, target))
        log_event({
            "event_type": "INIT_STATE_TRANSITION",
            "zone": "bridge",
            "from": current.value,
            "to": target.value,
        })
