"""
State mirror and host function hooks.

StateMirror polls a small set of host variables and raises change events:

    VOLUME_CHANGED          scalar, changes below the threshold are ignored
    SESSION_STATE_CHANGED   string
    TALKING_USERS_CHANGED   set of user ids, deep comparison
    PREFERENCES_CHANGED     mapping, deep comparison

Events for one field are delivered in observation order; a poll delivers
its events sequentially.

HostFunctionHooks wraps host-owned functions with pass-through wrappers
that report the call before invoking the original. Missing symbols are
skipped; the system works without them.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, MutableMapping, Optional

from constants import DEFAULT_VOLUME, STATE_POLL_INTERVAL_S, STATE_VOLUME_CHANGE_THRESHOLD
from observability.logger import log_event
from protocol.messages import MessageType


@dataclass(frozen=True)
class HostState:
    """One observation of the mirrored host variables. None = not exposed."""
    volume: Optional[float] = None
    session_state: Optional[str] = None
    talking_users: Optional[frozenset[str]] = None
    preferences: Optional[dict[str, Any]] = field(default=None, compare=False)


StateReader = Callable[[], Optional[HostState]]
ChangeSink = Callable[[MessageType, dict[str, Any]], Awaitable[None]]


class StateMirror:
    def __init__(
        self,
        *,
        read_state: StateReader,
        on_change: ChangeSink,
        interval_s: float = STATE_POLL_INTERVAL_S,
        volume_threshold: float = STATE_VOLUME_CHANGE_THRESHOLD,
    ) -> None:
        self._read_state = read_state
        self._on_change = on_change
        self._interval_s = interval_s
        self._volume_threshold = volume_threshold

        self._volume: Optional[float] = None
        self._session_state: Optional[str] = None
        self._talking_users: Optional[frozenset[str]] = None
        self._preferences: Optional[dict[str, Any]] = None

        self._task: Optional[asyncio.Task[None]] = None
        self._lock = asyncio.Lock()
        self.polls = 0

    # ------------------------------------------------------------------
    # Last known values
    # ------------------------------------------------------------------

    @property
    def volume(self) -> float:
        return DEFAULT_VOLUME if self._volume is None else self._volume

    @property
    def session_state(self) -> Optional[str]:
        return self._session_state

    @property
    def talking_users(self) -> frozenset[str]:
        return self._talking_users or frozenset()

    def snapshot(self) -> dict[str, Any]:
        return {
            "volume": self.volume,
            "session_state": self._session_state,
            "talking_users": sorted(self.talking_users),
            "preferences": copy.deepcopy(self._preferences),
            "polls": self.polls,
            "polling": self.running,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._poll_loop(), name="state-mirror")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _poll_loop(self) -> None:
        while True:
            await self.sync_now()
            await asyncio.sleep(self._interval_s)

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    async def sync_now(self) -> list[MessageType]:
        """Observe once and deliver any change events. Returns the event types raised."""
        async with self._lock:
            self.polls += 1
            try:
                state = self._read_state()
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                log_event({
                    "event_type": "STATE_MIRROR_READ_FAILED",
                    "zone": "page",
                    "error": str(e),
                })
                return []
            if state is None:
                return []

            raised: list[MessageType] = []

            if state.volume is not None and (
                self._volume is None or abs(state.volume - self._volume) > self._volume_threshold
            ):
                previous = self._volume
                self._volume = state.volume
                await self._on_change(
                    MessageType.VOLUME_CHANGED, {"volume": state.volume, "previous": previous}
                )
                raised.append(MessageType.VOLUME_CHANGED)

            if state.session_state is not None and state.session_state != self._session_state:
                previous_state = self._session_state
                self._session_state = state.session_state
                await self._on_change(
                    MessageType.SESSION_STATE_CHANGED,
                    {"state": state.session_state, "previous": previous_state},
                )
                raised.append(MessageType.SESSION_STATE_CHANGED)

            if state.talking_users is not None and state.talking_users != self._talking_users:
                previous_users = self._talking_users or frozenset()
                self._talking_users = state.talking_users
                await self._on_change(
                    MessageType.TALKING_USERS_CHANGED,
                    {
                        "users": sorted(state.talking_users),
                        "joined": sorted(state.talking_users - previous_users),
                        "left": sorted(previous_users - state.talking_users),
                    },
                )
                raised.append(MessageType.TALKING_USERS_CHANGED)

            if state.preferences is not None and state.preferences != self._preferences:
                self._preferences = copy.deepcopy(state.preferences)
                await self._on_change(
                    MessageType.PREFERENCES_CHANGED, {"preferences": copy.deepcopy(state.preferences)}
                )
                raised.append(MessageType.PREFERENCES_CHANGED)

            return raised


# ---------------------------------------------------------------------
# Function hooks
# ---------------------------------------------------------------------

CallReporter = Callable[[str, tuple[Any, ...]], None]

_HOOK_MARKER = "__transcriber_hook__"


class HostFunctionHooks:
    def __init__(self, *, on_call: CallReporter) -> None:
        self._on_call = on_call
        # (owner, name) -> original
        self._installed: list[tuple[MutableMapping[str, Any], str, Callable[..., Any]]] = []

    @property
    def installed(self) -> list[str]:
        return sorted({name for _, name, _ in self._installed})

    def install(self, owner: MutableMapping[str, Any], names: tuple[str, ...] | list[str]) -> list[str]:
        """
        Wrap each callable `owner[name]`. Already-wrapped symbols and
        missing or non-callable ones are skipped. Returns the names wrapped.
        """
        wrapped: list[str] = []
        for name in names:
            original = owner.get(name)
            if not callable(original) or getattr(original, _HOOK_MARKER, False):
                continue
            owner[name] = self._wrap(name, original)
            self._installed.append((owner, name, original))
            wrapped.append(name)
        if wrapped:
            log_event({"event_type": "HOST_HOOKS_INSTALLED", "zone": "page", "functions": wrapped})
        return wrapped

    def uninstall(self) -> None:
        for owner, name, original in reversed(self._installed):
            current = owner.get(name)
            if getattr(current, _HOOK_MARKER, False):
                owner[name] = original
        self._installed.clear()

    def _wrap(self, name: str, original: Callable[..., Any]) -> Callable[..., Any]:
        reporter = self._on_call

        def hook(*args: Any, **kwargs: Any) -> Any:
            reporter(name, args)
            return original(*args, **kwargs)

        setattr(hook, _HOOK_MARKER, True)
        hook.__name__ = getattr(original, "__name__", name)
        return hook
