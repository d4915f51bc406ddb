"""
Best-effort host globals discovery.

A small set of probes each inspect one place the host application may
expose its state, and return a GlobalsDescriptor or None. A candidate is
accepted by capability, not by name: it must expose an audio volume and
a session-state field.

Discovery runs in the background, probing every 500 ms until a 30 s
deadline, and never blocks capture. When found, the caller installs
function hooks. A setter trap on the window symbol catches the host
replacing its globals later, including after the deadline.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from constants import (
    GLOBALS_CONTEXT_ELEMENT_IDS,
    GLOBALS_DISCOVERY_DEADLINE_S,
    GLOBALS_PROBE_INTERVAL_S,
)
from observability.logger import log_event
from page.dom import HostPage
from page.state_mirror import HostState


WINDOW_SYMBOL = "E_"


@dataclass(frozen=True)
class GlobalsDescriptor:
    source: str
    globals: Mapping[str, Any]
    service: Optional[dict[str, Any]]
    capabilities: frozenset[str]

    def read_state(self) -> HostState:
        g = self.globals
        sess = g.get("sessData") or {}
        talking = g.get("talkingUsers")
        prefs = g.get("preferences")
        volume = g.get("audioVolume")
        return HostState(
            volume=float(volume) if isinstance(volume, (int, float)) else None,
            session_state=sess.get("currentState") if isinstance(sess, Mapping) else None,
            talking_users=frozenset(str(u) for u in talking) if talking is not None else None,
            preferences=dict(prefs) if isinstance(prefs, Mapping) else None,
        )


Probe = Callable[[HostPage], Optional[GlobalsDescriptor]]


def describe(candidate: Any, *, source: str, service: Optional[dict[str, Any]] = None) -> Optional[GlobalsDescriptor]:
    """Validate a candidate by shape and tag its capabilities."""
    if not isinstance(candidate, Mapping):
        return None

    caps: set[str] = set()
    if isinstance(candidate.get("audioVolume"), (int, float)):
        caps.add("audio_volume")
    sess = candidate.get("sessData")
    if isinstance(sess, Mapping) and "currentState" in sess:
        caps.add("session_state")
    if not {"audio_volume", "session_state"} <= caps:
        return None

    if candidate.get("talkingUsers") is not None:
        caps.add("talking_users")
    if isinstance(candidate.get("preferences"), Mapping):
        caps.add("preferences")
    if service is not None:
        if callable(service.get("reconnectAudio")):
            caps.add("reconnect_hook")
        if callable(service.get("adjustVol")):
            caps.add("volume_hook")

    return GlobalsDescriptor(
        source=source,
        globals=candidate,
        service=service,
        capabilities=frozenset(caps),
    )


def probe_window_symbol(page: HostPage) -> Optional[GlobalsDescriptor]:
    value = page.window.get(WINDOW_SYMBOL)
    if isinstance(value, Mapping) and "globals" in value:
        service = value if isinstance(value, dict) else None
        return describe(value["globals"], source=f"window.{WINDOW_SYMBOL}.globals", service=service)
    return describe(value, source=f"window.{WINDOW_SYMBOL}")


def probe_context_slots(page: HostPage) -> Optional[GlobalsDescriptor]:
    for element_id in GLOBALS_CONTEXT_ELEMENT_IDS:
        element = page.get_element_by_id(element_id)
        if element is None:
            continue
        for slot in element.context:
            if not isinstance(slot, Mapping):
                continue
            service = slot.get("appService")
            if isinstance(service, dict):
                found = describe(service.get("globals"), source=f"#{element_id}.appService", service=service)
                if found is not None:
                    return found
    return None


DEFAULT_PROBES: tuple[Probe, ...] = (probe_window_symbol, probe_context_slots)


class HostGlobalsFinder:
    def __init__(
        self,
        *,
        page: HostPage,
        on_found: Callable[[GlobalsDescriptor], Awaitable[None]],
        on_missing: Callable[[int], Awaitable[None]],
        probes: tuple[Probe, ...] = DEFAULT_PROBES,
        interval_s: float = GLOBALS_PROBE_INTERVAL_S,
        deadline_s: float = GLOBALS_DISCOVERY_DEADLINE_S,
    ) -> None:
        self._page = page
        self._on_found = on_found
        self._on_missing = on_missing
        self._probes = probes
        self._interval_s = interval_s
        self._deadline_s = deadline_s

        self.found: Optional[GlobalsDescriptor] = None
        self.attempts = 0
        self.gave_up = False
        self._task: Optional[asyncio.Task[None]] = None
        self._trap_tasks: set[asyncio.Task[None]] = set()
        self._trapped = False

    def probe_once(self) -> Optional[GlobalsDescriptor]:
        self.attempts += 1
        for probe in self._probes:
            try:
                found = probe(self._page)
            except (KeyError, TypeError, AttributeError) as e:
                log_event({
                    "event_type": "GLOBALS_PROBE_FAILED",
                    "zone": "page",
                    "probe": getattr(probe, "__name__", "probe"),
                    "error": str(e),
                })
                continue
            if found is not None:
                return found
        return None

    def start(self) -> None:
        if not self._trapped:
            self._page.window.add_setter_trap(WINDOW_SYMBOL, self._on_symbol_set)
            self._trapped = True
        if self._task is None and self.found is None:
            self._task = asyncio.create_task(self._run(), name="globals-finder")

    async def stop(self) -> None:
        if self._trapped:
            self._page.window.remove_setter_trap(WINDOW_SYMBOL, self._on_symbol_set)
            self._trapped = False
        tasks = [t for t in (self._task, *self._trap_tasks) if t is not None]
        self._task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._deadline_s
        try:
            while True:
                found = self.probe_once()
                if found is not None:
                    await self._accept(found)
                    return
                if loop.time() + self._interval_s > deadline:
                    break
                await asyncio.sleep(self._interval_s)
        finally:
            if self._task is asyncio.current_task():
                self._task = None

        self.gave_up = True
        log_event({
            "event_type": "GLOBALS_MISSING",
            "zone": "page",
            "attempts": self.attempts,
            "deadline_s": self._deadline_s,
        })
        await self._on_missing(self.attempts)

    async def _accept(self, found: GlobalsDescriptor) -> None:
        self.found = found
        log_event({
            "event_type": "GLOBALS_FOUND",
            "zone": "page",
            "source": found.source,
            "capabilities": sorted(found.capabilities),
            "attempts": self.attempts,
        })
        await self._on_found(found)

    def _on_symbol_set(self, name: str, old: Any, new: Any) -> None:
        del name, old
        candidate = probe_window_symbol(self._page) if new is not None else None
        if candidate is None:
            return
        if self.found is not None and candidate.globals is self.found.globals:
            return
        if self._task is not None:
            self._task.cancel()
            self._task = None
        task = asyncio.create_task(self._accept(candidate))
        self._trap_tasks.add(task)
        task.add_done_callback(self._trap_tasks.discard)
