"""
Sink discovery.

Responsibilities:
- Detect every audio sink whose id matches `<prefix><userId>` and the
  moment it carries a live stream
- Observe the named container (falling back to the body) for added and
  removed subtrees
- Run an initial scan, a periodic sweep for sinks that escaped mutation
  records, and a re-scan on navigation events
- Wait for streams with a bounded, cancellable polling loop
- Turn a stream reassignment into teardown, settle delay, re-attach

Per-element state:

    NEW -> WAITING_STREAM -> LIVE -> CAPTURED -> ENDED | REMOVED

Terminal states release the element (listeners removed, entry dropped);
a released element still connected to the page is picked up again by
the next scan or sweep.

Non-responsibilities:
- Building capture graphs (callbacks are injected)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from constants import (
    DISCOVERY_SWEEP_INTERVAL_S,
    SINK_CONTAINER_ID,
    STREAM_SWAP_SETTLE_S,
    STREAM_WAIT_MAX_S,
    STREAM_WAIT_POLL_S,
)
from observability.logger import log_event
from page.dom import (
    AudioSinkElement,
    Element,
    HostPage,
    MediaStream,
    MutationObserver,
    MutationRecord,
    has_live_audio,
)


SinkLive = Callable[[AudioSinkElement, str, MediaStream], Awaitable[bool]]
SinkGone = Callable[[str, str], Awaitable[None]]


class SinkState(str, Enum):
    NEW = "new"
    WAITING_STREAM = "waiting_stream"
    LIVE = "live"
    CAPTURED = "captured"
    ENDED = "ended"
    REMOVED = "removed"


@dataclass(eq=False)
class TrackedSink:
    element: AudioSinkElement
    user_id: str
    state: SinkState = SinkState.NEW
    wait_task: Optional[asyncio.Task[None]] = None
    change_task: Optional[asyncio.Task[None]] = None
    timed_out: bool = False

    def cancel_tasks(self) -> None:
        for task in (self.wait_task, self.change_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        self.wait_task = None
        self.change_task = None


class SinkDiscovery:
    def __init__(
        self,
        *,
        page: HostPage,
        prefix: str,
        on_sink_live: SinkLive,
        on_sink_gone: SinkGone,
        container_id: str = SINK_CONTAINER_ID,
        poll_interval_s: float = STREAM_WAIT_POLL_S,
        stream_wait_max_s: float = STREAM_WAIT_MAX_S,
        sweep_interval_s: float = DISCOVERY_SWEEP_INTERVAL_S,
        swap_settle_s: float = STREAM_SWAP_SETTLE_S,
    ) -> None:
        self._page = page
        self._prefix = prefix
        self._on_sink_live = on_sink_live
        self._on_sink_gone = on_sink_gone
        self._container_id = container_id
        self._poll_interval_s = poll_interval_s
        self._stream_wait_max_s = stream_wait_max_s
        self._sweep_interval_s = sweep_interval_s
        self._swap_settle_s = swap_settle_s

        self._tracked: dict[AudioSinkElement, TrackedSink] = {}
        self._observer: Optional[MutationObserver] = None
        self._sweep_task: Optional[asyncio.Task[None]] = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._running = False
        self.stream_timeouts = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> int:
        """Begin observing. Returns the number of sinks found by the initial scan."""
        if self._running:
            return 0
        self._running = True

        root: Element = self._page.get_element_by_id(self._container_id) or self._page.body
        self._observer = self._page.observe(root, self._on_mutations)
        self._page.add_navigation_listener(self._on_navigation)
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="sink-sweep")

        found = self.rescan()
        log_event({
            "event_type": "DISCOVERY_STARTED",
            "zone": "page",
            "root": root.id,
            "initial_sinks": found,
        })
        return found

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._observer is not None:
            self._observer.disconnect()
            self._observer = None
        self._page.remove_navigation_listener(self._on_navigation)

        tasks: list[asyncio.Task[Any]] = []
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)
            self._sweep_task = None
        for tracked in list(self._tracked.values()):
            tasks.extend(t for t in (tracked.wait_task, tracked.change_task) if t is not None)
            self._release(tracked, SinkState.REMOVED)
        tasks.extend(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log_event({"event_type": "DISCOVERY_STOPPED", "zone": "page"})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def user_id_for(self, element: Element) -> Optional[str]:
        if isinstance(element, AudioSinkElement) and element.id.startswith(self._prefix):
            user_id = element.id[len(self._prefix):]
            return user_id or None
        return None

    def element_for(self, user_id: str) -> Optional[AudioSinkElement]:
        for tracked in self._tracked.values():
            if tracked.user_id == user_id:
                return tracked.element
        return None

    def state_of(self, user_id: str) -> Optional[SinkState]:
        for tracked in self._tracked.values():
            if tracked.user_id == user_id:
                return tracked.state
        return None

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "user_id": t.user_id,
                "element_id": t.element.id,
                "state": t.state.value,
                "timed_out": t.timed_out,
            }
            for t in self._tracked.values()
        ]

    # ------------------------------------------------------------------
    # Detection paths
    # ------------------------------------------------------------------

    def rescan(self) -> int:
        """
        Track every connected, untracked sink and release tracked sinks
        that silently left the page. Returns the number of new sinks.
        """
        if not self._running:
            return 0
        for tracked in list(self._tracked.values()):
            if not tracked.element.is_connected:
                self._handle_removed(tracked)

        new = 0
        for element in self._page.find_sinks(self._prefix):
            if element not in self._tracked and self._track(element):
                new += 1
        return new

    def mark_ended(self, user_id: str) -> None:
        """The capture for user_id ended on its own (track end)."""
        for tracked in list(self._tracked.values()):
            if tracked.user_id != user_id or tracked.state is not SinkState.CAPTURED:
                continue
            # A replacement stream is already being attached
            if has_live_audio(tracked.element.stream):
                continue
            self._release(tracked, SinkState.ENDED)

    def _on_mutations(self, records: list[MutationRecord]) -> None:
        if not self._running:
            return
        for record in records:
            for node in record.removed:
                for tracked in list(self._tracked.values()):
                    if node.contains(tracked.element):
                        self._handle_removed(tracked)
            for node in record.added:
                for element in self._page.find_sinks(self._prefix, root=node):
                    if element not in self._tracked:
                        self._track(element)

    def _on_navigation(self, kind: str) -> None:
        found = self.rescan()
        log_event({
            "event_type": "DISCOVERY_RESCAN",
            "zone": "page",
            "trigger": kind,
            "new_sinks": found,
        })

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            found = self.rescan()
            if found:
                log_event({
                    "event_type": "DISCOVERY_SWEEP_FOUND",
                    "zone": "page",
                    "new_sinks": found,
                })

    # ------------------------------------------------------------------
    # Per-element handling
    # ------------------------------------------------------------------

    def _track(self, element: AudioSinkElement) -> bool:
        user_id = self.user_id_for(element)
        if user_id is None or not element.is_connected:
            return False

        for other in list(self._tracked.values()):
            if other.user_id != user_id:
                continue
            if other.element.is_connected:
                log_event({
                    "event_type": "SINK_DUPLICATE_USER_IGNORED",
                    "zone": "page",
                    "user_id": user_id,
                    "element_id": element.id,
                })
                return False
            self._handle_removed(other)

        tracked = TrackedSink(element=element, user_id=user_id)
        self._tracked[element] = tracked
        element.add_stream_listener(self._on_stream_set)
        log_event({
            "event_type": "SINK_FOUND",
            "zone": "page",
            "user_id": user_id,
            "element_id": element.id,
            "has_stream": element.stream is not None,
        })

        if has_live_audio(element.stream):
            self._spawn(self._forward(tracked, element.stream))
        else:
            tracked.state = SinkState.WAITING_STREAM
            tracked.wait_task = asyncio.create_task(
                self._wait_for_stream(tracked), name=f"stream-wait-{user_id}"
            )
        return True

    async def _wait_for_stream(self, tracked: TrackedSink) -> None:
        waited = 0.0
        while waited < self._stream_wait_max_s:
            await asyncio.sleep(self._poll_interval_s)
            waited += self._poll_interval_s
            if not tracked.element.is_connected:
                self._handle_removed(tracked)
                return
            stream = tracked.element.stream
            if has_live_audio(stream):
                tracked.wait_task = None
                assert stream is not None
                await self._forward(tracked, stream)
                return

        tracked.wait_task = None
        tracked.timed_out = True
        tracked.state = SinkState.NEW
        self.stream_timeouts += 1
        log_event({
            "event_type": "SINK_DIAGNOSTIC",
            "zone": "page",
            "diagnostic": "stream-timeout",
            "user_id": tracked.user_id,
            "waited_s": self._stream_wait_max_s,
        })

    async def _forward(self, tracked: TrackedSink, stream: MediaStream) -> None:
        if tracked.element not in self._tracked:
            return
        tracked.state = SinkState.LIVE
        attached = await self._on_sink_live(tracked.element, tracked.user_id, stream)
        if tracked.element not in self._tracked:
            return
        if attached:
            tracked.state = SinkState.CAPTURED
            tracked.timed_out = False

    def _on_stream_set(
        self,
        element: AudioSinkElement,
        old: Optional[MediaStream],
        new: Optional[MediaStream],
    ) -> None:
        tracked = self._tracked.get(element)
        if tracked is None or not self._running:
            return
        log_event({
            "event_type": "SINK_STREAM_CHANGED",
            "zone": "page",
            "user_id": tracked.user_id,
            "old_stream": old.id if old else None,
            "new_stream": new.id if new else None,
        })
        if tracked.wait_task is not None:
            tracked.wait_task.cancel()
            tracked.wait_task = None
        if tracked.change_task is not None and not tracked.change_task.done():
            tracked.change_task.cancel()
        tracked.change_task = asyncio.create_task(
            self._handle_stream_change(tracked, new), name=f"stream-swap-{tracked.user_id}"
        )

    async def _handle_stream_change(self, tracked: TrackedSink, new: Optional[MediaStream]) -> None:
        if tracked.state in (SinkState.LIVE, SinkState.CAPTURED):
            await self._on_sink_gone(tracked.user_id, "stream-swap")
            tracked.state = SinkState.NEW

        if not has_live_audio(new):
            return

        await asyncio.sleep(self._swap_settle_s)
        if not tracked.element.is_connected or tracked.element.stream is not new:
            return
        assert new is not None
        await self._forward(tracked, new)

    def _handle_removed(self, tracked: TrackedSink) -> None:
        if tracked.element not in self._tracked:
            return
        was_active = tracked.state in (SinkState.LIVE, SinkState.CAPTURED)
        self._release(tracked, SinkState.REMOVED)
        log_event({
            "event_type": "SINK_REMOVED",
            "zone": "page",
            "user_id": tracked.user_id,
            "element_id": tracked.element.id,
        })
        if was_active:
            self._spawn(self._on_sink_gone(tracked.user_id, "sink-removed"))

    def _release(self, tracked: TrackedSink, state: SinkState) -> None:
        tracked.state = state
        tracked.cancel_tasks()
        tracked.element.remove_stream_listener(self._on_stream_set)
        self._tracked.pop(tracked.element, None)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
