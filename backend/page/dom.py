"""
In-memory model of the host conferencing page.

The capture pipeline never talks to a browser directly; it observes this
model, which the page relay (page/relay.py) keeps in sync with the real
page and which tests drive by hand.

What is modelled:
- Elements arranged in a tree rooted at the document body
- Audio sink elements with an interceptable `stream` property
- Media streams made of audio tracks that carry float32 PCM
- Subtree mutation observers (synchronous callbacks with added/removed
  records); a detach can be made silent to mimic hosts that swap
  subtrees without firing mutations
- A window object holding host symbols, with setter traps
- Same-origin navigation events (history, hash, app-ready)

Non-responsibilities:
- No audio processing
- No knowledge of participants or captures
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

import numpy as np

from constants import AUDIO_SAMPLE_RATE_HZ
from observability.logger import log_event


_ids = itertools.count(1)


# ---------------------------------------------------------------------
# Tracks & streams
# ---------------------------------------------------------------------

class AudioTrack:
    """
    One audio track. Samples pushed by the host are read by at most one
    source node, in push order. `end()` marks the track ended after any
    samples already pushed.
    """

    def __init__(self, *, track_id: str | None = None, sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ) -> None:
        if sample_rate_hz <= 0:
            raise ValueError(f"sample rate must be positive, got {sample_rate_hz}")
        self.id = track_id or f"track-{next(_ids)}"
        self.kind = "audio"
        self.sample_rate_hz = sample_rate_hz
        self.ready_state = "live"
        self._queue: asyncio.Queue[Optional[np.ndarray]] = asyncio.Queue()
        self._ended_listeners: list[Callable[[AudioTrack], None]] = []

    @property
    def live(self) -> bool:
        return self.ready_state == "live"

    def push(self, samples: np.ndarray) -> None:
        if not self.live:
            return
        self._queue.put_nowait(np.asarray(samples, dtype=np.float32))

    async def read(self) -> Optional[np.ndarray]:
        """Next block of samples, or None once the track has ended and drained."""
        return await self._queue.get()

    def end(self) -> None:
        if not self.live:
            return
        self.ready_state = "ended"
        self._queue.put_nowait(None)
        for listener in list(self._ended_listeners):
            listener(self)

    def add_ended_listener(self, listener: Callable[[AudioTrack], None]) -> None:
        self._ended_listeners.append(listener)

    def remove_ended_listener(self, listener: Callable[[AudioTrack], None]) -> None:
        if listener in self._ended_listeners:
            self._ended_listeners.remove(listener)


class MediaStream:
    def __init__(self, tracks: list[AudioTrack] | None = None, *, stream_id: str | None = None) -> None:
        self.id = stream_id or f"stream-{next(_ids)}"
        self._tracks: list[AudioTrack] = list(tracks or [])

    def get_audio_tracks(self) -> list[AudioTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    def add_track(self, track: AudioTrack) -> None:
        self._tracks.append(track)

    @property
    def active(self) -> bool:
        return any(t.live for t in self.get_audio_tracks())

    def end(self) -> None:
        for track in self._tracks:
            track.end()


def has_live_audio(stream: Optional[MediaStream]) -> bool:
    return stream is not None and stream.active


# ---------------------------------------------------------------------
# Elements
# ---------------------------------------------------------------------

StreamListener = Callable[["AudioSinkElement", Optional[MediaStream], Optional[MediaStream]], None]


class Element:
    def __init__(self, element_id: str, *, tag: str = "div") -> None:
        self.id = element_id
        self.tag = tag
        self.parent: Element | None = None
        self.children: list[Element] = []
        # Framework bookkeeping the host attaches to DOM nodes
        self.context: list[Any] = []
        self._page: HostPage | None = None

    @property
    def is_connected(self) -> bool:
        node: Element | None = self
        while node is not None:
            if node._page is not None and node is node._page.body:
                return True
            node = node.parent
        return False

    def contains(self, other: Element) -> bool:
        node: Element | None = other
        while node is not None:
            if node is self:
                return True
            node = node.parent
        return False

    def walk(self) -> Iterator[Element]:
        yield self
        for child in self.children:
            yield from child.walk()

    def __repr__(self) -> str:
        return f"<{self.tag} id={self.id!r}>"


class AudioSinkElement(Element):
    """
    A per-participant audio element.

    Assigning `stream` notifies every registered stream listener with
    (element, old, new) before returning, the way a patched property
    setter would.
    """

    def __init__(self, element_id: str, *, stream: MediaStream | None = None) -> None:
        super().__init__(element_id, tag="audio")
        self._stream = stream
        self._stream_listeners: list[StreamListener] = []

    @property
    def stream(self) -> Optional[MediaStream]:
        return self._stream

    @stream.setter
    def stream(self, value: Optional[MediaStream]) -> None:
        old = self._stream
        self._stream = value
        if old is value:
            return
        for listener in list(self._stream_listeners):
            listener(self, old, value)

    def add_stream_listener(self, listener: StreamListener) -> None:
        self._stream_listeners.append(listener)

    def remove_stream_listener(self, listener: StreamListener) -> None:
        if listener in self._stream_listeners:
            self._stream_listeners.remove(listener)


# ---------------------------------------------------------------------
# Mutation observers
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class MutationRecord:
    target: Element
    added: tuple[Element, ...] = ()
    removed: tuple[Element, ...] = ()


MutationCallback = Callable[[list[MutationRecord]], None]


@dataclass(eq=False)
class MutationObserver:
    root: Element
    callback: MutationCallback
    _page: HostPage
    connected: bool = True

    def disconnect(self) -> None:
        if self.connected:
            self.connected = False
            self._page._observers.remove(self)  # pylint: disable=protected-access


# ---------------------------------------------------------------------
# Window
# ---------------------------------------------------------------------

SetterTrap = Callable[[str, Any, Any], None]


class HostWindow:
    """
    Host-owned global symbols.

    Mapping-style access; assignment through `[]` fires setter traps
    registered for that symbol with (name, old, new).
    """

    def __init__(self) -> None:
        self._symbols: dict[str, Any] = {}
        self._traps: dict[str, list[SetterTrap]] = {}

    def __getitem__(self, name: str) -> Any:
        return self._symbols[name]

    def __setitem__(self, name: str, value: Any) -> None:
        old = self._symbols.get(name)
        self._symbols[name] = value
        for trap in list(self._traps.get(name, ())):
            trap(name, old, value)

    def __contains__(self, name: object) -> bool:
        return name in self._symbols

    def get(self, name: str, default: Any = None) -> Any:
        return self._symbols.get(name, default)

    def pop(self, name: str, default: Any = None) -> Any:
        return self._symbols.pop(name, default)

    def add_setter_trap(self, name: str, trap: SetterTrap) -> None:
        self._traps.setdefault(name, []).append(trap)

    def remove_setter_trap(self, name: str, trap: SetterTrap) -> None:
        traps = self._traps.get(name, [])
        if trap in traps:
            traps.remove(trap)


# ---------------------------------------------------------------------
# Page
# ---------------------------------------------------------------------

NavigationListener = Callable[[str], None]


class HostPage:
    def __init__(self) -> None:
        self.window = HostWindow()
        self.body = Element("body", tag="body")
        self.body._page = self  # pylint: disable=protected-access
        self._observers: list[MutationObserver] = []
        self._navigation_listeners: list[NavigationListener] = []

    # -------------------------
    # Tree
    # -------------------------

    def get_element_by_id(self, element_id: str) -> Optional[Element]:
        for node in self.body.walk():
            if node.id == element_id:
                return node
        return None

    def find_sinks(self, prefix: str, root: Element | None = None) -> list[AudioSinkElement]:
        base = root or self.body
        return [
            node for node in base.walk()
            if isinstance(node, AudioSinkElement) and node.id.startswith(prefix)
        ]

    def append(self, child: Element, parent: Element | None = None, *, silent: bool = False) -> Element:
        target = parent or self.body
        if child.parent is not None:
            self.remove(child, silent=silent)
        child.parent = target
        target.children.append(child)
        if not silent:
            self._notify(MutationRecord(target=target, added=(child,)))
        return child

    def remove(self, child: Element, *, silent: bool = False) -> None:
        target = child.parent
        if target is None:
            return
        target.children.remove(child)
        child.parent = None
        if not silent:
            self._notify(MutationRecord(target=target, removed=(child,)))

    # -------------------------
    # Observers
    # -------------------------

    def observe(self, root: Element, callback: MutationCallback) -> MutationObserver:
        observer = MutationObserver(root=root, callback=callback, _page=self)
        self._observers.append(observer)
        return observer

    def _notify(self, record: MutationRecord) -> None:
        for observer in list(self._observers):
            if not observer.connected:
                continue
            if observer.root.contains(record.target):
                observer.callback([record])

    # -------------------------
    # Navigation
    # -------------------------

    def add_navigation_listener(self, listener: NavigationListener) -> None:
        self._navigation_listeners.append(listener)

    def remove_navigation_listener(self, listener: NavigationListener) -> None:
        if listener in self._navigation_listeners:
            self._navigation_listeners.remove(listener)

    def navigate(self, kind: str) -> None:
        log_event({"event_type": "HOST_NAVIGATION", "zone": "page", "kind": kind})
        for listener in list(self._navigation_listeners):
            listener(kind)

    # -------------------------
    # Host functions
    # -------------------------

    def call_host_function(self, name: str, *args: Any) -> Any:
        """
        Invoke a host-owned function the way the host application would:
        window symbol first, then the service object on window.E_ or in
        container contexts.

        Raises:
            KeyError if the host exposes no such function.
        """
        fn = self.window.get(name)
        if callable(fn):
            return fn(*args)
        for service in self.iter_services():
            fn = service.get(name)
            if callable(fn):
                return fn(*args)
        raise KeyError(name)

    def iter_services(self) -> Iterator[dict[str, Any]]:
        symbol = self.window.get("E_")
        if isinstance(symbol, dict):
            yield symbol
        for node in self.body.walk():
            for slot in node.context:
                if isinstance(slot, dict) and isinstance(slot.get("appService"), dict):
                    yield slot["appService"]


def make_sink(
    user_id: str,
    *,
    prefix: str,
    sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ,
    with_stream: bool = True,
) -> AudioSinkElement:
    """Convenience builder: a sink element with (optionally) a fresh live stream."""
    stream = MediaStream([AudioTrack(sample_rate_hz=sample_rate_hz)]) if with_stream else None
    return AudioSinkElement(f"{prefix}{user_id}", stream=stream)
