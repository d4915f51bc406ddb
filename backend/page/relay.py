"""
Page relay: applies messages from the in-page browser shim to the
HostPage model.

JSON control messages (one object per WebSocket text frame):

    {"type": "container_added", "element_id": "topRoomDiv"}
    {"type": "sink_added", "element_id": "msRemAudio-alice",
     "container_id": "topRoomDiv", "stream_id": "s1", "sample_rate": 48000}
    {"type": "sink_removed", "element_id": "..."}
    {"type": "stream_assigned", "element_id": "...", "stream_id": "...",
     "sample_rate": 48000}
    {"type": "stream_cleared", "element_id": "..."}
    {"type": "track_ended", "stream_id": "..."}
    {"type": "globals", "globals": {...}, "functions": ["reconnectAudio", ...]}
    {"type": "host_call", "name": "reconnectAudio", "args": []}
    {"type": "navigate", "kind": "history"}

Binary messages carry float32 samples for one stream (protocol/binary.py).
"""

from __future__ import annotations

from typing import Any, Optional

from constants import AUDIO_SAMPLE_RATE_HZ, NAVIGATION_EVENTS
from observability.logger import log_event
from page.dom import AudioSinkElement, AudioTrack, Element, HostPage, MediaStream
from protocol.binary import check_sequence_gap, decode_relay_frame


class RelayError(ValueError):
    """Raised for relay messages that cannot be applied."""


class PageRelay:
    def __init__(self, *, page: HostPage) -> None:
        self._page = page
        self._streams: dict[str, MediaStream] = {}
        self._last_seq: Optional[int] = None
        self.host_calls: list[tuple[str, tuple[Any, ...]]] = []
        self.frames_applied = 0
        self.gaps = 0

    # ------------------------------------------------------------------
    # JSON
    # ------------------------------------------------------------------

    def apply_json(self, message: Any) -> dict[str, Any]:
        if not isinstance(message, dict):
            raise RelayError("relay message must be an object")
        kind = message.get("type")
        handler = getattr(self, f"_on_{kind}", None) if isinstance(kind, str) else None
        if handler is None:
            raise RelayError(f"unknown relay message type: {kind!r}")
        result = handler(message)
        return {"type": "ack", "for": kind, **(result or {})}

    def _element(self, message: dict[str, Any]) -> Element:
        element_id = message.get("element_id")
        if not isinstance(element_id, str) or not element_id:
            raise RelayError("element_id is required")
        element = self._page.get_element_by_id(element_id)
        if element is None:
            raise RelayError(f"no such element: {element_id}")
        return element

    def _sink(self, message: dict[str, Any]) -> AudioSinkElement:
        element = self._element(message)
        if not isinstance(element, AudioSinkElement):
            raise RelayError(f"{element.id} is not an audio sink")
        return element

    def _stream(self, message: dict[str, Any]) -> MediaStream:
        stream_id = message.get("stream_id")
        if not isinstance(stream_id, str) or not stream_id:
            raise RelayError("stream_id is required")
        stream = self._streams.get(stream_id)
        if stream is None:
            sample_rate = message.get("sample_rate", AUDIO_SAMPLE_RATE_HZ)
            if isinstance(sample_rate, bool) or not isinstance(sample_rate, int) or sample_rate <= 0:
                raise RelayError(f"sample_rate must be a positive integer, got {sample_rate!r}")
            stream = MediaStream([AudioTrack(sample_rate_hz=sample_rate)], stream_id=stream_id)
            self._streams[stream_id] = stream
        return stream

    def _on_container_added(self, message: dict[str, Any]) -> None:
        element_id = message.get("element_id")
        if not isinstance(element_id, str) or not element_id:
            raise RelayError("element_id is required")
        if self._page.get_element_by_id(element_id) is None:
            self._page.append(Element(element_id))

    def _on_sink_added(self, message: dict[str, Any]) -> dict[str, Any]:
        element_id = message.get("element_id")
        if not isinstance(element_id, str) or not element_id:
            raise RelayError("element_id is required")
        parent: Optional[Element] = None
        container_id = message.get("container_id")
        if isinstance(container_id, str):
            parent = self._page.get_element_by_id(container_id)
        stream = self._stream(message) if message.get("stream_id") else None
        self._page.append(AudioSinkElement(element_id, stream=stream), parent)
        return {"element_id": element_id}

    def _on_sink_removed(self, message: dict[str, Any]) -> None:
        self._page.remove(self._element(message))

    def _on_stream_assigned(self, message: dict[str, Any]) -> None:
        self._sink(message).stream = self._stream(message)

    def _on_stream_cleared(self, message: dict[str, Any]) -> None:
        self._sink(message).stream = None

    def _on_track_ended(self, message: dict[str, Any]) -> None:
        stream_id = message.get("stream_id")
        stream = self._streams.pop(stream_id, None) if isinstance(stream_id, str) else None
        if stream is None:
            raise RelayError(f"unknown stream: {stream_id!r}")
        stream.end()

    def _on_globals(self, message: dict[str, Any]) -> None:
        host_globals = message.get("globals")
        if not isinstance(host_globals, dict):
            raise RelayError("globals must be an object")
        functions = message.get("functions", [])
        if not isinstance(functions, list):
            raise RelayError("functions must be a list")
        service: dict[str, Any] = {"globals": host_globals}
        for name in functions:
            service[str(name)] = self._host_function(str(name))
        self._page.window["E_"] = service

    def _on_host_call(self, message: dict[str, Any]) -> None:
        name = message.get("name")
        if not isinstance(name, str):
            raise RelayError("name is required")
        args = message.get("args", [])
        if not isinstance(args, list):
            raise RelayError("args must be a list")
        try:
            self._page.call_host_function(name, *args)
        except KeyError as e:
            raise RelayError(f"host does not expose {name}") from e

    def _on_navigate(self, message: dict[str, Any]) -> None:
        kind = message.get("kind", "history")
        if kind not in NAVIGATION_EVENTS:
            raise RelayError(f"unknown navigation kind: {kind!r}")
        self._page.navigate(kind)

    def _host_function(self, name: str) -> Any:
        calls = self.host_calls

        def host_function(*args: Any) -> None:
            calls.append((name, args))

        host_function.__name__ = name
        return host_function

    # ------------------------------------------------------------------
    # Binary
    # ------------------------------------------------------------------

    def apply_binary(self, payload: bytes) -> None:
        """
        Raises:
            BinaryProtocolError for malformed frames.
            RelayError for frames addressed to an unknown stream.
        """
        frame = decode_relay_frame(payload)

        result = check_sequence_gap(last_seq=self._last_seq, current_seq=frame.sequence_num)
        if result.gap:
            self.gaps += 1
            log_event({
                "event_type": "RELAY_SEQ_GAP",
                "zone": "page",
                "expected": result.expected,
                "actual": result.actual,
                "gap_size": result.gap_size,
            })
        self._last_seq = frame.sequence_num

        stream = self._streams.get(frame.stream_id)
        if stream is None:
            raise RelayError(f"audio for unknown stream: {frame.stream_id}")
        for track in stream.get_audio_tracks():
            track.push(frame.samples)
        self.frames_applied += 1
