"""
Inter-zone message envelope.

Wire form (plain JSON object):

    {
        "source": "page" | "bridge" | "worker" | "ui",
        "type": "<MessageType>",
        "data": {...},
        "timestamp": <ms>,
        "priority": "normal" | "high",      (optional)
        "correlation_id": "<str>" | null    (optional)
    }

Every control message crosses a zone boundary in this form and is
re-validated by the receiver. Audio frames are the one exception: they
travel as AUDIO_FRAME messages carrying the PCMFrame object itself.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class Zone(str, Enum):
    PAGE = "page"
    BRIDGE = "bridge"
    WORKER = "worker"
    UI = "ui"


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


class MessageType(str, Enum):
    """
    Every message type on the bus.

    Grouped by direction; a few types (USER_JOINED, TRANSCRIPT_*) are
    relayed unchanged across more than one hop.
    """

    # Generic reply to a request (carries the request's correlation_id)
    REPLY = "reply"

    # Audio fast path
    AUDIO_FRAME = "audio_frame"

    # --- Bridge -> Page -----------------------------------------------------
    SETUP_AUDIO = "setup_audio"
    START_DISCOVERY = "start_discovery"
    START_CAPTURE = "start_capture"
    STOP_CAPTURE = "stop_capture"
    GET_STATE = "get_state"
    REFRESH_STATE = "refresh_state"
    CONNECTION_TEST = "connection_test"
    RESUME_CAPTURE = "resume_capture"

    # --- Page -> Bridge -----------------------------------------------------
    CAPTURE_STARTED = "capture_started"
    CAPTURE_STOPPED = "capture_stopped"
    HOST_FUNCTION_CALLED = "host_function_called"
    VOLUME_CHANGED = "volume_changed"
    SESSION_STATE_CHANGED = "session_state_changed"
    TALKING_USERS_CHANGED = "talking_users_changed"
    PREFERENCES_CHANGED = "preferences_changed"
    GLOBALS_FOUND = "globals_found"
    GLOBALS_MISSING = "globals_missing"
    PAGE_ERROR = "page_error"

    # --- Bridge -> Worker ---------------------------------------------------
    FLUSH_BUFFERS = "flush_buffers"
    SET_API_KEY = "set_api_key"
    UPDATE_SPEAKER = "update_speaker"
    GET_TRANSCRIPTS = "get_transcripts"
    CLEAR_TRANSCRIPTS = "clear_transcripts"
    GET_WORKER_STATUS = "get_worker_status"

    # --- Worker -> Bridge ---------------------------------------------------
    WORKER_ERROR = "worker_error"

    # --- UI -> Bridge (control surface) -------------------------------------
    GET_STATUS = "get_status"
    RETRY_INIT = "retry_init"

    # --- Bridge -> UI (event surface) ---------------------------------------
    EXTENSION_READY = "extension_ready"
    INIT_PROGRESS = "init_progress"
    INIT_FAILED = "init_failed"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    TRANSCRIPT_PARTIAL = "transcript_partial"
    TRANSCRIPT_FINAL = "transcript_final"
    ERROR_UPDATE = "error_update"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    RECONNECTION_FAILED = "reconnection_failed"
    CIRCUIT_STATE = "circuit_state"


# -------------------------
# Exceptions
# -------------------------

class MalformedMessage(ValueError):
    """
    Raised when an inbound wire message does not match the envelope.

    The message is unsafe to dispatch and must be dropped.
    """


# -------------------------
# Envelope
# -------------------------

def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class Message:
    source: Zone
    type: MessageType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=_now_ms)
    priority: Priority = Priority.NORMAL
    correlation_id: str | None = None

    @property
    def is_request(self) -> bool:
        return self.correlation_id is not None and self.type is not MessageType.REPLY

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "source": self.source.value,
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }
        if self.priority is not Priority.NORMAL:
            wire["priority"] = self.priority.value
        if self.correlation_id is not None:
            wire["correlation_id"] = self.correlation_id
        return wire

    @staticmethod
    def from_wire(wire: Any) -> Message:
        """
        Validate and decode a wire dict.

        Raises:
            MalformedMessage on any envelope violation.
        """
        if not isinstance(wire, Mapping):
            raise MalformedMessage(f"envelope must be an object, got {type(wire).__name__}")

        try:
            source = Zone(wire["source"])
        except (KeyError, ValueError) as e:
            raise MalformedMessage(f"invalid source: {wire.get('source')!r}") from e

        try:
            msg_type = MessageType(wire["type"])
        except (KeyError, ValueError) as e:
            raise MalformedMessage(f"invalid type: {wire.get('type')!r}") from e

        data = wire.get("data", {})
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise MalformedMessage("data must be an object")

        timestamp = wire.get("timestamp")
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            raise MalformedMessage(f"invalid timestamp: {timestamp!r}")

        try:
            priority = Priority(wire.get("priority", Priority.NORMAL.value))
        except ValueError as e:
            raise MalformedMessage(f"invalid priority: {wire.get('priority')!r}") from e

        correlation_id = wire.get("correlation_id")
        if correlation_id is not None and not isinstance(correlation_id, str):
            raise MalformedMessage("correlation_id must be a string")

        if msg_type is MessageType.REPLY and correlation_id is None:
            raise MalformedMessage("reply without correlation_id")

        if msg_type is MessageType.AUDIO_FRAME:
            raise MalformedMessage("audio frames must use the frame path")

        return Message(
            source=source,
            type=msg_type,
            data=dict(data),
            timestamp=int(timestamp),
            priority=priority,
            correlation_id=correlation_id,
        )
