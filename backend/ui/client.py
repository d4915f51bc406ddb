"""
UI zone.

The rendering layer is out of scope; this is the seam it talks through:
- Control commands to the Bridge, each returning a status dict
  ({"ok": True, ...} or {"ok": False, "error": {kind, message}})
- The Bridge's event stream: kept in a bounded history, fanned out to
  subscribers (the /ws/ui socket), transcripts collected in order
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Callable, Optional

from constants import UI_COMMAND_TIMEOUT_S, UI_EVENT_HISTORY_MAX
from errors import RequestTimeout
from observability.logger import log_event
from protocol.bus import Endpoint
from protocol.messages import Message, MessageType, Zone


EVENT_TYPES: tuple[MessageType, ...] = (
    MessageType.EXTENSION_READY,
    MessageType.INIT_PROGRESS,
    MessageType.INIT_FAILED,
    MessageType.USER_JOINED,
    MessageType.USER_LEFT,
    MessageType.TRANSCRIPT_PARTIAL,
    MessageType.TRANSCRIPT_FINAL,
    MessageType.ERROR_UPDATE,
    MessageType.RECONNECTING,
    MessageType.RECONNECTED,
    MessageType.RECONNECTION_FAILED,
    MessageType.CIRCUIT_STATE,
)

COMMAND_TYPES: frozenset[MessageType] = frozenset({
    MessageType.START_CAPTURE,
    MessageType.STOP_CAPTURE,
    MessageType.GET_STATUS,
    MessageType.REFRESH_STATE,
    MessageType.RETRY_INIT,
    MessageType.SET_API_KEY,
    MessageType.UPDATE_SPEAKER,
    MessageType.GET_TRANSCRIPTS,
    MessageType.CLEAR_TRANSCRIPTS,
})

EventPredicate = Callable[[Message], bool]


class UIClient:
    def __init__(
        self,
        *,
        endpoint: Endpoint,
        command_timeout_s: float = UI_COMMAND_TIMEOUT_S,
        history_max: int = UI_EVENT_HISTORY_MAX,
    ) -> None:
        self._endpoint = endpoint
        self._command_timeout_s = command_timeout_s
        self._history: deque[Message] = deque(maxlen=history_max)
        self._subscribers: list[asyncio.Queue[Message]] = []
        self._subscriber_max = history_max
        self.transcripts: list[dict[str, Any]] = []

        for msg_type in EVENT_TYPES:
            self._endpoint.on(msg_type, self._on_event)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _on_event(self, msg: Message) -> None:
        self._history.append(msg)
        if msg.type in (MessageType.TRANSCRIPT_FINAL, MessageType.TRANSCRIPT_PARTIAL):
            self.transcripts.append({"type": msg.type.value, **msg.data})
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
                log_event({
                    "event_type": "UI_SUBSCRIBER_OVERFLOW",
                    "zone": "ui",
                    "type": msg.type.value,
                })
            queue.put_nowait(msg)

    def subscribe(self) -> asyncio.Queue[Message]:
        queue: asyncio.Queue[Message] = asyncio.Queue(maxsize=self._subscriber_max)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Message]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def events(self, msg_type: Optional[MessageType] = None) -> list[Message]:
        return [m for m in self._history if msg_type is None or m.type is msg_type]

    async def wait_for(
        self,
        msg_type: MessageType,
        predicate: Optional[EventPredicate] = None,
        *,
        timeout_s: float = UI_COMMAND_TIMEOUT_S,
    ) -> Message:
        """
        Return the first event of msg_type (matching predicate), including
        one already received.

        Raises:
            asyncio.TimeoutError if none arrives in time.
        """
        def matches(m: Message) -> bool:
            return m.type is msg_type and (predicate is None or predicate(m))

        for msg in self._history:
            if matches(msg):
                return msg

        queue = self.subscribe()
        try:
            async def _next() -> Message:
                while True:
                    msg = await queue.get()
                    if matches(msg):
                        return msg
            return await asyncio.wait_for(_next(), timeout_s)
        finally:
            self.unsubscribe(queue)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def command(self, msg_type: MessageType, data: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        if msg_type not in COMMAND_TYPES:
            raise ValueError(f"not a UI command: {msg_type.value}")
        try:
            reply = await self._endpoint.request(
                Zone.BRIDGE, msg_type, data, timeout_s=self._command_timeout_s
            )
        except RequestTimeout as e:
            return {"ok": False, "error": e.to_payload()}
        if "error" in reply:
            return {"ok": False, **reply}
        return {"ok": True, **reply}

    async def start_capture(self) -> dict[str, Any]:
        return await self.command(MessageType.START_CAPTURE)

    async def stop_capture(self) -> dict[str, Any]:
        return await self.command(MessageType.STOP_CAPTURE)

    async def get_status(self) -> dict[str, Any]:
        return await self.command(MessageType.GET_STATUS)

    async def refresh_state(self) -> dict[str, Any]:
        return await self.command(MessageType.REFRESH_STATE)

    async def retry_init(self) -> dict[str, Any]:
        return await self.command(MessageType.RETRY_INIT)

    async def set_api_key(self, api_key: str) -> dict[str, Any]:
        return await self.command(MessageType.SET_API_KEY, {"api_key": api_key})

    async def update_speaker(self, user_id: str, name: str) -> dict[str, Any]:
        return await self.command(MessageType.UPDATE_SPEAKER, {"user_id": user_id, "name": name})

    async def get_transcripts(self, *, user_id: Optional[str] = None, limit: Optional[int] = None) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if user_id is not None:
            data["user_id"] = user_id
        if limit is not None:
            data["limit"] = limit
        return await self.command(MessageType.GET_TRANSCRIPTS, data)

    async def clear_transcripts(self) -> dict[str, Any]:
        self.transcripts.clear()
        return await self.command(MessageType.CLEAR_TRANSCRIPTS)
