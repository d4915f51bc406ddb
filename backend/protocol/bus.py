"""
Inter-zone message bus.

Responsibilities:
- One Endpoint per zone, each with a bounded inbox and a single dispatch
  task (the zone's cooperative "thread")
- Serialize control messages to JSON at the sender and re-validate them
  at the receiver, so no object is shared across a zone boundary
- Reject messages whose source zone the receiver does not expect
- Hold normal-priority messages for a receiver that is not yet ready
  (bounded, drop-oldest); HIGH priority messages are logged and bypass it
- Request/response: correlation ids, one-shot waiters, default 2 s timeout;
  every request receives exactly one reply or times out
- Audio fast path: AUDIO_FRAME skips serialization and handler lookup
  by type-name but shares the inbox, so frames stay ordered with control
  messages

Non-responsibilities:
- No persistence; delivery is best-effort within one page lifetime
- No knowledge of what any message means
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Iterable
from uuid import uuid4

from audio.frames import PCMFrame
from constants import BUS_INBOX_MAX, BUS_OUTBOUND_QUEUE_MAX, BUS_REQUEST_TIMEOUT_S
from errors import ErrorKind, RequestTimeout, error_payload
from observability.logger import log_event
from protocol.messages import MalformedMessage, Message, MessageType, Priority, Zone
from protocol.queues import OutboundQueue


Handler = Callable[[Message], Awaitable["dict[str, Any] | None"]]


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass
class EndpointStats:
    received: int = 0
    sent: int = 0
    frames_in: int = 0
    frames_out: int = 0
    replies_sent: int = 0
    rejected_source: int = 0
    rejected_malformed: int = 0
    unhandled: int = 0
    handler_errors: int = 0
    request_timeouts: int = 0
    late_replies: int = 0

    def snapshot(self) -> dict[str, int]:
        return asdict(self)


# ---------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------

class Endpoint:
    """
    A zone's attachment point to the bus.

    Handlers are registered per MessageType. A handler's return value is
    sent back automatically when the inbound message is a request; a
    handler that raises produces a reply of the form
    {"error": {"kind": ..., "message": ...}}.
    """

    def __init__(
        self,
        *,
        bus: MessageBus,
        zone: Zone,
        accepts: Iterable[Zone],
        inbox_max: int,
        outbound_max: int,
        request_timeout_s: float,
    ) -> None:
        self._bus = bus
        self.zone = zone
        self._accepts = frozenset(accepts)
        self._request_timeout_s = request_timeout_s

        self._handlers: dict[MessageType, Handler] = {}
        self._inbox: asyncio.Queue[Message] = asyncio.Queue(maxsize=inbox_max)
        self._deferred: OutboundQueue[Message] = OutboundQueue(max_items=outbound_max)
        self._waiters: dict[str, asyncio.Future[dict[str, Any]]] = {}

        self._ready = False
        self._busy = False
        self._task: asyncio.Task[None] | None = None
        self.stats = EndpointStats()

    # ------------------------------------------------------------------
    # Registration / lifecycle
    # ------------------------------------------------------------------

    def on(self, msg_type: MessageType, handler: Handler) -> None:
        self._handlers[msg_type] = handler

    @property
    def ready(self) -> bool:
        return self._ready

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"bus-{self.zone.value}")

    async def mark_ready(self) -> None:
        """
        Declare the zone initialized and release deferred messages in order.
        """
        if self._ready:
            return
        self._ready = True
        flushed = 0
        for msg in self._deferred.drain():
            await self._inbox.put(msg)
            flushed += 1
        log_event({
            "event_type": "BUS_ENDPOINT_READY",
            "zone": self.zone.value,
            "flushed": flushed,
            "deferred": self._deferred.snapshot(),
        })

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for fut in self._waiters.values():
            if not fut.done():
                fut.cancel()
        self._waiters.clear()
        self._ready = False

    async def join(self) -> None:
        """Wait until every message currently in the inbox was dispatched."""
        await self._inbox.join()

    def idle(self) -> bool:
        return self._inbox.empty() and not self._busy

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def emit(
        self,
        dest: Zone,
        msg_type: MessageType,
        data: dict[str, Any] | None = None,
        *,
        priority: Priority = Priority.NORMAL,
    ) -> bool:
        """Fire-and-forget send. Returns False if the destination is unknown."""
        msg = Message(source=self.zone, type=msg_type, data=data or {}, priority=priority)
        return await self._send(dest, msg)

    async def request(
        self,
        dest: Zone,
        msg_type: MessageType,
        data: dict[str, Any] | None = None,
        *,
        timeout_s: float | None = None,
        priority: Priority = Priority.NORMAL,
    ) -> dict[str, Any]:
        """
        Send a request and wait for its reply.

        Raises:
            RequestTimeout if no reply arrives within timeout_s.
        """
        timeout = self._request_timeout_s if timeout_s is None else timeout_s
        correlation_id = uuid4().hex
        fut: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._waiters[correlation_id] = fut

        msg = Message(
            source=self.zone,
            type=msg_type,
            data=data or {},
            priority=priority,
            correlation_id=correlation_id,
        )

        async def send_and_wait() -> dict[str, Any]:
            await self._send(dest, msg)
            return await fut

        # A full destination inbox counts against the same deadline
        try:
            return await asyncio.wait_for(send_and_wait(), timeout)
        except asyncio.TimeoutError as e:
            self.stats.request_timeouts += 1
            log_event({
                "event_type": "BUS_REQUEST_TIMEOUT",
                "zone": self.zone.value,
                "dest": dest.value,
                "type": msg_type.value,
                "correlation_id": correlation_id,
                "timeout_s": timeout,
            })
            raise RequestTimeout(
                f"{msg_type.value} to {dest.value} timed out after {timeout}s"
            ) from e
        finally:
            self._waiters.pop(correlation_id, None)

    async def send_frame(self, dest: Zone, frame: PCMFrame) -> bool:
        """Audio fast path."""
        self.stats.frames_out += 1
        return await self._bus.route_frame(self.zone, dest, frame)

    async def _send(self, dest: Zone, msg: Message) -> bool:
        if msg.priority is Priority.HIGH:
            log_event({
                "event_type": "BUS_HIGH_PRIORITY_SEND",
                "zone": self.zone.value,
                "dest": dest.value,
                "type": msg.type.value,
            })
        payload = json.dumps(msg.to_wire(), separators=(",", ":"))
        self.stats.sent += 1
        return await self._bus.route(dest, payload)

    async def _reply(self, request: Message, data: dict[str, Any]) -> None:
        reply = Message(
            source=self.zone,
            type=MessageType.REPLY,
            data=data,
            correlation_id=request.correlation_id,
        )
        self.stats.replies_sent += 1
        await self._send(request.source, reply)

    # ------------------------------------------------------------------
    # Receiving (called by the bus)
    # ------------------------------------------------------------------

    async def receive_wire(self, payload: str) -> None:
        try:
            msg = Message.from_wire(json.loads(payload))
        except (ValueError, MalformedMessage) as e:
            self.stats.rejected_malformed += 1
            log_event({
                "event_type": "BUS_MALFORMED_MESSAGE",
                "zone": self.zone.value,
                "error": str(e),
            })
            return

        if msg.source not in self._accepts:
            self.stats.rejected_source += 1
            log_event({
                "event_type": "BUS_SOURCE_REJECTED",
                "zone": self.zone.value,
                "source": msg.source.value,
                "type": msg.type.value,
            })
            return

        self.stats.received += 1

        if msg.type is MessageType.REPLY:
            self._resolve(msg)
            return

        await self._accept(msg)

    async def receive_frame(self, source: Zone, frame: PCMFrame) -> None:
        if source not in self._accepts:
            self.stats.rejected_source += 1
            log_event({
                "event_type": "BUS_SOURCE_REJECTED",
                "zone": self.zone.value,
                "source": source.value,
                "type": MessageType.AUDIO_FRAME.value,
            })
            return
        self.stats.frames_in += 1
        await self._accept(
            Message(source=source, type=MessageType.AUDIO_FRAME, data={"frame": frame})
        )

    async def _accept(self, msg: Message) -> None:
        if not self._ready:
            if msg.priority is Priority.HIGH:
                log_event({
                    "event_type": "BUS_DEFER_BYPASSED",
                    "zone": self.zone.value,
                    "type": msg.type.value,
                })
            else:
                dropped = self._deferred.enqueue(msg)
                if dropped is not None:
                    log_event({
                        "event_type": "BUS_DEFERRED_DROPPED",
                        "zone": self.zone.value,
                        "type": dropped.type.value,
                    })
                return
        await self._inbox.put(msg)

    def _resolve(self, reply: Message) -> None:
        assert reply.correlation_id is not None
        fut = self._waiters.pop(reply.correlation_id, None)
        if fut is None or fut.done():
            self.stats.late_replies += 1
            log_event({
                "event_type": "BUS_LATE_REPLY_DROPPED",
                "zone": self.zone.value,
                "source": reply.source.value,
                "correlation_id": reply.correlation_id,
            })
            return
        fut.set_result(reply.data)

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            msg = await self._inbox.get()
            self._busy = True
            try:
                await self._dispatch(msg)
            finally:
                self._busy = False
                self._inbox.task_done()

    async def _dispatch(self, msg: Message) -> None:
        handler = self._handlers.get(msg.type)
        if handler is None:
            self.stats.unhandled += 1
            log_event({
                "event_type": "BUS_UNHANDLED_MESSAGE",
                "zone": self.zone.value,
                "source": msg.source.value,
                "type": msg.type.value,
            })
            if msg.is_request:
                await self._reply(msg, {
                    "error": {
                        "kind": ErrorKind.PROGRAMMER_ERROR.value,
                        "message": f"no handler for {msg.type.value}",
                    }
                })
            return

        try:
            result = await handler(msg)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self.stats.handler_errors += 1
            payload = error_payload(exc)
            log_event({
                "event_type": "BUS_HANDLER_ERROR",
                "zone": self.zone.value,
                "type": msg.type.value,
                "error": payload,
            })
            if msg.is_request:
                await self._reply(msg, {"error": payload})
            return

        if msg.is_request:
            await self._reply(msg, result or {})

    def snapshot(self) -> dict[str, Any]:
        return {
            "zone": self.zone.value,
            "ready": self._ready,
            "inbox": self._inbox.qsize(),
            "pending_requests": len(self._waiters),
            "deferred": self._deferred.snapshot(),
            "stats": self.stats.snapshot(),
        }


# ---------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------

class MessageBus:
    """
    Router connecting the zone endpoints of one session.

    Trust rules are declared per endpoint through `accepts`; the bus
    itself only moves payloads.
    """

    def __init__(
        self,
        *,
        request_timeout_s: float = BUS_REQUEST_TIMEOUT_S,
        inbox_max: int = BUS_INBOX_MAX,
        outbound_max: int = BUS_OUTBOUND_QUEUE_MAX,
    ) -> None:
        self._request_timeout_s = request_timeout_s
        self._inbox_max = inbox_max
        self._outbound_max = outbound_max
        self._endpoints: dict[Zone, Endpoint] = {}

    def endpoint(self, zone: Zone, *, accepts: Iterable[Zone]) -> Endpoint:
        if zone in self._endpoints:
            raise ValueError(f"endpoint already registered: {zone.value}")
        ep = Endpoint(
            bus=self,
            zone=zone,
            accepts=accepts,
            inbox_max=self._inbox_max,
            outbound_max=self._outbound_max,
            request_timeout_s=self._request_timeout_s,
        )
        self._endpoints[zone] = ep
        return ep

    def get(self, zone: Zone) -> Endpoint:
        return self._endpoints[zone]

    async def route(self, dest: Zone, payload: str) -> bool:
        ep = self._endpoints.get(dest)
        if ep is None:
            log_event({"event_type": "BUS_UNKNOWN_DESTINATION", "dest": dest.value})
            return False
        await ep.receive_wire(payload)
        return True

    async def route_frame(self, source: Zone, dest: Zone, frame: PCMFrame) -> bool:
        ep = self._endpoints.get(dest)
        if ep is None:
            return False
        await ep.receive_frame(source, frame)
        return True

    def start(self) -> None:
        for ep in self._endpoints.values():
            ep.start()

    async def stop(self) -> None:
        for ep in self._endpoints.values():
            await ep.stop()

    async def settle(self, *, rounds: int = 50) -> None:
        """
        Wait until every inbox is drained, including messages produced
        while draining. Background tasks owned by zones are not awaited.
        """
        for _ in range(rounds):
            for ep in self._endpoints.values():
                await ep.join()
            await asyncio.sleep(0)
            if all(ep.idle() for ep in self._endpoints.values()):
                return

    def snapshot(self) -> dict[str, Any]:
        return {zone.value: ep.snapshot() for zone, ep in self._endpoints.items()}
