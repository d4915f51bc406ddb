"""
Bridge zone.

Responsibilities:
- Drive initialization (audio-first: SETUP_AUDIO, then discovery) and
  report progress to the UI
- Track which participants are live and relay join/leave to UI and Worker
- Forward audio frames from the Page zone to the Worker, dropping frames
  for users without a live capture
- Relay transcripts, worker errors and circuit state to the UI
- Answer the UI control surface; forward transcript/speaker commands
- Detect disconnects (host reconnect hook, liveness probe) and hand them
  to the reconnection coordinator

Non-responsibilities:
- Capture or DSP (Page zone)
- Buffering or transcription (Worker zone)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Optional

from audio.frames import PCMFrame
from bridge.init_state import InitState, InitStateMachine
from bridge.reconnection import ReconnectionCoordinator, ReconnectionPolicy
from config import AppConfig
from constants import (
    HOST_RECONNECT_SETTLE_S,
    INIT_SETUP_TIMEOUT_S,
    LIVENESS_PROBE_INTERVAL_S,
)
from errors import (
    ErrorKind,
    FatalSetupError,
    InvariantViolation,
    RequestTimeout,
    TransientPageError,
    TranscriberError,
    error_from_payload,
)
from observability.logger import log_event
from protocol.bus import Endpoint, Handler
from protocol.messages import Message, MessageType, Zone


@dataclass
class BridgeStats:
    frames_forwarded: int = 0
    frames_dropped: int = 0
    transcripts_relayed: int = 0
    errors_relayed: int = 0
    reconnects_triggered: int = 0
    liveness_failures: int = 0
    wrong_source: int = 0

    def snapshot(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class BridgeTimings:
    setup_timeout_s: float = INIT_SETUP_TIMEOUT_S
    liveness_interval_s: float = LIVENESS_PROBE_INTERVAL_S
    host_reconnect_settle_s: float = HOST_RECONNECT_SETTLE_S


def _raise_for_reply(reply: dict[str, Any]) -> dict[str, Any]:
    if "error" in reply:
        raise error_from_payload(reply["error"])
    return reply


class Bridge:
    def __init__(
        self,
        *,
        endpoint: Endpoint,
        config: AppConfig,
        timings: BridgeTimings = BridgeTimings(),
        reconnect_policy: ReconnectionPolicy = ReconnectionPolicy(),
        reconnect_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._endpoint = endpoint
        self._config = config
        self._timings = timings

        self.init = InitStateMachine()
        self.reconnection = ReconnectionCoordinator(
            probe=self._probe_page,
            resume=self._resume_user,
            notify=self._notify_ui,
            policy=reconnect_policy,
            sleep=reconnect_sleep,
        )
        self.stats = BridgeStats()

        # user_id -> started_at_ms
        self._active: dict[str, int] = {}
        self._capturing = False
        self._sample_rate_hz: Optional[int] = None
        self._globals: dict[str, Any] = {"found": False}
        self._host_state: dict[str, Any] = {}
        self._last_error: Optional[dict[str, Any]] = None

        self._init_task: Optional[asyncio.Task[bool]] = None
        self._liveness_task: Optional[asyncio.Task[None]] = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self._register()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _register(self) -> None:
        routes: list[tuple[MessageType, Zone, Handler]] = [
            # Page
            (MessageType.AUDIO_FRAME, Zone.PAGE, self._on_audio_frame),
            (MessageType.CAPTURE_STARTED, Zone.PAGE, self._on_capture_started),
            (MessageType.CAPTURE_STOPPED, Zone.PAGE, self._on_capture_stopped),
            (MessageType.HOST_FUNCTION_CALLED, Zone.PAGE, self._on_host_function_called),
            (MessageType.VOLUME_CHANGED, Zone.PAGE, self._on_host_state),
            (MessageType.SESSION_STATE_CHANGED, Zone.PAGE, self._on_host_state),
            (MessageType.TALKING_USERS_CHANGED, Zone.PAGE, self._on_host_state),
            (MessageType.PREFERENCES_CHANGED, Zone.PAGE, self._on_host_state),
            (MessageType.GLOBALS_FOUND, Zone.PAGE, self._on_globals),
            (MessageType.GLOBALS_MISSING, Zone.PAGE, self._on_globals),
            (MessageType.PAGE_ERROR, Zone.PAGE, self._on_page_error),
            # Worker
            (MessageType.TRANSCRIPT_PARTIAL, Zone.WORKER, self._on_transcript),
            (MessageType.TRANSCRIPT_FINAL, Zone.WORKER, self._on_transcript),
            (MessageType.CIRCUIT_STATE, Zone.WORKER, self._on_circuit_state),
            (MessageType.WORKER_ERROR, Zone.WORKER, self._on_worker_error),
            # UI control surface
            (MessageType.START_CAPTURE, Zone.UI, self._on_start_capture),
            (MessageType.STOP_CAPTURE, Zone.UI, self._on_stop_capture),
            (MessageType.GET_STATUS, Zone.UI, self._on_get_status),
            (MessageType.REFRESH_STATE, Zone.UI, self._on_refresh_state),
            (MessageType.RETRY_INIT, Zone.UI, self._on_retry_init),
            (MessageType.SET_API_KEY, Zone.UI, self._forward_to_worker),
            (MessageType.UPDATE_SPEAKER, Zone.UI, self._forward_to_worker),
            (MessageType.GET_TRANSCRIPTS, Zone.UI, self._forward_to_worker),
            (MessageType.CLEAR_TRANSCRIPTS, Zone.UI, self._forward_to_worker),
        ]
        for msg_type, source, handler in routes:
            self._endpoint.on(msg_type, self._from(source, handler))

    def _from(self, source: Zone, handler: Handler) -> Handler:
        async def wrapped(msg: Message) -> dict[str, Any] | None:
            if msg.source is not source:
                self.stats.wrong_source += 1
                log_event({
                    "event_type": "BRIDGE_WRONG_SOURCE",
                    "zone": "bridge",
                    "type": msg.type.value,
                    "source": msg.source.value,
                    "expected": source.value,
                })
                raise InvariantViolation(f"{msg.type.value} is not accepted from {msg.source.value}")
            return await handler(msg)
        return wrapped

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task[bool]:
        self._init_task = asyncio.create_task(self.initialize(), name="bridge-init")
        return self._init_task

    async def initialize(self) -> bool:
        """
        Audio-first initialization. Host globals are optional and are
        discovered by the Page zone in the background.

        Returns True when READY, False when FAILED.
        """
        try:
            self._advance(InitState.SETTING_UP_AUDIO)
            await self._progress(InitState.SETTING_UP_AUDIO, "creating audio context")
            reply = await self._page_request(
                MessageType.SETUP_AUDIO,
                timeout_s=self._timings.setup_timeout_s,
                fatal=True,
            )
            self._sample_rate_hz = reply.get("sample_rate_hz")

            if self._config.auto_start_capture:
                self._advance(InitState.CAPTURING)
                await self._progress(InitState.CAPTURING, "starting sink discovery")
                await self._page_request(
                    MessageType.START_DISCOVERY,
                    timeout_s=self._timings.setup_timeout_s,
                    fatal=True,
                )
                self._capturing = True

            self._advance(InitState.READY)
        except TranscriberError as e:
            await self._fail(e)
            return False

        await self._progress(InitState.READY, "ready")
        await self._endpoint.emit(Zone.UI, MessageType.EXTENSION_READY, {
            "sample_rate_hz": self._sample_rate_hz,
            "capturing": self._capturing,
        })
        self._start_liveness()
        return True

    def _advance(self, target: InitState) -> None:
        # A fatal page error may have failed us while awaiting
        if self.init.state is InitState.FAILED:
            raise FatalSetupError("initialization aborted", code="aborted")
        self.init.transition(target)

    async def _progress(self, phase: InitState, message: str) -> None:
        await self._endpoint.emit(Zone.UI, MessageType.INIT_PROGRESS, {
            "phase": phase.value,
            "message": message,
        })

    async def _fail(self, error: TranscriberError) -> None:
        if self.init.state is InitState.FAILED:
            return
        phase = self.init.state
        self.init.transition(InitState.FAILED)
        self._last_error = {"context": "init", "error": error.to_payload()}
        log_event({
            "event_type": "BRIDGE_INIT_FAILED",
            "zone": "bridge",
            "phase": phase.value,
            "error": error.to_payload(),
        })
        self._stop_liveness()
        await self._endpoint.emit(Zone.UI, MessageType.INIT_FAILED, {
            "error": error.to_payload(),
            "phase": phase.value,
        })
        # Halt captures
        self._capturing = False
        await self._endpoint.emit(Zone.PAGE, MessageType.STOP_CAPTURE)

    async def _page_request(
        self,
        msg_type: MessageType,
        data: dict[str, Any] | None = None,
        *,
        timeout_s: float | None = None,
        fatal: bool = False,
    ) -> dict[str, Any]:
        try:
            reply = await self._endpoint.request(Zone.PAGE, msg_type, data, timeout_s=timeout_s)
        except RequestTimeout as e:
            if fatal:
                raise FatalSetupError(
                    f"page zone did not answer {msg_type.value}",
                    code="page-unreachable",
                ) from e
            raise
        return _raise_for_reply(reply)

    # ------------------------------------------------------------------
    # Page events
    # ------------------------------------------------------------------

    async def _on_audio_frame(self, msg: Message) -> None:
        frame: PCMFrame = msg.data["frame"]
        if frame.user_id not in self._active:
            self.stats.frames_dropped += 1
            if self.stats.frames_dropped == 1 or self.stats.frames_dropped % 100 == 0:
                log_event({
                    "event_type": "BRIDGE_FRAME_DROPPED",
                    "zone": "bridge",
                    "user_id": frame.user_id,
                    "chunk_index": frame.chunk_index,
                    "dropped_total": self.stats.frames_dropped,
                })
            return
        self.stats.frames_forwarded += 1
        await self._endpoint.send_frame(Zone.WORKER, frame)

    async def _on_capture_started(self, msg: Message) -> None:
        user_id = str(msg.data.get("user_id", ""))
        self._active[user_id] = int(msg.data.get("started_at_ms", msg.timestamp))
        await self._endpoint.emit(Zone.UI, MessageType.USER_JOINED, {
            "user_id": user_id,
            "element_id": msg.data.get("element_id"),
        })

    async def _on_capture_stopped(self, msg: Message) -> None:
        user_id = str(msg.data.get("user_id", ""))
        self._active.pop(user_id, None)
        payload = {
            "user_id": user_id,
            "duration": msg.data.get("duration", 0.0),
            "chunks": msg.data.get("chunks", 0),
            "reason": msg.data.get("reason"),
        }
        # Worker first so the final chunk is extracted before the UI hears
        await self._endpoint.emit(Zone.WORKER, MessageType.USER_LEFT, payload)
        await self._endpoint.emit(Zone.UI, MessageType.USER_LEFT, payload)

    async def _on_host_function_called(self, msg: Message) -> None:
        name = msg.data.get("name")
        log_event({
            "event_type": "BRIDGE_HOST_FUNCTION_CALLED",
            "zone": "bridge",
            "name": name,
            "arg_count": msg.data.get("arg_count"),
        })
        if name == "reconnectAudio":
            self._spawn(self._host_reconnect())

    async def _host_reconnect(self) -> None:
        # Snapshot before the host tears its sinks down
        snapshot = set(self._active)
        await asyncio.sleep(self._timings.host_reconnect_settle_s)
        await self._trigger_reconnect(snapshot | set(self._active), reason="host-reconnect")

    async def _on_host_state(self, msg: Message) -> None:
        if msg.type is MessageType.VOLUME_CHANGED:
            self._host_state["volume"] = msg.data.get("volume")
        elif msg.type is MessageType.SESSION_STATE_CHANGED:
            self._host_state["session_state"] = msg.data.get("state")
        elif msg.type is MessageType.TALKING_USERS_CHANGED:
            self._host_state["talking_users"] = msg.data.get("users", [])
        elif msg.type is MessageType.PREFERENCES_CHANGED:
            self._host_state["preferences"] = msg.data.get("preferences")
        log_event({
            "event_type": "BRIDGE_HOST_STATE",
            "zone": "bridge",
            "type": msg.type.value,
            "data": msg.data,
        })

    async def _on_globals(self, msg: Message) -> None:
        found = msg.type is MessageType.GLOBALS_FOUND
        self._globals = {"found": found, **msg.data}
        await self._endpoint.emit(Zone.UI, MessageType.INIT_PROGRESS, {
            "phase": "globals",
            "message": "host globals found" if found else "host globals unavailable",
        })

    async def _on_page_error(self, msg: Message) -> None:
        error = msg.data.get("error", {})
        await self._relay_error(str(msg.data.get("context", "page")), error)
        if isinstance(error, dict) and error.get("kind") == ErrorKind.FATAL_SETUP.value:
            await self._fail(error_from_payload(error))

    # ------------------------------------------------------------------
    # Worker events
    # ------------------------------------------------------------------

    async def _on_transcript(self, msg: Message) -> None:
        self.stats.transcripts_relayed += 1
        await self._endpoint.emit(Zone.UI, msg.type, msg.data)

    async def _on_circuit_state(self, msg: Message) -> None:
        await self._endpoint.emit(Zone.UI, MessageType.CIRCUIT_STATE, msg.data)

    async def _on_worker_error(self, msg: Message) -> None:
        await self._relay_error(str(msg.data.get("context", "worker")), msg.data.get("error", {}))

    async def _relay_error(self, context: str, error: Any) -> None:
        self.stats.errors_relayed += 1
        self._last_error = {"context": context, "error": error}
        await self._endpoint.emit(Zone.UI, MessageType.ERROR_UPDATE, {
            "context": context,
            "error": error,
        })

    # ------------------------------------------------------------------
    # UI control surface
    # ------------------------------------------------------------------

    def _require_initialized(self) -> None:
        state = self.init.state
        if state is InitState.FAILED:
            raise FatalSetupError("initialization failed; send retry_init", code="init-failed")
        if state not in (InitState.CAPTURING, InitState.READY):
            raise TransientPageError(f"not initialized yet ({state.value})", code="not-ready")

    async def _on_start_capture(self, _msg: Message) -> dict[str, Any]:
        self._require_initialized()
        reply = await self._page_request(MessageType.START_CAPTURE)
        self._capturing = True
        return {**self.status(), "page": reply}

    async def _on_stop_capture(self, _msg: Message) -> dict[str, Any]:
        self._require_initialized()
        reply = await self._page_request(MessageType.STOP_CAPTURE)
        self._capturing = False
        return {**self.status(), "page": reply}

    async def _on_get_status(self, _msg: Message) -> dict[str, Any]:
        return self.status()

    async def _on_refresh_state(self, _msg: Message) -> dict[str, Any]:
        self._require_initialized()
        reply = await self._page_request(MessageType.REFRESH_STATE)
        return {**self.status(), "page": reply}

    async def _on_retry_init(self, _msg: Message) -> dict[str, Any]:
        if self.init.state is not InitState.FAILED:
            raise InvariantViolation(f"retry_init is only valid after failure (state {self.init.state.value})")
        self.init.transition(InitState.PENDING)
        self._last_error = None
        self.start()
        return self.status()

    async def _forward_to_worker(self, msg: Message) -> dict[str, Any]:
        return await self._endpoint.request(Zone.WORKER, msg.type, msg.data)

    def status(self) -> dict[str, Any]:
        context = self.reconnection.context
        return {
            "init_state": self.init.state.value,
            "failed_phase": self.init.failed_phase.value if self.init.failed_phase else None,
            "capturing": self._capturing,
            "sample_rate_hz": self._sample_rate_hz,
            "active_users": sorted(self._active),
            "reconnecting": self.reconnection.active,
            "reconnection": context.describe() if context is not None else None,
            "globals": dict(self._globals),
            "host_state": dict(self._host_state),
            "last_error": self._last_error,
            "stats": self.stats.snapshot(),
        }

    @property
    def active_users(self) -> list[str]:
        return sorted(self._active)

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    async def _trigger_reconnect(self, user_ids: set[str], *, reason: str) -> None:
        self.stats.reconnects_triggered += 1
        log_event({
            "event_type": "BRIDGE_RECONNECT_TRIGGERED",
            "zone": "bridge",
            "reason": reason,
            "user_ids": sorted(user_ids),
        })
        # Chunks never straddle the break
        await self._endpoint.emit(Zone.WORKER, MessageType.FLUSH_BUFFERS, {"reason": reason})
        self.reconnection.trigger(user_ids, reason=reason)

    async def _probe_page(self) -> bool:
        try:
            reply = await self._endpoint.request(
                Zone.PAGE,
                MessageType.CONNECTION_TEST,
                timeout_s=self.reconnection.policy.probe_timeout_s,
            )
        except RequestTimeout:
            return False
        return reply.get("ok") is True

    async def _resume_user(self, user_id: str) -> bool:
        try:
            reply = await self._endpoint.request(
                Zone.PAGE,
                MessageType.RESUME_CAPTURE,
                {"user_id": user_id},
                timeout_s=self.reconnection.policy.resume_timeout_s,
            )
        except RequestTimeout:
            return False
        return reply.get("resumed") is True

    async def _notify_ui(self, msg_type: MessageType, data: dict[str, Any]) -> None:
        await self._endpoint.emit(Zone.UI, msg_type, data)

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def _start_liveness(self) -> None:
        if self._liveness_task is None and self._timings.liveness_interval_s > 0:
            self._liveness_task = asyncio.create_task(self._liveness_loop(), name="bridge-liveness")

    def _stop_liveness(self) -> None:
        task, self._liveness_task = self._liveness_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self._timings.liveness_interval_s)
            if self.reconnection.active:
                continue
            if await self._probe_page():
                continue
            self.stats.liveness_failures += 1
            log_event({
                "event_type": "BRIDGE_LIVENESS_TIMEOUT",
                "zone": "bridge",
                "active_users": sorted(self._active),
            })
            await self._trigger_reconnect(set(self._active), reason="liveness-timeout")

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def shutdown(self) -> None:
        self._stop_liveness()
        await self.reconnection.cancel()
        tasks = list(self._tasks)
        if self._init_task is not None and not self._init_task.done():
            tasks.append(self._init_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log_event({"event_type": "BRIDGE_SHUTDOWN", "zone": "bridge", "stats": self.stats.snapshot()})
