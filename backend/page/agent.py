"""
Page Capture zone.

Responsibilities:
- Answer Bridge commands (setup, discovery, start/stop, state, liveness,
  capture resumption)
- Wire sink discovery to capture attachment
- Stream PCM frames to the Bridge over the audio fast path
- Mirror host state; feed volume into capture scaling, stop everything
  when the session closes, re-scan sinks when the talking set changes
- Discover host globals in the background and hook host functions

Non-responsibilities:
- Buffering or transcription
- Reconnection policy (the Bridge decides; this zone only answers probes
  and resume requests)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from audio.frames import PCMFrame
from config import AppConfig
from constants import (
    DISCOVERY_SWEEP_INTERVAL_S,
    GLOBALS_DISCOVERY_DEADLINE_S,
    GLOBALS_PROBE_INTERVAL_S,
    HOOKED_HOST_FUNCTIONS,
    SESSION_STATE_CLOSED,
    SINK_CONTAINER_ID,
    STATE_POLL_INTERVAL_S,
    STREAM_SWAP_SETTLE_S,
    STREAM_WAIT_MAX_S,
    STREAM_WAIT_POLL_S,
)
from errors import FatalSetupError, TranscriberError
from observability.logger import log_event
from page.audio_context import ContextState, SharedAudioContext
from page.capture import CaptureManager, ContextFactory, ParticipantAudio
from page.discovery import SinkDiscovery
from page.dom import AudioSinkElement, HostPage, MediaStream, has_live_audio
from page.globals_finder import GlobalsDescriptor, HostGlobalsFinder
from page.state_mirror import HostFunctionHooks, HostState, StateMirror
from protocol.bus import Endpoint, Handler
from protocol.messages import Message, MessageType, Priority, Zone


@dataclass(frozen=True)
class PageTimings:
    stream_poll_s: float = STREAM_WAIT_POLL_S
    stream_wait_max_s: float = STREAM_WAIT_MAX_S
    sweep_interval_s: float = DISCOVERY_SWEEP_INTERVAL_S
    swap_settle_s: float = STREAM_SWAP_SETTLE_S
    state_poll_s: float = STATE_POLL_INTERVAL_S
    globals_probe_s: float = GLOBALS_PROBE_INTERVAL_S
    globals_deadline_s: float = GLOBALS_DISCOVERY_DEADLINE_S


class PageAgent:
    def __init__(
        self,
        *,
        endpoint: Endpoint,
        page: HostPage,
        config: AppConfig,
        context_factory: ContextFactory = SharedAudioContext,
        timings: PageTimings = PageTimings(),
    ) -> None:
        self._endpoint = endpoint
        self._page = page
        self._config = config

        self.captures = CaptureManager(
            context_factory=context_factory,
            get_volume=self._current_volume,
            on_frame=self._send_frame,
            on_started=self._capture_started,
            on_stopped=self._capture_stopped,
            on_error=self._capture_error,
        )
        self.discovery = SinkDiscovery(
            page=page,
            prefix=config.sink_id_prefix,
            on_sink_live=self._sink_live,
            on_sink_gone=self._sink_gone,
            container_id=SINK_CONTAINER_ID,
            poll_interval_s=timings.stream_poll_s,
            stream_wait_max_s=timings.stream_wait_max_s,
            sweep_interval_s=timings.sweep_interval_s,
            swap_settle_s=timings.swap_settle_s,
        )
        self.mirror = StateMirror(
            read_state=self._read_host_state,
            on_change=self._state_changed,
            interval_s=timings.state_poll_s,
        )
        self.globals_finder = HostGlobalsFinder(
            page=page,
            on_found=self._globals_found,
            on_missing=self._globals_missing,
            interval_s=timings.globals_probe_s,
            deadline_s=timings.globals_deadline_s,
        )
        self.hooks = HostFunctionHooks(on_call=self._host_function_called)

        self._globals: Optional[GlobalsDescriptor] = None
        self._audio_ready = False
        self._tasks: set[asyncio.Task[Any]] = set()

        self._register()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _register(self) -> None:
        routes: dict[MessageType, Handler] = {
            MessageType.SETUP_AUDIO: self._on_setup_audio,
            MessageType.START_DISCOVERY: self._on_start_capture,
            MessageType.START_CAPTURE: self._on_start_capture,
            MessageType.STOP_CAPTURE: self._on_stop_capture,
            MessageType.GET_STATE: self._on_get_state,
            MessageType.REFRESH_STATE: self._on_refresh_state,
            MessageType.CONNECTION_TEST: self._on_connection_test,
            MessageType.RESUME_CAPTURE: self._on_resume_capture,
        }
        for msg_type, handler in routes.items():
            self._endpoint.on(msg_type, self._resuming(handler))

    def _resuming(self, handler: Handler) -> Handler:
        async def wrapped(msg: Message) -> dict[str, Any] | None:
            context = self.captures.context
            if context is not None and context.state is ContextState.SUSPENDED:
                await context.resume()
            return await handler(msg)
        return wrapped

    async def shutdown(self) -> None:
        await self.discovery.stop()
        await self.mirror.stop()
        await self.globals_finder.stop()
        self.hooks.uninstall()
        await self.captures.close()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------

    async def _on_setup_audio(self, _msg: Message) -> dict[str, Any]:
        context = self.captures.ensure_context()
        self._audio_ready = True
        self.mirror.start()
        self.globals_finder.start()
        return {
            "sample_rate_hz": context.sample_rate_hz,
            "context_state": context.state.value,
        }

    async def _on_start_capture(self, _msg: Message) -> dict[str, Any]:
        if not self._audio_ready:
            await self._on_setup_audio(_msg)
        found = self.discovery.start() if not self.discovery.running else self.discovery.rescan()
        return {"capturing": True, "new_sinks": found, **self.state()}

    async def _on_stop_capture(self, _msg: Message) -> dict[str, Any]:
        await self.discovery.stop()
        stopped = await self.captures.stop_all(reason="stopped")
        return {"capturing": False, "stopped": stopped}

    async def _on_get_state(self, _msg: Message) -> dict[str, Any]:
        return self.state()

    async def _on_refresh_state(self, _msg: Message) -> dict[str, Any]:
        await self.mirror.sync_now()
        found = self.discovery.rescan()
        return {"new_sinks": found, **self.state()}

    async def _on_connection_test(self, _msg: Message) -> dict[str, Any]:
        return {"ok": True, "active_captures": self.captures.active_user_ids()}

    async def _on_resume_capture(self, msg: Message) -> dict[str, Any]:
        user_id = str(msg.data.get("user_id", ""))
        if self.captures.get(user_id) is not None:
            resumed = await self.captures.restart(user_id)
            return {"user_id": user_id, "resumed": resumed is not None}

        element = self.discovery.element_for(user_id)
        if element is None:
            element = self._find_sink(user_id)
        if element is None or not has_live_audio(element.stream):
            return {"user_id": user_id, "resumed": False, "reason": "no-live-sink"}

        assert element.stream is not None
        attached = await self._sink_live(element, user_id, element.stream)
        return {"user_id": user_id, "resumed": attached}

    def _find_sink(self, user_id: str) -> Optional[AudioSinkElement]:
        element = self._page.get_element_by_id(f"{self._config.sink_id_prefix}{user_id}")
        return element if isinstance(element, AudioSinkElement) else None

    def state(self) -> dict[str, Any]:
        context = self.captures.context
        captures = {}
        for user_id in self.captures.active_user_ids():
            participant = self.captures.get(user_id)
            if participant is not None:
                captures[user_id] = participant.describe()
        return {
            "audio_context": context.state.value if context is not None else None,
            "discovery_running": self.discovery.running,
            "sinks": self.discovery.snapshot(),
            "captures": captures,
            "failed": self.captures.failed_user_ids(),
            "mirror": self.mirror.snapshot(),
            "globals": {
                "found": self._globals is not None,
                "source": self._globals.source if self._globals else None,
                "capabilities": sorted(self._globals.capabilities) if self._globals else [],
                "gave_up": self.globals_finder.gave_up,
            },
            "hooks": self.hooks.installed,
        }

    # ------------------------------------------------------------------
    # Discovery -> capture
    # ------------------------------------------------------------------

    async def _sink_live(self, element: AudioSinkElement, user_id: str, stream: MediaStream) -> bool:
        try:
            participant = await self.captures.attach(element, user_id, stream)
        except FatalSetupError as e:
            await self._report_error("capture", e)
            return False
        return participant is not None

    async def _sink_gone(self, user_id: str, reason: str) -> None:
        await self.captures.stop(user_id, reason=reason)

    async def _capture_started(self, participant: ParticipantAudio) -> None:
        await self._endpoint.emit(Zone.BRIDGE, MessageType.CAPTURE_STARTED, {
            "user_id": participant.user_id,
            "element_id": participant.element.id,
            "started_at_ms": participant.started_at_ms,
        })

    async def _capture_stopped(self, participant: ParticipantAudio, reason: str) -> None:
        if reason == "track-ended":
            self.discovery.mark_ended(participant.user_id)
        info = participant.describe()
        await self._endpoint.emit(Zone.BRIDGE, MessageType.CAPTURE_STOPPED, {
            "user_id": participant.user_id,
            "duration": info["duration_s"],
            "chunks": participant.chunk_count,
            "reason": reason,
            "quanta_skipped": info["quanta_skipped"],
        })

    async def _capture_error(self, user_id: str, error: TranscriberError) -> None:
        await self._report_error(f"capture:{user_id}", error)

    async def _send_frame(self, frame: PCMFrame) -> None:
        await self._endpoint.send_frame(Zone.BRIDGE, frame)

    async def _report_error(self, context: str, error: TranscriberError) -> None:
        await self._endpoint.emit(Zone.BRIDGE, MessageType.PAGE_ERROR, {
            "context": context,
            "error": error.to_payload(),
        })

    # ------------------------------------------------------------------
    # State mirror
    # ------------------------------------------------------------------

    def _current_volume(self) -> float:
        return self.mirror.volume

    def _read_host_state(self) -> Optional[HostState]:
        if self._globals is None:
            return None
        return self._globals.read_state()

    async def _state_changed(self, msg_type: MessageType, data: dict[str, Any]) -> None:
        await self._endpoint.emit(Zone.BRIDGE, msg_type, data)

        if msg_type is MessageType.SESSION_STATE_CHANGED and data.get("state") == SESSION_STATE_CLOSED:
            stopped = await self.captures.stop_all(reason="session-closed")
            log_event({
                "event_type": "SESSION_CLOSED_CAPTURES_STOPPED",
                "zone": "page",
                "stopped": stopped,
            })
        elif msg_type is MessageType.TALKING_USERS_CHANGED:
            self.discovery.rescan()

    # ------------------------------------------------------------------
    # Host globals / hooks
    # ------------------------------------------------------------------

    async def _globals_found(self, found: GlobalsDescriptor) -> None:
        self._globals = found
        hooked = self.hooks.install(self._page.window, HOOKED_HOST_FUNCTIONS)
        if found.service is not None:
            hooked += self.hooks.install(found.service, HOOKED_HOST_FUNCTIONS)
        await self._endpoint.emit(Zone.BRIDGE, MessageType.GLOBALS_FOUND, {
            "source": found.source,
            "capabilities": sorted(found.capabilities),
            "hooks": hooked,
        })
        await self.mirror.sync_now()

    async def _globals_missing(self, attempts: int) -> None:
        # Hooks on bare window functions still work without globals
        hooked = self.hooks.install(self._page.window, HOOKED_HOST_FUNCTIONS)
        await self._endpoint.emit(Zone.BRIDGE, MessageType.GLOBALS_MISSING, {
            "attempts": attempts,
            "hooks": hooked,
        })

    def _host_function_called(self, name: str, args: tuple[Any, ...]) -> None:
        self._spawn(self._endpoint.emit(
            Zone.BRIDGE,
            MessageType.HOST_FUNCTION_CALLED,
            {"name": name, "arg_count": len(args)},
            priority=Priority.HIGH,
        ))
        if name in ("mute", "unMute", "adjustVol"):
            self._spawn(self.mirror.sync_now())

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
