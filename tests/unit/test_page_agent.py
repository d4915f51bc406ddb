# pylint: disable=missing-module-docstring,missing-function-docstring

from typing import Any, Optional

import numpy as np
import pytest

from audio.frames import PCMFrame
from config import AppConfig
from constants import AUDIO_FRAME_SAMPLES
from page.agent import PageAgent, PageTimings
from page.audio_context import SharedAudioContext
from page.dom import AudioSinkElement, Element, HostPage, make_sink
from protocol.bus import MessageBus
from protocol.messages import Message, MessageType, Zone


PREFIX = "msRemAudio-"

FAST = PageTimings(
    stream_poll_s=0.01,
    stream_wait_max_s=0.5,
    sweep_interval_s=60.0,
    swap_settle_s=0.0,
    state_poll_s=0.01,
    globals_probe_s=0.01,
    globals_deadline_s=0.2,
)

PAGE_EVENTS = (
    MessageType.CAPTURE_STARTED,
    MessageType.CAPTURE_STOPPED,
    MessageType.HOST_FUNCTION_CALLED,
    MessageType.VOLUME_CHANGED,
    MessageType.SESSION_STATE_CHANGED,
    MessageType.TALKING_USERS_CHANGED,
    MessageType.PREFERENCES_CHANGED,
    MessageType.GLOBALS_FOUND,
    MessageType.GLOBALS_MISSING,
    MessageType.PAGE_ERROR,
)


def tone(n: int) -> np.ndarray:
    t = np.arange(n) / 16_000
    return (0.3 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)


class FakeBridge:
    """Stands in for the Bridge zone: records everything the page sends."""

    def __init__(self, bus: MessageBus) -> None:
        self.endpoint = bus.endpoint(Zone.BRIDGE, accepts={Zone.PAGE})
        self.events: list[tuple[MessageType, dict[str, Any]]] = []
        self.frames: list[PCMFrame] = []
        self.order: list[str] = []
        for msg_type in PAGE_EVENTS:
            self.endpoint.on(msg_type, self._on_event)
        self.endpoint.on(MessageType.AUDIO_FRAME, self._on_frame)

    async def _on_event(self, msg: Message) -> None:
        self.events.append((msg.type, msg.data))
        self.order.append(msg.type.value)

    async def _on_frame(self, msg: Message) -> None:
        frame = msg.data["frame"]
        self.frames.append(frame)
        self.order.append(f"frame:{frame.user_id}")

    def of(self, msg_type: MessageType) -> list[dict[str, Any]]:
        return [d for t, d in self.events if t is msg_type]

    async def request(self, msg_type: MessageType, data: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        return await self.endpoint.request(Zone.PAGE, msg_type, data, timeout_s=2.0)


async def make_agent(page: HostPage, context_factory=SharedAudioContext) -> tuple[PageAgent, FakeBridge, MessageBus]:
    bus = MessageBus()
    page_ep = bus.endpoint(Zone.PAGE, accepts={Zone.BRIDGE})
    bridge = FakeBridge(bus)
    agent = PageAgent(
        endpoint=page_ep,
        page=page,
        config=AppConfig(sink_id_prefix=PREFIX),
        context_factory=context_factory,
        timings=FAST,
    )
    bus.start()
    await page_ep.mark_ready()
    await bridge.endpoint.mark_ready()
    return agent, bridge, bus


async def close(agent: PageAgent, bus: MessageBus) -> None:
    await agent.shutdown()
    await bus.settle()
    await bus.stop()


def make_page_with(*user_ids: str) -> tuple[HostPage, dict[str, AudioSinkElement]]:
    page = HostPage()
    container = page.append(Element("topRoomDiv"))
    sinks = {}
    for user_id in user_ids:
        sink = make_sink(user_id, prefix=PREFIX)
        page.append(sink, container)
        sinks[user_id] = sink
    return page, sinks


# ---------------------------------------------------------------------
# Setup and capture
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_setup_then_discovery_streams_frames_after_capture_started(eventually):
    page, sinks = make_page_with("alice", "bob")
    agent, bridge, bus = await make_agent(page)

    setup = await bridge.request(MessageType.SETUP_AUDIO)
    assert setup == {"sample_rate_hz": 16_000, "context_state": "running"}

    started = await bridge.request(MessageType.START_DISCOVERY)
    assert started["capturing"] is True
    assert started["new_sinks"] == 2

    await eventually(lambda: len(bridge.of(MessageType.CAPTURE_STARTED)) == 2)
    alice_stream = sinks["alice"].stream
    assert alice_stream is not None
    alice_stream.get_audio_tracks()[0].push(tone(AUDIO_FRAME_SAMPLES))
    await eventually(lambda: len(bridge.frames) == 1)

    assert bridge.order.index("frame:alice") > bridge.order.index("capture_started")
    assert bridge.of(MessageType.CAPTURE_STARTED)[0]["element_id"].startswith(PREFIX)
    await close(agent, bus)


@pytest.mark.asyncio
async def test_track_end_reports_capture_stopped_after_tail(eventually):
    page, sinks = make_page_with("alice")
    agent, bridge, bus = await make_agent(page)
    await bridge.request(MessageType.START_CAPTURE)
    await eventually(lambda: bool(bridge.of(MessageType.CAPTURE_STARTED)))

    stream = sinks["alice"].stream
    assert stream is not None
    stream.get_audio_tracks()[0].push(tone(AUDIO_FRAME_SAMPLES + 500))
    stream.end()
    await eventually(lambda: bool(bridge.of(MessageType.CAPTURE_STOPPED)))

    stopped = bridge.of(MessageType.CAPTURE_STOPPED)[0]
    assert stopped["reason"] == "track-ended"
    assert stopped["chunks"] == 2
    last_frame = max(i for i, entry in enumerate(bridge.order) if entry.startswith("frame:"))
    assert last_frame < bridge.order.index("capture_stopped")
    await close(agent, bus)


@pytest.mark.asyncio
async def test_stop_capture_stops_everything(eventually):
    page, _ = make_page_with("alice", "bob")
    agent, bridge, bus = await make_agent(page)
    await bridge.request(MessageType.START_CAPTURE)
    await eventually(lambda: len(bridge.of(MessageType.CAPTURE_STARTED)) == 2)

    reply = await bridge.request(MessageType.STOP_CAPTURE)
    await bus.settle()

    assert reply == {"capturing": False, "stopped": ["alice", "bob"]}
    assert {d["reason"] for d in bridge.of(MessageType.CAPTURE_STOPPED)} == {"stopped"}
    assert agent.captures.active_user_ids() == []
    await close(agent, bus)


@pytest.mark.asyncio
async def test_audio_context_failure_is_reported_as_fatal_reply():
    page, _ = make_page_with()

    def broken() -> SharedAudioContext:
        raise OSError("no audio device")

    agent, bridge, bus = await make_agent(page, context_factory=broken)

    reply = await bridge.request(MessageType.SETUP_AUDIO)

    assert reply["error"]["kind"] == "fatal_setup"
    assert reply["error"]["code"] == "audio-unavailable"
    await close(agent, bus)


# ---------------------------------------------------------------------
# Liveness and resume
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connection_test_lists_active_captures(eventually):
    page, _ = make_page_with("alice")
    agent, bridge, bus = await make_agent(page)
    await bridge.request(MessageType.START_CAPTURE)
    await eventually(lambda: bool(bridge.of(MessageType.CAPTURE_STARTED)))

    reply = await bridge.request(MessageType.CONNECTION_TEST)

    assert reply == {"ok": True, "active_captures": ["alice"]}
    await close(agent, bus)


@pytest.mark.asyncio
async def test_resume_capture_restarts_active_and_reattaches_released(eventually):
    page, sinks = make_page_with("alice")
    agent, bridge, bus = await make_agent(page)
    await bridge.request(MessageType.START_CAPTURE)
    await eventually(lambda: bool(bridge.of(MessageType.CAPTURE_STARTED)))

    active = await bridge.request(MessageType.RESUME_CAPTURE, {"user_id": "alice"})
    assert active == {"user_id": "alice", "resumed": True}

    missing = await bridge.request(MessageType.RESUME_CAPTURE, {"user_id": "ghost"})
    assert missing == {"user_id": "ghost", "resumed": False, "reason": "no-live-sink"}

    # Fresh chunk indices after a resume
    stream = sinks["alice"].stream
    assert stream is not None
    stream.get_audio_tracks()[0].push(tone(AUDIO_FRAME_SAMPLES))
    await eventually(lambda: bool(bridge.frames))
    assert bridge.frames[0].chunk_index == 0
    await close(agent, bus)


# ---------------------------------------------------------------------
# Host state and hooks
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_globals_found_installs_hooks_and_mirrors_state(eventually):
    page, _ = make_page_with()
    reconnects: list[tuple[Any, ...]] = []
    page.window["E_"] = {
        "globals": {"audioVolume": 0.5, "sessData": {"currentState": "open"}},
        "reconnectAudio": lambda *args: reconnects.append(args),
    }
    agent, bridge, bus = await make_agent(page)

    await bridge.request(MessageType.SETUP_AUDIO)
    await eventually(lambda: bool(bridge.of(MessageType.GLOBALS_FOUND)))
    await eventually(lambda: bool(bridge.of(MessageType.VOLUME_CHANGED)))

    found = bridge.of(MessageType.GLOBALS_FOUND)[0]
    assert found["source"] == "window.E_.globals"
    assert "reconnectAudio" in found["hooks"]
    assert agent.mirror.volume == 0.5

    page.call_host_function("reconnectAudio")
    await eventually(lambda: bool(bridge.of(MessageType.HOST_FUNCTION_CALLED)))

    assert bridge.of(MessageType.HOST_FUNCTION_CALLED)[0] == {"name": "reconnectAudio", "arg_count": 0}
    assert reconnects == [()]
    await close(agent, bus)


@pytest.mark.asyncio
async def test_globals_missing_after_deadline(eventually):
    page, _ = make_page_with()
    agent, bridge, bus = await make_agent(page)

    await bridge.request(MessageType.SETUP_AUDIO)
    await eventually(lambda: bool(bridge.of(MessageType.GLOBALS_MISSING)))

    state = await bridge.request(MessageType.GET_STATE)
    assert state["globals"]["found"] is False
    assert state["globals"]["gave_up"] is True
    await close(agent, bus)


@pytest.mark.asyncio
async def test_session_closed_stops_all_captures(eventually):
    page, _ = make_page_with("alice")
    host_globals = {"audioVolume": 1.0, "sessData": {"currentState": "open"}}
    page.window["E_"] = {"globals": host_globals}
    agent, bridge, bus = await make_agent(page)
    await bridge.request(MessageType.START_CAPTURE)
    await eventually(lambda: bool(bridge.of(MessageType.CAPTURE_STARTED)))
    await eventually(lambda: bool(bridge.of(MessageType.SESSION_STATE_CHANGED)))

    host_globals["sessData"]["currentState"] = "closed"
    await eventually(lambda: bool(bridge.of(MessageType.CAPTURE_STOPPED)))

    assert bridge.of(MessageType.CAPTURE_STOPPED)[0]["reason"] == "session-closed"
    assert bridge.of(MessageType.SESSION_STATE_CHANGED)[-1] == {"state": "closed", "previous": "open"}
    await close(agent, bus)


@pytest.mark.asyncio
async def test_refresh_state_rescans_and_reports(eventually):
    page, _ = make_page_with()
    agent, bridge, bus = await make_agent(page)
    await bridge.request(MessageType.START_CAPTURE)

    container = page.get_element_by_id("topRoomDiv")
    page.append(make_sink("late", prefix=PREFIX), container, silent=True)
    reply = await bridge.request(MessageType.REFRESH_STATE)
    await eventually(lambda: bool(bridge.of(MessageType.CAPTURE_STARTED)))

    assert reply["new_sinks"] == 1
    assert reply["discovery_running"] is True
    await close(agent, bus)
