# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
from types import SimpleNamespace
from typing import Any, Optional

import httpx
import numpy as np
import openai
import pytest

from audio.frames import PCMFrame
from audio.pcm import float32_to_pcm16le
from config import AppConfig
from constants import AUDIO_FRAME_SAMPLES
from protocol.bus import MessageBus
from protocol.messages import Message, MessageType, Zone
from worker.adaptive_buffer import BufferConfig
from worker.circuit_breaker import CircuitBreakerConfig
from worker.worker import Worker


SMALL = BufferConfig(min_duration_s=0.5, max_duration_s=3.0, target_duration_s=1.0)

WORKER_EVENTS = (
    MessageType.TRANSCRIPT_FINAL,
    MessageType.TRANSCRIPT_PARTIAL,
    MessageType.WORKER_ERROR,
    MessageType.CIRCUIT_STATE,
)


def auth_error() -> openai.AuthenticationError:
    request = httpx.Request("POST", "https://transcribe.test/v1/audio/transcriptions")
    return openai.AuthenticationError(
        "invalid api key",
        response=httpx.Response(401, request=request),
        body=None,
    )


class FakeTranscriptions:
    def __init__(self, script: list[Any], delays: Optional[list[float]] = None) -> None:
        self.script = list(script)
        self.delays = list(delays or [])
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.delays:
            await asyncio.sleep(self.delays.pop(0))
        outcome = self.script.pop(0) if self.script else "more words"
        if isinstance(outcome, BaseException):
            raise outcome
        return SimpleNamespace(text=outcome)


class Frames:
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self.index = 0

    def speech(self) -> PCMFrame:
        t = np.arange(AUDIO_FRAME_SAMPLES) / 16_000
        return self._frame((0.2 * np.sin(2 * np.pi * 300 * t)).astype(np.float32))

    def silence(self) -> PCMFrame:
        return self._frame(np.zeros(AUDIO_FRAME_SAMPLES, dtype=np.float32))

    def _frame(self, samples: np.ndarray) -> PCMFrame:
        frame = PCMFrame(
            user_id=self.user_id,
            pcm=float32_to_pcm16le(samples),
            chunk_index=self.index,
            ts_ms=1_000 + self.index * 256,
            source_time_s=self.index * 0.256,
            max_sample=float(np.max(np.abs(samples))),
        )
        self.index += 1
        return frame


class Harness:
    def __init__(
        self,
        script: Optional[list[Any]] = None,
        *,
        delays: Optional[list[float]] = None,
        config: Optional[AppConfig] = None,
        with_client: bool = True,
        buffer_config: BufferConfig = SMALL,
        breaker_config: CircuitBreakerConfig = CircuitBreakerConfig(),
        clock=None,
    ) -> None:
        self.transcriptions = FakeTranscriptions(script or [], delays)
        client = SimpleNamespace(audio=SimpleNamespace(transcriptions=self.transcriptions))
        self.bus = MessageBus()
        worker_ep = self.bus.endpoint(Zone.WORKER, accepts={Zone.BRIDGE})
        self.bridge = self.bus.endpoint(Zone.BRIDGE, accepts={Zone.WORKER})
        self.events: list[tuple[MessageType, dict[str, Any]]] = []
        for msg_type in WORKER_EVENTS:
            self.bridge.on(msg_type, self._record)
        self.worker = Worker(
            endpoint=worker_ep,
            config=config or AppConfig(),
            openai_client=client if with_client else None,
            buffer_config=buffer_config,
            breaker_config=breaker_config,
            tick_interval_s=0,
            clock=clock,
        )
        self._worker_ep = worker_ep

    async def start(self) -> "Harness":
        self.bus.start()
        await self._worker_ep.mark_ready()
        await self.bridge.mark_ready()
        self.worker.start()
        return self

    async def _record(self, msg: Message) -> None:
        self.events.append((msg.type, msg.data))

    def of(self, msg_type: MessageType) -> list[dict[str, Any]]:
        return [d for t, d in self.events if t is msg_type]

    async def send(self, *frames: PCMFrame) -> None:
        for frame in frames:
            await self.bridge.send_frame(Zone.WORKER, frame)
        await self.bus.settle()

    async def request(self, msg_type: MessageType, data: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        return await self.bridge.request(Zone.WORKER, msg_type, data, timeout_s=2.0)

    async def settled(self) -> None:
        await self.bus.settle()
        await self.worker.drain()
        await self.bus.settle()

    async def close(self) -> None:
        await self.worker.shutdown()
        await self.bus.settle()
        await self.bus.stop()


# ---------------------------------------------------------------------
# Transcripts
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_frames_become_final_transcript_with_default_speaker():
    h = await Harness(["hello world"]).start()
    alice = Frames("alice1234")

    await h.send(*(alice.speech() for _ in range(4)))
    await h.settled()

    final = h.of(MessageType.TRANSCRIPT_FINAL)
    assert len(final) == 1
    assert final[0]["text"] == "hello world"
    assert final[0]["speaker"] == "Speaker-ALICE1"
    assert final[0]["user_id"] == "alice1234"
    assert final[0]["sequence"] == 0
    assert final[0]["duration"] == pytest.approx(1.024)

    stored = await h.request(MessageType.GET_TRANSCRIPTS)
    assert [t["text"] for t in stored["transcripts"]] == ["hello world"]
    await h.close()


@pytest.mark.asyncio
async def test_hard_capped_chunk_is_partial_and_short_tail_is_skipped(logs):
    config = BufferConfig(min_duration_s=0.5, max_duration_s=1.0, target_duration_s=1.0)
    h = await Harness(["still talking"], buffer_config=config).start()
    alice = Frames("alice")

    await h.send(*(alice.speech() for _ in range(4)))
    await h.settled()
    await h.bridge.emit(Zone.WORKER, MessageType.USER_LEFT, {"user_id": "alice", "reason": "sink-removed"})
    await h.settled()

    assert [d["text"] for d in h.of(MessageType.TRANSCRIPT_PARTIAL)] == ["still talking"]
    assert h.of(MessageType.TRANSCRIPT_FINAL) == []
    assert logs.of("WORKER_CHUNK_SKIPPED")[0]["reason"] == "too-short"
    assert len(h.transcriptions.calls) == 1
    await h.close()


@pytest.mark.asyncio
async def test_silent_chunks_are_not_sent(logs):
    h = await Harness().start()
    alice = Frames("alice")

    await h.send(*(alice.silence() for _ in range(4)))
    await h.settled()

    assert h.transcriptions.calls == []
    assert logs.of("WORKER_CHUNK_SKIPPED")[0]["reason"] == "no-speech"
    assert h.worker.chunks_skipped == 1
    await h.close()


@pytest.mark.asyncio
async def test_user_left_flushes_short_utterance():
    h = await Harness(["bye"]).start()
    alice = Frames("alice")
    await h.send(alice.speech(), alice.speech())

    await h.bridge.emit(Zone.WORKER, MessageType.USER_LEFT, {"user_id": "alice"})
    await h.settled()

    assert [d["text"] for d in h.of(MessageType.TRANSCRIPT_FINAL)] == ["bye"]
    assert h.worker.buffers.get("alice") is None
    await h.close()


@pytest.mark.asyncio
async def test_departed_speaker_sender_is_retired_after_last_chunk(logs, eventually):
    h = await Harness(["bye"], delays=[0.05]).start()
    alice, bob = Frames("alice"), Frames("bob")
    await h.send(alice.speech(), alice.speech(), bob.speech())

    await h.bridge.emit(Zone.WORKER, MessageType.USER_LEFT, {"user_id": "alice"})
    await h.bus.settle()
    # The flushed chunk is still being transcribed
    assert h.worker.status()["senders"] == ["alice"]

    await eventually(lambda: h.worker.status()["senders"] == [])

    assert [d["text"] for d in h.of(MessageType.TRANSCRIPT_FINAL)] == ["bye"]
    assert h.worker.status()["queued"] == {}
    assert [e["user_id"] for e in logs.of("WORKER_SENDER_RETIRED")] == ["alice"]
    await h.close()


@pytest.mark.asyncio
async def test_rejoin_while_draining_keeps_the_sender(logs, eventually):
    h = await Harness(["bye", "back again"], delays=[0.05]).start()
    alice = Frames("alice")
    await h.send(alice.speech(), alice.speech())
    await h.bridge.emit(Zone.WORKER, MessageType.USER_LEFT, {"user_id": "alice"})
    await h.bus.settle()

    rejoined = Frames("alice")
    await h.send(*(rejoined.speech() for _ in range(4)))
    await h.settled()

    assert [d["text"] for d in h.of(MessageType.TRANSCRIPT_FINAL)] == ["bye", "back again"]
    assert h.worker.status()["senders"] == ["alice"]
    assert logs.of("WORKER_SENDER_RETIRED") == []
    await h.close()


@pytest.mark.asyncio
async def test_flush_buffers_request_reports_count():
    h = await Harness(["a", "b"]).start()
    alice, bob = Frames("alice"), Frames("bob")
    await h.send(alice.speech(), bob.speech())

    reply = await h.request(MessageType.FLUSH_BUFFERS, {"reason": "reconnect"})
    await h.settled()

    assert reply == {"flushed": 2}
    assert len(h.of(MessageType.TRANSCRIPT_FINAL)) == 2
    await h.close()


@pytest.mark.asyncio
async def test_empty_transcript_is_not_emitted(logs):
    h = await Harness([""]).start()
    alice = Frames("alice")

    await h.send(*(alice.speech() for _ in range(4)))
    await h.settled()

    assert h.of(MessageType.TRANSCRIPT_FINAL) == []
    assert logs.of("WORKER_EMPTY_TRANSCRIPT")
    await h.close()


@pytest.mark.asyncio
async def test_transcripts_stay_in_order_per_speaker():
    h = await Harness(["first", "second"], delays=[0.05, 0.0]).start()
    alice = Frames("alice")

    await h.send(*(alice.speech() for _ in range(8)))
    await h.settled()

    assert [d["text"] for d in h.of(MessageType.TRANSCRIPT_FINAL)] == ["first", "second"]
    assert [d["sequence"] for d in h.of(MessageType.TRANSCRIPT_FINAL)] == [0, 1]
    await h.close()


@pytest.mark.asyncio
async def test_wall_clock_tick_flushes_quiet_speaker():
    now = {"ms": 0}
    h = await Harness(["quiet now"], clock=lambda: now["ms"]).start()
    alice = Frames("alice")
    await h.send(alice.speech(), alice.speech())

    assert h.worker.tick(now_ms=1_000) == 0
    assert h.worker.tick(now_ms=2_000) == 1
    await h.settled()

    assert [d["text"] for d in h.of(MessageType.TRANSCRIPT_FINAL)] == ["quiet now"]
    await h.close()


@pytest.mark.asyncio
async def test_shutdown_flushes_and_drains():
    h = await Harness(["tail"]).start()
    alice = Frames("alice")
    await h.send(alice.speech(), alice.speech())

    await h.worker.shutdown()
    await h.bus.settle()

    assert [d["text"] for d in h.of(MessageType.TRANSCRIPT_FINAL)] == ["tail"]
    await h.bus.stop()


# ---------------------------------------------------------------------
# Speakers
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_update_speaker_renames_later_transcripts():
    h = await Harness(["hi"]).start()

    reply = await h.request(MessageType.UPDATE_SPEAKER, {"user_id": "alice", "name": "  Alice  "})
    alice = Frames("alice")
    await h.send(*(alice.speech() for _ in range(4)))
    await h.settled()

    assert reply == {"user_id": "alice", "speaker": "Alice"}
    assert h.of(MessageType.TRANSCRIPT_FINAL)[0]["speaker"] == "Alice"

    reverted = await h.request(MessageType.UPDATE_SPEAKER, {"user_id": "alice", "name": ""})
    assert reverted["speaker"] == "Speaker-ALICE"
    await h.close()


@pytest.mark.asyncio
async def test_update_speaker_without_user_is_an_error_reply():
    h = await Harness().start()

    reply = await h.request(MessageType.UPDATE_SPEAKER, {"name": "Nobody"})

    assert reply["error"]["code"] == "bad-request"
    await h.close()


@pytest.mark.asyncio
async def test_transcript_store_filters_and_clears():
    h = await Harness(["one", "two"]).start()
    alice, bob = Frames("alice"), Frames("bob")
    await h.send(*(alice.speech() for _ in range(4)))
    await h.settled()
    await h.send(*(bob.speech() for _ in range(4)))
    await h.settled()

    only_bob = await h.request(MessageType.GET_TRANSCRIPTS, {"user_id": "bob"})
    last = await h.request(MessageType.GET_TRANSCRIPTS, {"limit": 1})
    cleared = await h.request(MessageType.CLEAR_TRANSCRIPTS)

    assert [t["text"] for t in only_bob["transcripts"]] == ["two"]
    assert [t["user_id"] for t in last["transcripts"]] == ["bob"]
    assert cleared == {"cleared": 2}
    await h.close()


# ---------------------------------------------------------------------
# Errors and circuit state
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_permanent_error_is_reported_once():
    h = await Harness([auth_error(), auth_error()]).start()
    alice = Frames("alice")

    await h.send(*(alice.speech() for _ in range(8)))
    await h.settled()

    errors = h.of(MessageType.WORKER_ERROR)
    assert len(h.transcriptions.calls) == 2
    assert len(errors) == 1
    assert errors[0]["error"]["kind"] == "permanent_network"
    assert errors[0]["context"] == "transcription:alice"
    await h.close()


@pytest.mark.asyncio
async def test_missing_api_key_is_reported():
    h = await Harness(config=AppConfig(openai_api_key=None), with_client=False).start()
    alice = Frames("alice")

    await h.send(*(alice.speech() for _ in range(4)))
    await h.settled()

    errors = h.of(MessageType.WORKER_ERROR)
    assert errors[0]["error"]["code"] == "missing-api-key"
    status = await h.request(MessageType.GET_WORKER_STATUS)
    assert status["credentials"] is False
    await h.close()


@pytest.mark.asyncio
async def test_circuit_state_changes_reach_bridge(eventually):
    h = await Harness(
        [auth_error()],
        breaker_config=CircuitBreakerConfig(failure_threshold=1),
    ).start()
    alice = Frames("alice")

    await h.send(*(alice.speech() for _ in range(4)))
    await h.settled()
    await eventually(lambda: bool(h.of(MessageType.CIRCUIT_STATE)))

    assert h.of(MessageType.CIRCUIT_STATE)[0] == {"phase": "open", "previous": "closed"}
    status = await h.request(MessageType.GET_WORKER_STATUS)
    assert status["circuit"]["phase"] == "open"
    await h.close()
