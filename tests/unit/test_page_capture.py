# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import numpy as np
import pytest
from scipy import signal

from audio.frames import PCMFrame
from audio.pcm import float32_to_pcm16le
from constants import AUDIO_FRAME_SAMPLES, AUDIO_QUANTUM_SAMPLES, CAPTURE_FLUSH_PAD_SAMPLES
from errors import FatalSetupError, InvariantViolation, TranscriberError
from page.audio_context import ContextState, SharedAudioContext
from page.capture import CaptureManager, ParticipantAudio
from page.dom import AudioSinkElement, AudioTrack, MediaStream
from page.processor import FrameProcessor


def tone(n: int, amplitude: float = 0.3, freq_hz: float = 440.0, sample_rate_hz: int = 16_000) -> np.ndarray:
    t = np.arange(n) / sample_rate_hz
    return (amplitude * np.sin(2 * np.pi * freq_hz * t)).astype(np.float32)


def constant(n: int, value: float) -> np.ndarray:
    return np.full(n, value, dtype=np.float32)


# ---------------------------------------------------------------------
# FrameProcessor
# ---------------------------------------------------------------------

def feed(processor: FrameProcessor, samples: np.ndarray) -> list[PCMFrame]:
    frames = []
    for offset in range(0, samples.shape[0], AUDIO_QUANTUM_SAMPLES):
        frame = processor.process(samples[offset:offset + AUDIO_QUANTUM_SAMPLES])
        if frame is not None:
            frames.append(frame)
    return frames


def test_processor_emits_full_frames_with_increasing_chunk_index():
    processor = FrameProcessor(user_id="alice", get_volume=lambda: 1.0)

    frames = feed(processor, tone(AUDIO_FRAME_SAMPLES * 2))

    assert [f.chunk_index for f in frames] == [0, 1]
    assert all(f.sample_count == AUDIO_FRAME_SAMPLES for f in frames)
    assert frames[0].user_id == "alice"
    assert frames[1].source_time_s == pytest.approx(AUDIO_FRAME_SAMPLES / 16_000)
    assert processor.pending_samples == 0


def test_processor_skips_silent_quanta_without_buffering():
    processor = FrameProcessor(user_id="alice", get_volume=lambda: 1.0)

    frames = feed(processor, np.zeros(AUDIO_FRAME_SAMPLES, dtype=np.float32))

    assert frames == []
    assert processor.stats.quanta_skipped == AUDIO_FRAME_SAMPLES // AUDIO_QUANTUM_SAMPLES
    assert processor.pending_samples == 0


def test_processor_applies_volume_and_clamps():
    volume = {"v": 0.5}
    processor = FrameProcessor(user_id="alice", get_volume=lambda: volume["v"])

    quiet = feed(processor, constant(AUDIO_FRAME_SAMPLES, 0.4))[0]
    volume["v"] = 4.0
    loud = feed(processor, constant(AUDIO_FRAME_SAMPLES, 0.4))[0]

    quiet_pcm = np.frombuffer(quiet.pcm, dtype="<i2")
    loud_pcm = np.frombuffer(loud.pcm, dtype="<i2")
    assert int(quiet_pcm[0]) == int(0.2 * 32767)
    assert int(loud_pcm.max()) == 32767
    assert quiet.max_sample == pytest.approx(0.4)
    assert loud.volume == 4.0


def test_processor_flush_pads_short_tail_to_half_frame():
    processor = FrameProcessor(user_id="alice", get_volume=lambda: 1.0)
    feed(processor, tone(AUDIO_QUANTUM_SAMPLES * 3))

    tail = processor.flush()

    assert tail is not None
    assert tail.sample_count == CAPTURE_FLUSH_PAD_SAMPLES
    assert processor.flush() is None


def test_processor_rejects_wrong_quantum_size():
    processor = FrameProcessor(user_id="alice", get_volume=lambda: 1.0)

    with pytest.raises(ValueError):
        processor.process(np.zeros(100, dtype=np.float32))


# ---------------------------------------------------------------------
# CaptureManager
# ---------------------------------------------------------------------

class Recorder:
    def __init__(self) -> None:
        self.frames: list[PCMFrame] = []
        self.started: list[str] = []
        self.stopped: list[tuple[str, str, int]] = []
        self.errors: list[tuple[str, TranscriberError]] = []
        self.events: list[str] = []

    async def on_frame(self, frame: PCMFrame) -> None:
        self.frames.append(frame)
        self.events.append(f"frame:{frame.user_id}:{frame.chunk_index}")

    async def on_started(self, participant: ParticipantAudio) -> None:
        self.started.append(participant.user_id)
        self.events.append(f"started:{participant.user_id}")

    async def on_stopped(self, participant: ParticipantAudio, reason: str) -> None:
        self.stopped.append((participant.user_id, reason, participant.chunk_count))
        self.events.append(f"stopped:{participant.user_id}")

    async def on_error(self, user_id: str, exc: TranscriberError) -> None:
        self.errors.append((user_id, exc))


def make_manager(recorder: Recorder, context_factory=SharedAudioContext, **kwargs) -> CaptureManager:
    return CaptureManager(
        context_factory=context_factory,
        get_volume=lambda: 1.0,
        on_frame=recorder.on_frame,
        on_started=recorder.on_started,
        on_stopped=recorder.on_stopped,
        on_error=recorder.on_error,
        **kwargs,
    )


def make_sink(user_id: str) -> tuple[AudioSinkElement, MediaStream, AudioTrack]:
    track = AudioTrack()
    stream = MediaStream([track])
    return AudioSinkElement(f"msRemAudio-{user_id}", stream=stream), stream, track


@pytest.mark.asyncio
async def test_attach_creates_shared_context_lazily_and_streams_frames(eventually):
    recorder = Recorder()
    created: list[SharedAudioContext] = []

    def factory() -> SharedAudioContext:
        ctx = SharedAudioContext()
        created.append(ctx)
        return ctx

    manager = make_manager(recorder, context_factory=factory)
    assert manager.context is None

    alice, alice_stream, alice_track = make_sink("alice")
    bob, bob_stream, _ = make_sink("bob")
    await manager.attach(alice, "alice", alice_stream)
    await manager.attach(bob, "bob", bob_stream)

    assert len(created) == 1
    assert manager.active_user_ids() == ["alice", "bob"]
    assert recorder.started == ["alice", "bob"]

    alice_track.push(tone(AUDIO_FRAME_SAMPLES * 2))
    await eventually(lambda: len(recorder.frames) == 2)

    assert [f.user_id for f in recorder.frames] == ["alice", "alice"]
    await manager.close()


@pytest.mark.asyncio
async def test_duplicate_user_is_refused(logs):
    recorder = Recorder()
    manager = make_manager(recorder)
    sink, stream, _ = make_sink("alice")
    other, other_stream, _ = make_sink("alice")

    first = await manager.attach(sink, "alice", stream)
    second = await manager.attach(other, "alice", other_stream)

    assert first is not None
    assert second is None
    assert len(manager) == 1
    assert logs.of("CAPTURE_DUPLICATE_DROPPED")[0]["kind"] == "programmer_error"
    await manager.close()


@pytest.mark.asyncio
async def test_shared_stream_is_refused(logs):
    recorder = Recorder()
    manager = make_manager(recorder)
    sink, stream, _ = make_sink("alice")
    other = AudioSinkElement("msRemAudio-bob", stream=stream)

    await manager.attach(sink, "alice", stream)
    refused = await manager.attach(other, "bob", stream)

    assert refused is None
    assert manager.active_user_ids() == ["alice"]
    assert logs.of("CAPTURE_SHARED_STREAM_DROPPED")
    await manager.close()


@pytest.mark.asyncio
async def test_capture_limit(logs):
    recorder = Recorder()
    manager = make_manager(recorder, max_captures=1)
    a, a_stream, _ = make_sink("a")
    b, b_stream, _ = make_sink("b")

    await manager.attach(a, "a", a_stream)
    assert await manager.attach(b, "b", b_stream) is None

    assert logs.of("CAPTURE_LIMIT_REACHED")
    await manager.close()


@pytest.mark.asyncio
async def test_stream_without_live_track_reports_error():
    recorder = Recorder()
    manager = make_manager(recorder)
    sink, stream, track = make_sink("alice")
    track.end()

    result = await manager.attach(sink, "alice", stream)

    assert result is None
    assert manager.failed_user_ids() == ["alice"]
    assert recorder.errors[0][0] == "alice"
    assert recorder.errors[0][1].code == "no-audio-track"
    await manager.close()


@pytest.mark.asyncio
async def test_context_factory_failure_is_fatal():
    recorder = Recorder()

    def broken() -> SharedAudioContext:
        raise RuntimeError("no audio device")

    manager = make_manager(recorder, context_factory=broken)
    sink, stream, _ = make_sink("alice")

    with pytest.raises(FatalSetupError) as exc_info:
        await manager.attach(sink, "alice", stream)

    assert exc_info.value.code == "audio-unavailable"


@pytest.mark.asyncio
async def test_track_end_flushes_tail_before_stopping(eventually):
    recorder = Recorder()
    manager = make_manager(recorder)
    sink, stream, track = make_sink("alice")
    await manager.attach(sink, "alice", stream)

    track.push(tone(AUDIO_FRAME_SAMPLES + 1000))
    track.end()
    await eventually(lambda: bool(recorder.stopped))

    assert recorder.stopped == [("alice", "track-ended", 2)]
    assert recorder.events == ["started:alice", "frame:alice:0", "frame:alice:1", "stopped:alice"]
    assert manager.get("alice") is None
    await manager.close()


@pytest.mark.asyncio
async def test_48k_track_resamples_without_drift_or_block_edges(eventually):
    recorder = Recorder()
    manager = make_manager(recorder)
    track = AudioTrack(sample_rate_hz=48_000)
    stream = MediaStream([track])
    await manager.attach(AudioSinkElement("msRemAudio-alice", stream=stream), "alice", stream)

    source = tone(3 * 48_000, amplitude=0.5, sample_rate_hz=48_000)
    for offset in range(0, source.size, 1024):
        track.push(source[offset:offset + 1024])
    track.end()
    await eventually(lambda: bool(recorder.stopped))

    captured = np.concatenate([np.frombuffer(f.pcm, dtype="<i2") for f in recorder.frames]).astype(np.int32)
    expected = np.frombuffer(
        float32_to_pcm16le(signal.resample_poly(source, 1, 3)), dtype="<i2"
    ).astype(np.int32)

    assert captured.size == 3 * 16_000
    assert int(np.max(np.abs(captured - expected))) <= 1
    await manager.close()


@pytest.mark.asyncio
async def test_restart_rebuilds_graph_with_fresh_chunk_indices(eventually):
    recorder = Recorder()
    manager = make_manager(recorder)
    sink, stream, track = make_sink("alice")
    await manager.attach(sink, "alice", stream)

    track.push(tone(AUDIO_FRAME_SAMPLES))
    await eventually(lambda: len(recorder.frames) == 1)

    # The old track is released; the element now carries a new stream
    fresh_track = AudioTrack()
    sink.stream = MediaStream([fresh_track])
    fresh = await manager.restart("alice")

    assert fresh is not None
    assert fresh.stream is sink.stream
    assert recorder.stopped == []

    fresh_track.push(tone(AUDIO_FRAME_SAMPLES))
    await eventually(lambda: len(recorder.frames) == 2)
    assert recorder.frames[-1].chunk_index == 0
    await manager.close()


@pytest.mark.asyncio
async def test_restart_without_stream_reports_stop():
    recorder = Recorder()
    manager = make_manager(recorder)
    sink, stream, _ = make_sink("alice")
    await manager.attach(sink, "alice", stream)

    sink.stream = None
    result = await manager.restart("alice")

    assert result is None
    assert recorder.stopped == [("alice", "resume-failed", 0)]
    await manager.close()


# ---------------------------------------------------------------------
# SharedAudioContext
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_context_refuses_to_close_with_active_sources():
    ctx = SharedAudioContext()
    stream = MediaStream([AudioTrack()])
    node = ctx.create_media_stream_source(stream)

    with pytest.raises(InvariantViolation):
        await ctx.close()

    await node.disconnect()
    await ctx.close()
    assert ctx.state is ContextState.CLOSED

    with pytest.raises(FatalSetupError):
        ctx.create_media_stream_source(MediaStream([AudioTrack()]))


@pytest.mark.asyncio
async def test_context_rejects_second_source_on_same_track():
    ctx = SharedAudioContext()
    track = AudioTrack()

    ctx.create_media_stream_source(MediaStream([track]))

    with pytest.raises(InvariantViolation):
        ctx.create_media_stream_source(MediaStream([track]))


@pytest.mark.asyncio
async def test_suspended_context_holds_audio_until_resumed(eventually):
    recorder = Recorder()
    ctx = SharedAudioContext()
    manager = make_manager(recorder, context_factory=lambda: ctx)
    sink, stream, track = make_sink("alice")
    await manager.attach(sink, "alice", stream)

    await ctx.suspend()
    track.push(tone(AUDIO_FRAME_SAMPLES))
    await asyncio.sleep(0.02)
    assert recorder.frames == []

    await ctx.resume()
    await eventually(lambda: len(recorder.frames) == 1)
    await manager.close()
