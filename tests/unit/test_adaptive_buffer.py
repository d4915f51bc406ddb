# pylint: disable=missing-module-docstring,missing-function-docstring

import numpy as np
import pytest

from audio.frames import PCMFrame
from audio.pcm import float32_to_pcm16le
from constants import AUDIO_FRAME_SAMPLES
from worker.adaptive_buffer import AdaptiveBuffer, BufferConfig
from worker.buffer_manager import BufferManager


# Small durations keep frame counts readable: one frame = 0.256 s
SMALL = BufferConfig(
    min_duration_s=0.5,
    max_duration_s=3.0,
    target_duration_s=1.0,
    speech_end_timeout_s=1.5,
)


def speech(n: int = AUDIO_FRAME_SAMPLES) -> np.ndarray:
    t = np.arange(n) / 16_000
    return (0.2 * np.sin(2 * np.pi * 300 * t)).astype(np.float32)


def silence(n: int = AUDIO_FRAME_SAMPLES) -> np.ndarray:
    return np.zeros(n, dtype=np.float32)


class FrameFactory:
    def __init__(self, user_id: str = "alice") -> None:
        self.user_id = user_id
        self.index = 0
        self.ts_ms = 1_000

    def __call__(self, samples: np.ndarray, *, chunk_index: int | None = None) -> PCMFrame:
        if chunk_index is not None:
            self.index = chunk_index
        frame = PCMFrame(
            user_id=self.user_id,
            pcm=float32_to_pcm16le(samples),
            chunk_index=self.index,
            ts_ms=self.ts_ms,
            source_time_s=0.0,
            max_sample=float(np.max(np.abs(samples))) if samples.size else 0.0,
        )
        self.index += 1
        self.ts_ms += int(samples.size * 1000 / 16_000)
        return frame


def feed(buffer: AdaptiveBuffer, frames: FrameFactory, blocks: list[np.ndarray]) -> list:
    chunks = []
    for block in blocks:
        chunks.extend(buffer.add(frames(block)))
    return chunks


# ---------------------------------------------------------------------
# Extraction rules
# ---------------------------------------------------------------------

def test_target_duration_extracts_everything_buffered():
    buffer = AdaptiveBuffer("alice", config=SMALL)
    frames = FrameFactory()

    chunks = feed(buffer, frames, [speech()] * 4)

    assert len(chunks) == 1
    chunk = chunks[0]
    assert chunk.sample_count == 4 * AUDIO_FRAME_SAMPLES
    assert chunk.duration_s == pytest.approx(1.024)
    assert chunk.speech_detected is True
    assert chunk.silence_ratio == 0.0
    assert chunk.forced is False
    assert chunk.started_at_ms == 1_000
    assert chunk.ended_at_ms == frames.ts_ms
    assert buffer.buffered_samples == 0
    assert buffer.speech_active is False


def test_hard_cap_takes_exactly_max_duration():
    config = BufferConfig(min_duration_s=0.5, max_duration_s=1.0, target_duration_s=1.0)
    buffer = AdaptiveBuffer("alice", config=config)

    chunks = feed(buffer, FrameFactory(), [speech()] * 4)

    assert [c.sample_count for c in chunks] == [16_000]
    assert buffer.buffered_samples == 4 * AUDIO_FRAME_SAMPLES - 16_000
    # The leftover is still the same utterance
    assert buffer.speech_active is True


def test_speech_end_after_trailing_silence():
    config = BufferConfig(
        min_duration_s=0.5,
        max_duration_s=30.0,
        target_duration_s=10.0,
        speech_end_timeout_s=0.3,
    )
    buffer = AdaptiveBuffer("alice", config=config)
    frames = FrameFactory()

    assert feed(buffer, frames, [speech()] * 3 + [silence()]) == []
    assert buffer.silence_duration_s == pytest.approx(0.256)

    chunks = feed(buffer, frames, [silence()])

    assert len(chunks) == 1
    assert chunks[0].sample_count == 5 * AUDIO_FRAME_SAMPLES
    assert chunks[0].silence_ratio == pytest.approx(0.4)


def test_speech_end_needs_min_duration():
    config = BufferConfig(
        min_duration_s=2.0,
        max_duration_s=30.0,
        target_duration_s=10.0,
        speech_end_timeout_s=0.3,
    )
    buffer = AdaptiveBuffer("alice", config=config)

    chunks = feed(buffer, FrameFactory(), [speech(), silence(), silence()])

    assert chunks == []
    assert buffer.buffered_samples == 3 * AUDIO_FRAME_SAMPLES


def test_silence_alone_never_starts_an_utterance():
    config = BufferConfig(
        min_duration_s=0.5,
        max_duration_s=30.0,
        target_duration_s=10.0,
        speech_end_timeout_s=0.3,
    )
    buffer = AdaptiveBuffer("alice", config=config)

    chunks = feed(buffer, FrameFactory(), [silence()] * 5)

    assert chunks == []
    assert buffer.speech_active is False


def test_wall_clock_timeout_flushes_quiet_speaker():
    now = {"ms": 10_000}
    buffer = AdaptiveBuffer("alice", config=SMALL, clock=lambda: now["ms"])
    feed(buffer, FrameFactory(), [speech()] * 3)

    assert buffer.check_timeout(10_000 + 1_500) is None

    chunk = buffer.check_timeout(10_000 + 1_501)

    assert chunk is not None
    assert chunk.sample_count == 3 * AUDIO_FRAME_SAMPLES
    assert buffer.check_timeout(20_000) is None


def test_wall_clock_timeout_respects_min_duration():
    now = {"ms": 0}
    buffer = AdaptiveBuffer("alice", config=SMALL, clock=lambda: now["ms"])
    feed(buffer, FrameFactory(), [speech(1000)])

    assert buffer.check_timeout(60_000) is None


def test_force_extract_flushes_short_tail_without_adapting():
    buffer = AdaptiveBuffer("alice", config=SMALL)
    frames = FrameFactory()
    feed(buffer, frames, [speech(), silence(), silence()])

    chunks = buffer.force_extract()

    assert len(chunks) == 1
    assert chunks[0].forced is True
    assert chunks[0].duration_s < SMALL.min_duration_s + 0.3
    assert buffer.target_duration_s == SMALL.target_duration_s
    assert buffer.force_extract() == []


def test_sequence_numbers_and_audio_order_are_preserved():
    buffer = AdaptiveBuffer("alice", config=SMALL)
    frames = FrameFactory()
    blocks = [speech() * (i + 1) / 8 for i in range(8)]

    chunks = feed(buffer, frames, blocks)

    assert [c.sequence for c in chunks] == [0, 1]
    joined = b"".join(c.pcm for c in chunks)
    assert joined == b"".join(float32_to_pcm16le(b) for b in blocks)


def test_clear_drops_audio():
    buffer = AdaptiveBuffer("alice", config=SMALL)
    feed(buffer, FrameFactory(), [speech()])

    assert buffer.clear() == AUDIO_FRAME_SAMPLES
    assert buffer.buffered_samples == 0
    assert buffer.speech_active is False


def test_invalid_config_is_rejected():
    with pytest.raises(ValueError):
        BufferConfig(min_duration_s=5.0, max_duration_s=2.0)
    with pytest.raises(ValueError):
        BufferConfig(min_duration_s=0.0)


# ---------------------------------------------------------------------
# Adaptation
# ---------------------------------------------------------------------

def test_mostly_silent_chunk_grows_target():
    buffer = AdaptiveBuffer("alice", config=SMALL)

    chunks = feed(buffer, FrameFactory(), [speech()] + [silence()] * 3)

    assert chunks[0].silence_ratio == pytest.approx(0.75)
    assert buffer.target_duration_s == pytest.approx(1.2)


def test_high_latency_shrinks_target():
    buffer = AdaptiveBuffer("alice", config=SMALL)
    buffer.update_metrics(success=True, latency_s=3.0, transcription_time_s=3.5)

    feed(buffer, FrameFactory(), [speech()] * 4)

    assert buffer.metrics.network_latency_s == 3.0
    assert buffer.target_duration_s == pytest.approx(0.8)


def test_low_success_rate_shrinks_target():
    buffer = AdaptiveBuffer("alice", config=SMALL)
    buffer.update_metrics(success=False)

    feed(buffer, FrameFactory(), [speech()] * 4)

    assert buffer.metrics.success_rate == 0.0
    assert buffer.target_duration_s == pytest.approx(0.9)


def test_target_is_clamped_to_min_duration():
    buffer = AdaptiveBuffer("alice", config=SMALL)
    buffer.update_metrics(success=False, latency_s=10.0)
    frames = FrameFactory()

    for _ in range(10):
        feed(buffer, frames, [speech()] * 4)

    assert buffer.target_duration_s == SMALL.min_duration_s


def test_metric_ema_blends_after_first_sample():
    buffer = AdaptiveBuffer("alice", config=SMALL)

    buffer.update_metrics(success=True, latency_s=1.0)
    buffer.update_metrics(success=False, latency_s=2.0)

    assert buffer.metrics.network_latency_s == pytest.approx(1.2)
    assert buffer.metrics.success_rate == pytest.approx(0.8)
    assert buffer.metrics.samples == 2


# ---------------------------------------------------------------------
# BufferManager
# ---------------------------------------------------------------------

def test_manager_keeps_one_buffer_per_user():
    manager = BufferManager(config=SMALL)
    alice, bob = FrameFactory("alice"), FrameFactory("bob")

    for _ in range(3):
        manager.add_frame(alice(speech()))
        manager.add_frame(bob(speech()))
    chunks = manager.add_frame(alice(speech()))

    assert manager.user_ids == ["alice", "bob"]
    assert [c.user_id for c in chunks] == ["alice"]
    assert manager.get("bob").buffered_samples == 3 * AUDIO_FRAME_SAMPLES


def test_manager_flushes_old_capture_on_restart(logs):
    manager = BufferManager(config=SMALL)
    frames = FrameFactory()
    manager.add_frame(frames(speech()))
    manager.add_frame(frames(speech()))

    chunks = manager.add_frame(frames(speech(), chunk_index=0))

    assert len(chunks) == 1
    assert chunks[0].forced is True
    assert chunks[0].sample_count == 2 * AUDIO_FRAME_SAMPLES
    assert manager.get("alice").buffered_samples == AUDIO_FRAME_SAMPLES
    assert logs.of("BUFFER_CAPTURE_RESTARTED")[0]["flushed_chunks"] == 1


def test_manager_logs_frame_gaps(logs):
    manager = BufferManager(config=SMALL)
    frames = FrameFactory()
    manager.add_frame(frames(speech()))

    manager.add_frame(frames(speech(), chunk_index=5))

    gap = logs.of("BUFFER_FRAME_GAP")[0]
    assert (gap["expected"], gap["actual"]) == (1, 5)
    assert manager.snapshot()["alice"]["frame_gaps"] == 1


def test_manager_end_user_flushes_and_detaches():
    manager = BufferManager(config=SMALL)
    manager.add_frame(FrameFactory()(speech()))

    chunks = manager.end_user("alice")

    assert len(chunks) == 1 and chunks[0].forced
    assert manager.get("alice") is None
    assert manager.end_user("alice") == []


def test_manager_carries_adapted_state_across_rejoin(logs):
    manager = BufferManager(config=SMALL)
    frames = FrameFactory()
    first = []
    for block in [speech()] + [silence()] * 3:
        first.extend(manager.add_frame(frames(block)))
    assert manager.get("alice").target_duration_s == pytest.approx(1.2)

    manager.end_user("alice")
    # Result of a chunk that was still being transcribed when alice left
    manager.update_metrics("alice", success=False, latency_s=3.0)

    rejoined = FrameFactory()
    manager.add_frame(rejoined(speech(), chunk_index=0))
    buffer = manager.get("alice")

    assert buffer.target_duration_s == pytest.approx(1.2)
    assert buffer.metrics.samples == 1
    assert buffer.metrics.success_rate == 0.0
    assert buffer.metrics.network_latency_s == 3.0
    assert logs.of("BUFFER_STATE_RESTORED")[0]["target_duration_s"] == 1.2
    assert [c.sequence for c in first] == [0]
    assert [c.sequence for c in manager.end_user("alice")] == [1]


def test_manager_bounds_departed_state():
    manager = BufferManager(config=SMALL, retained_max=1)
    alice, bob = FrameFactory("alice"), FrameFactory("bob")
    manager.add_frame(alice(speech()))
    manager.add_frame(bob(speech()))
    manager.get("alice").update_metrics(success=True)

    manager.end_user("alice")
    manager.end_user("bob")
    manager.add_frame(FrameFactory("alice")(speech()))

    assert manager.get("alice").metrics.samples == 0


def test_manager_flush_all_resets_chunk_tracking(logs):
    manager = BufferManager(config=SMALL)
    alice, bob = FrameFactory("alice"), FrameFactory("bob")
    manager.add_frame(alice(speech()))
    manager.add_frame(bob(speech()))

    chunks = manager.flush_all()

    assert sorted(c.user_id for c in chunks) == ["alice", "bob"]
    # A fresh capture after the flush is not reported as a restart
    manager.add_frame(alice(speech(), chunk_index=0))
    assert logs.of("BUFFER_CAPTURE_RESTARTED") == []


def test_manager_check_timeouts_uses_each_buffer():
    now = {"ms": 0}
    manager = BufferManager(config=SMALL, clock=lambda: now["ms"])
    manager.add_frame(FrameFactory("alice")(speech()))
    manager.add_frame(FrameFactory("alice2")(speech()))
    manager.add_frame(FrameFactory("alice2")(speech(), chunk_index=1))

    chunks = manager.check_timeouts(2_000)

    assert [c.user_id for c in chunks] == ["alice2"]
