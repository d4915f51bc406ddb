"""
Adaptive, speech-aware buffer for one participant.

Converts a stream of PCMFrames into UtteranceChunks sized for
transcription efficiency.

Extraction rules (checked after every frame, in order):
1. buffered >= max_duration      -> exactly max_duration samples (hard cap)
2. buffered >= target_duration   -> everything buffered
3. speech was active, trailing silence > speech_end_timeout and
   buffered >= min_duration      -> everything buffered

Frames below the capture gate never arrive, so trailing silence is also
measured on the wall clock through check_timeout().

After a normal extraction target_duration adapts:
    silence_ratio > 0.7      -> +2 s
    latency (EMA) > 2 s      -> -2 s
    success rate (EMA) < 0.8 -> -1 s
    new = clamp(current + adjustment * adaptation_rate, min, max)

force_extract() flushes on terminal events; forced chunks only respect
the upper bound.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np

from audio.frames import PCMFrame, UtteranceChunk
from audio.pcm import rms
from audio.quality import analyze
from audio.vad import EnergyVAD
from constants import (
    AUDIO_SAMPLE_RATE_HZ,
    BUFFER_ADAPTATION_RATE,
    BUFFER_ADJUST_HIGH_LATENCY_S,
    BUFFER_ADJUST_LOW_SUCCESS_S,
    BUFFER_ADJUST_MOSTLY_SILENT_S,
    BUFFER_HIGH_LATENCY_S,
    BUFFER_LOW_SUCCESS_RATE,
    BUFFER_MAX_DURATION_S,
    BUFFER_MIN_DURATION_S,
    BUFFER_MOSTLY_SILENT_RATIO,
    BUFFER_SILENCE_THRESHOLD,
    BUFFER_SPEECH_END_TIMEOUT_S,
    BUFFER_TARGET_DURATION_S,
    METRICS_EMA_ALPHA,
)
from observability.logger import log_event


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _ema(previous: Optional[float], value: float, alpha: float = METRICS_EMA_ALPHA) -> float:
    # First observation seeds the average
    if previous is None:
        return value
    return alpha * value + (1.0 - alpha) * previous


@dataclass(frozen=True)
class BufferConfig:
    min_duration_s: float = BUFFER_MIN_DURATION_S
    max_duration_s: float = BUFFER_MAX_DURATION_S
    target_duration_s: float = BUFFER_TARGET_DURATION_S
    silence_threshold: float = BUFFER_SILENCE_THRESHOLD
    speech_end_timeout_s: float = BUFFER_SPEECH_END_TIMEOUT_S
    adaptation_rate: float = BUFFER_ADAPTATION_RATE
    sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ

    def __post_init__(self) -> None:
        if not 0 < self.min_duration_s <= self.max_duration_s:
            raise ValueError("require 0 < min_duration_s <= max_duration_s")


@dataclass
class BufferMetrics:
    """EMA metrics pushed back from the transcription client."""
    avg_transcription_time_s: Optional[float] = None
    network_latency_s: Optional[float] = None
    success_rate: Optional[float] = None
    samples: int = 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "avg_transcription_time_s": self.avg_transcription_time_s,
            "network_latency_s": self.network_latency_s,
            "success_rate": self.success_rate,
            "samples": self.samples,
        }


@dataclass
class _Segment:
    samples: np.ndarray  # int16
    is_speech: bool
    ts_ms: int


class AdaptiveBuffer:
    def __init__(
        self,
        user_id: str,
        *,
        config: BufferConfig = BufferConfig(),
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.user_id = user_id
        self.config = config
        self._clock = clock
        self._vad = EnergyVAD(config.silence_threshold)

        self._target_s = config.target_duration_s
        self._segments: list[_Segment] = []
        self._buffered = 0

        self._speech_active = False
        self._trailing_silence = 0
        self._last_speech_ms: Optional[int] = None

        self._sequence = 0
        self.metrics = BufferMetrics()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def target_duration_s(self) -> float:
        return self._target_s

    @property
    def buffered_samples(self) -> int:
        return self._buffered

    @property
    def buffered_s(self) -> float:
        return self._buffered / self.config.sample_rate_hz

    @property
    def speech_active(self) -> bool:
        return self._speech_active

    @property
    def silence_duration_s(self) -> float:
        return self._trailing_silence / self.config.sample_rate_hz

    def _samples_for(self, seconds: float) -> int:
        return int(round(seconds * self.config.sample_rate_hz))

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def add(self, frame: PCMFrame) -> list[UtteranceChunk]:
        """Append one frame; return any chunks it completes."""
        samples = np.frombuffer(frame.pcm, dtype="<i2")
        if samples.size == 0:
            return []

        is_speech = self._vad.observe(samples.astype(np.float32) / 32768.0)
        now = self._clock()
        self._segments.append(_Segment(samples=samples, is_speech=is_speech, ts_ms=frame.ts_ms))
        self._buffered += samples.size

        if is_speech:
            self._speech_active = True
            self._trailing_silence = 0
            self._last_speech_ms = now
        else:
            self._trailing_silence += samples.size

        chunks: list[UtteranceChunk] = []
        while True:
            chunk = self._maybe_extract()
            if chunk is None:
                break
            chunks.append(chunk)
        return chunks

    def _maybe_extract(self) -> Optional[UtteranceChunk]:
        cfg = self.config
        if self._buffered == 0:
            return None

        if self._buffered >= self._samples_for(cfg.max_duration_s):
            return self._extract(self._samples_for(cfg.max_duration_s), reason="max_duration")

        if self._buffered >= self._samples_for(self._target_s):
            return self._extract(self._buffered, reason="target_duration")

        if (
            self._speech_active
            and self._trailing_silence > self._samples_for(cfg.speech_end_timeout_s)
            and self._buffered >= self._samples_for(cfg.min_duration_s)
        ):
            return self._extract(self._buffered, reason="speech_end")

        return None

    def check_timeout(self, now_ms: Optional[int] = None) -> Optional[UtteranceChunk]:
        """
        Wall-clock speech-end check for a participant who went quiet.

        Gated silence produces no frames, so the sample-clock rule alone
        would never fire once the speaker stops.
        """
        cfg = self.config
        if not self._speech_active or self._last_speech_ms is None:
            return None
        now = self._clock() if now_ms is None else now_ms
        if now - self._last_speech_ms <= cfg.speech_end_timeout_s * 1000.0:
            return None
        if self._buffered < self._samples_for(cfg.min_duration_s):
            return None
        return self._extract(self._buffered, reason="speech_end_timeout")

    def force_extract(self) -> list[UtteranceChunk]:
        """Flush everything on a terminal event. No adaptation."""
        chunks: list[UtteranceChunk] = []
        max_samples = self._samples_for(self.config.max_duration_s)
        while self._buffered > 0:
            chunks.append(
                self._extract(min(self._buffered, max_samples), reason="forced", forced=True)
            )
        return chunks

    def clear(self) -> int:
        """Drop buffered audio without emitting it. Returns samples dropped."""
        dropped = self._buffered
        self._segments.clear()
        self._buffered = 0
        self._reset_speech()
        return dropped

    # ------------------------------------------------------------------
    # Metrics feedback
    # ------------------------------------------------------------------

    def update_metrics(
        self,
        *,
        success: bool,
        latency_s: Optional[float] = None,
        transcription_time_s: Optional[float] = None,
    ) -> None:
        m = self.metrics
        m.samples += 1
        m.success_rate = _ema(m.success_rate, 1.0 if success else 0.0)
        if latency_s is not None:
            m.network_latency_s = _ema(m.network_latency_s, latency_s)
        if transcription_time_s is not None:
            m.avg_transcription_time_s = _ema(m.avg_transcription_time_s, transcription_time_s)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _take(self, n: int) -> list[_Segment]:
        taken: list[_Segment] = []
        remaining = n
        while remaining > 0 and self._segments:
            seg = self._segments[0]
            if seg.samples.size <= remaining:
                taken.append(self._segments.pop(0))
                remaining -= seg.samples.size
            else:
                taken.append(_Segment(seg.samples[:remaining], seg.is_speech, seg.ts_ms))
                offset_ms = int(remaining * 1000 / self.config.sample_rate_hz)
                self._segments[0] = _Segment(seg.samples[remaining:], seg.is_speech, seg.ts_ms + offset_ms)
                remaining = 0
        self._buffered -= n - remaining
        return taken

    def _extract(self, n: int, *, reason: str, forced: bool = False) -> UtteranceChunk:
        cfg = self.config
        taken = self._take(n)
        samples = np.concatenate([s.samples for s in taken]) if taken else np.zeros(0, dtype="<i2")
        f32 = samples.astype(np.float32) / 32768.0

        total = samples.size
        silent = sum(s.samples.size for s in taken if not s.is_speech)
        silence_ratio = silent / total if total else 1.0
        speech_detected = any(s.is_speech for s in taken)
        duration_s = total / cfg.sample_rate_hz

        first = taken[0] if taken else None
        last = taken[-1] if taken else None
        started_at_ms = first.ts_ms if first else self._clock()
        ended_at_ms = (
            last.ts_ms + int(last.samples.size * 1000 / cfg.sample_rate_hz) if last else started_at_ms
        )

        chunk = UtteranceChunk(
            user_id=self.user_id,
            pcm=samples.astype("<i2").tobytes(),
            sequence=self._sequence,
            duration_s=duration_s,
            speech_detected=speech_detected,
            silence_ratio=silence_ratio,
            avg_level=rms(f32),
            started_at_ms=started_at_ms,
            ended_at_ms=ended_at_ms,
            forced=forced,
            sample_rate_hz=cfg.sample_rate_hz,
            quality=analyze(f32, silence_threshold=cfg.silence_threshold).to_dict(),
        )
        self._sequence += 1

        if self._buffered == 0:
            self._reset_speech()
        else:
            # Leftover after a hard cap still belongs to the same utterance
            self._trailing_silence = min(self._trailing_silence, self._buffered)

        previous_target = self._target_s
        if not forced:
            self._adapt(silence_ratio)

        log_event({
            "event_type": "BUFFER_CHUNK_EXTRACTED",
            "zone": "worker",
            "user_id": self.user_id,
            "reason": reason,
            "previous_target_s": round(previous_target, 3),
            "target_duration_s": round(self._target_s, 3),
            "remaining_samples": self._buffered,
            **chunk.describe(),
        })
        return chunk

    def _reset_speech(self) -> None:
        self._speech_active = False
        self._trailing_silence = 0
        self._last_speech_ms = None

    def _adapt(self, silence_ratio: float) -> None:
        cfg = self.config
        adjustment = 0.0
        if silence_ratio > BUFFER_MOSTLY_SILENT_RATIO:
            adjustment += BUFFER_ADJUST_MOSTLY_SILENT_S
        latency = self.metrics.network_latency_s
        if latency is not None and latency > BUFFER_HIGH_LATENCY_S:
            adjustment += BUFFER_ADJUST_HIGH_LATENCY_S
        success = self.metrics.success_rate
        if success is not None and success < BUFFER_LOW_SUCCESS_RATE:
            adjustment += BUFFER_ADJUST_LOW_SUCCESS_S

        proposed = self._target_s + adjustment * cfg.adaptation_rate
        self._target_s = min(max(proposed, cfg.min_duration_s), cfg.max_duration_s)

    def snapshot(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "buffered_s": round(self.buffered_s, 3),
            "target_duration_s": round(self._target_s, 3),
            "speech_active": self._speech_active,
            "silence_duration_s": round(self.silence_duration_s, 3),
            "chunks_emitted": self._sequence,
            "metrics": self.metrics.snapshot(),
        }
