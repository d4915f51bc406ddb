"""
Audio frame primitives.

Pure data containers only.
No queues, no timing logic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from constants import AUDIO_SAMPLE_RATE_HZ, AUDIO_SAMPLE_WIDTH_BYTES


@dataclass(frozen=True)
class PCMFrame:
    """
    One emitted capture frame (16 kHz mono PCM16).

    user_id:
        Participant that produced the frame. Matches exactly one live
        ParticipantAudio entry at emission time.

    pcm:
        Raw PCM16 little-endian bytes, already volume-scaled and clamped.

    chunk_index:
        0-based, monotonically increasing per capture. A fresh capture
        (including one resumed after reconnect) restarts at 0.

    ts_ms:
        Wall-clock emission time. Observability only.

    source_time_s:
        Audio context sample clock at the first sample of the frame.

    max_sample:
        Peak absolute amplitude before volume scaling, in [0, 1].

    volume:
        Volume scalar applied to the frame.
    """
    user_id: str
    pcm: bytes
    chunk_index: int
    ts_ms: int
    source_time_s: float
    max_sample: float
    volume: float = 1.0

    @property
    def sample_count(self) -> int:
        return len(self.pcm) // AUDIO_SAMPLE_WIDTH_BYTES

    @property
    def duration_s(self) -> float:
        return self.sample_count / AUDIO_SAMPLE_RATE_HZ


@dataclass(frozen=True)
class UtteranceChunk:
    """
    A contiguous run of one participant's PCM, sized for transcription.

    duration_s satisfies min_duration <= duration_s <= max_duration unless
    `forced` (flushed on a terminal event), where only the upper bound holds.
    """
    user_id: str
    pcm: bytes
    sequence: int
    duration_s: float
    speech_detected: bool
    silence_ratio: float
    avg_level: float
    started_at_ms: int
    ended_at_ms: int
    forced: bool = False
    sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ
    quality: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def sample_count(self) -> int:
        return len(self.pcm) // AUDIO_SAMPLE_WIDTH_BYTES

    def describe(self) -> dict[str, Any]:
        """Log-friendly summary (no audio payload)."""
        return {
            "user_id": self.user_id,
            "sequence": self.sequence,
            "duration_s": round(self.duration_s, 3),
            "speech_detected": self.speech_detected,
            "silence_ratio": round(self.silence_ratio, 3),
            "avg_level": round(self.avg_level, 5),
            "forced": self.forced,
            "quality": self.quality,
        }
