"""
Frame processor: the per-capture DSP stage.

Consumes fixed 128-sample render quanta and emits 4096-sample PCMFrames.

Per quantum:
- peak below the silence gate -> skipped and counted, nothing buffered

Per emitted frame:
1. max_sample = max |s|
2. max_sample below the gate -> frame dropped
3. scale by current volume, clamp to [-1, 1], convert to PCM16
4. emit with user_id, timestamps, peak and chunk index

Synchronous and allocation-light; the source node's render task calls it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, asdict
from typing import Callable, Optional

import numpy as np

from audio.frames import PCMFrame
from audio.pcm import float32_to_pcm16le, peak
from constants import (
    AUDIO_FRAME_SAMPLES,
    AUDIO_QUANTUM_SAMPLES,
    AUDIO_SAMPLE_RATE_HZ,
    CAPTURE_FLUSH_PAD_SAMPLES,
    CAPTURE_SILENCE_GATE,
)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass
class ProcessorStats:
    quanta_processed: int = 0
    quanta_skipped: int = 0
    samples_processed: int = 0
    frames_emitted: int = 0
    frames_gated: int = 0

    def snapshot(self) -> dict[str, int]:
        return asdict(self)


class FrameProcessor:
    def __init__(
        self,
        *,
        user_id: str,
        get_volume: Callable[[], float],
        frame_samples: int = AUDIO_FRAME_SAMPLES,
        quantum_samples: int = AUDIO_QUANTUM_SAMPLES,
        silence_gate: float = CAPTURE_SILENCE_GATE,
        sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ,
    ) -> None:
        self.user_id = user_id
        self._get_volume = get_volume
        self._frame_samples = frame_samples
        self._quantum_samples = quantum_samples
        self._gate = silence_gate
        self._sample_rate_hz = sample_rate_hz

        self._pending = np.zeros(frame_samples, dtype=np.float32)
        self._fill = 0
        # Sample clock position of the first pending sample
        self._pending_start: int | None = None

        self.stats = ProcessorStats()

    @property
    def pending_samples(self) -> int:
        return self._fill

    def process(self, quantum: np.ndarray) -> Optional[PCMFrame]:
        """
        Feed one render quantum. Returns a frame when one completes.
        """
        if quantum.shape[0] != self._quantum_samples:
            raise ValueError(
                f"quantum of {quantum.shape[0]} samples, expected {self._quantum_samples}"
            )

        position = self.stats.samples_processed
        self.stats.quanta_processed += 1
        self.stats.samples_processed += quantum.shape[0]

        if peak(quantum) < self._gate:
            self.stats.quanta_skipped += 1
            return None

        if self._pending_start is None:
            self._pending_start = position

        n = quantum.shape[0]
        self._pending[self._fill:self._fill + n] = quantum
        self._fill += n

        if self._fill < self._frame_samples:
            return None
        return self._emit(self._pending[: self._fill].copy())

    def flush(self) -> Optional[PCMFrame]:
        """
        Emit whatever is pending, zero-padded up to half a frame.
        Called once at teardown.
        """
        if self._fill == 0:
            return None
        samples = self._pending[: self._fill].copy()
        if samples.shape[0] < CAPTURE_FLUSH_PAD_SAMPLES:
            samples = np.concatenate(
                [samples, np.zeros(CAPTURE_FLUSH_PAD_SAMPLES - samples.shape[0], dtype=np.float32)]
            )
        return self._emit(samples)

    def _emit(self, samples: np.ndarray) -> Optional[PCMFrame]:
        start = self._pending_start or 0
        self._fill = 0
        self._pending_start = None

        max_sample = peak(samples)
        if max_sample < self._gate:
            self.stats.frames_gated += 1
            return None

        volume = float(self._get_volume())
        pcm = float32_to_pcm16le(np.clip(samples * volume, -1.0, 1.0))

        frame = PCMFrame(
            user_id=self.user_id,
            pcm=pcm,
            chunk_index=self.stats.frames_emitted,
            ts_ms=_now_ms(),
            source_time_s=start / self._sample_rate_hz,
            max_sample=max_sample,
            volume=volume,
        )
        self.stats.frames_emitted += 1
        return frame
