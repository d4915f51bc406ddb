"""PCM conversion utilities."""

from __future__ import annotations

import io
import wave
from math import gcd

import numpy as np
from scipy import signal

from constants import AUDIO_CHANNELS, AUDIO_SAMPLE_RATE_HZ, AUDIO_SAMPLE_WIDTH_BYTES


def pcm16le_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert PCM16 little-endian mono bytes to float32 in [-1.0, 1.0).

    Runtime-safe, adapter-agnostic utility.
    No resampling. No channel mixing.
    """
    if len(pcm_bytes) % 2 != 0:
        # Truncated sample; caller should treat as malformed frame upstream.
        pcm_bytes = pcm_bytes[: len(pcm_bytes) - 1]

    audio_i16 = np.frombuffer(pcm_bytes, dtype="<i2")  # little-endian int16
    audio_f32 = audio_i16.astype(np.float32) / 32768.0
    return audio_f32


def float32_to_pcm16le(samples: np.ndarray) -> bytes:
    """
    Convert float samples to PCM16 little-endian bytes.

    Samples are clamped to [-1, 1] first. Negative values scale by 32768
    and positive values by 32767, so -1.0 -> -32768 and 1.0 -> 32767 and
    the result can never leave the signed 16-bit range.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return scaled.astype("<i2").tobytes()


def peak(samples: np.ndarray) -> float:
    """Peak absolute amplitude; 0.0 for an empty window."""
    if samples.size == 0:
        return 0.0
    return float(np.max(np.abs(samples)))


def rms(samples: np.ndarray) -> float:
    """Root-mean-square level; 0.0 for an empty window."""
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


class StreamResampler:
    """
    Polyphase resampler for audio that arrives in blocks of any size.

    Uses the same Kaiser-windowed FIR as scipy's resample_poly, and the
    concatenated output of process() + flush() equals resample_poly over
    the whole signal. Filter history and output phase carry across blocks,
    so block boundaries add neither edge artifacts nor fractional-sample
    drift.
    """

    def __init__(self, *, from_hz: int, to_hz: int = AUDIO_SAMPLE_RATE_HZ) -> None:
        if from_hz <= 0 or to_hz <= 0:
            raise ValueError(f"sample rates must be positive (got {from_hz} -> {to_hz})")
        g = gcd(from_hz, to_hz)
        self.up = to_hz // g
        self.down = from_hz // g

        max_rate = max(self.up, self.down)
        half_len = 10 * max_rate
        h = signal.firwin(2 * half_len + 1, 1.0 / max_rate, window=("kaiser", 5.0)) * self.up
        pre_pad = self.down - half_len % self.down
        h = np.concatenate([np.zeros(pre_pad), h])
        self._delay = (half_len + pre_pad) // self.down

        # phases[p, t] == h[p + t * up]
        self._taps = -(-h.size // self.up)
        padded = np.zeros(self._taps * self.up)
        padded[: h.size] = h
        self._phases = padded.reshape(self._taps, self.up).T

        self._history = np.zeros(0, dtype=np.float64)
        self._history_start = 0
        self._consumed = 0
        self._produced = 0

    def process(self, block: np.ndarray) -> np.ndarray:
        """Feed one block; return every output sample it completes."""
        block = np.asarray(block, dtype=np.float64)
        if block.size:
            self._history = np.concatenate([self._history, block])
            self._consumed += block.size
        # Output m is complete once input (m + delay) * down // up has arrived
        ready = (self._consumed * self.up - 1) // self.down - self._delay + 1
        return self._emit(ready)

    def flush(self) -> np.ndarray:
        """Emit the tail, treating input past the end as silence."""
        total = -(-self._consumed * self.up // self.down)
        return self._emit(total)

    def _emit(self, stop: int) -> np.ndarray:
        if stop <= self._produced:
            return np.zeros(0, dtype=np.float32)

        m = np.arange(self._produced, stop)
        j = (m + self._delay) * self.down
        first = j // self.up
        phase = j - first * self.up
        idx = first[:, None] - np.arange(self._taps)[None, :]

        valid = (idx >= 0) & (idx < self._consumed)
        rel = np.clip(idx - self._history_start, 0, max(self._history.size - 1, 0))
        taps_in = np.where(valid, self._history[rel], 0.0) if self._history.size else np.zeros(idx.shape)
        out = np.sum(taps_in * self._phases[phase], axis=1)
        self._produced = stop

        keep_from = (self._produced + self._delay) * self.down // self.up - self._taps + 1
        keep_from = min(keep_from, self._consumed)
        if keep_from > self._history_start:
            self._history = self._history[keep_from - self._history_start:]
            self._history_start = keep_from
        return out.astype(np.float32)


def resample(samples: np.ndarray, *, from_hz: int, to_hz: int = AUDIO_SAMPLE_RATE_HZ) -> np.ndarray:
    """
    Polyphase resample a whole float32 mono signal.

    Returns the input unchanged when the rates already match.
    """
    if from_hz == to_hz:
        return samples.astype(np.float32, copy=False)
    resampler = StreamResampler(from_hz=from_hz, to_hz=to_hz)
    return np.concatenate([resampler.process(samples), resampler.flush()])


def encode_wav(pcm_bytes: bytes, *, sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ) -> bytes:
    """Frame raw PCM16 mono bytes as a RIFF/WAVE file."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(AUDIO_CHANNELS)
        wf.setsampwidth(AUDIO_SAMPLE_WIDTH_BYTES)
        wf.setframerate(sample_rate_hz)
        wf.writeframes(pcm_bytes)
    return buf.getvalue()
