"""
Audio quality analysis for utterance chunks.

Pure functions over float32 samples. The worker attaches the resulting
report to each chunk's log record so degraded inputs (clipping, near
silence, low SNR) can be spotted without listening to the audio.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any

import numpy as np

from audio.pcm import peak, rms
from constants import (
    QUALITY_CLIPPING_LEVEL,
    QUALITY_MAX_CLIPPING_RATIO,
    QUALITY_MAX_SILENCE_RATIO,
    QUALITY_MIN_SNR_DB,
)

# Window used for the noise-floor / signal estimate (20 ms at 16 kHz)
_SNR_WINDOW_SAMPLES = 320


@dataclass(frozen=True)
class QualityReport:
    peak: float
    rms: float
    clipping_ratio: float
    silence_ratio: float
    snr_db: float
    label: str

    def to_dict(self) -> dict[str, Any]:
        return {k: round(v, 4) if isinstance(v, float) else v for k, v in asdict(self).items()}


def estimate_snr_db(samples: np.ndarray) -> float:
    """
    Rough SNR: loudest 10% of 20 ms windows against the quietest 10%.

    Returns 0.0 when there is not enough audio to split into windows.
    """
    n = samples.size // _SNR_WINDOW_SAMPLES
    if n < 2:
        return 0.0
    windows = samples[: n * _SNR_WINDOW_SAMPLES].reshape(n, _SNR_WINDOW_SAMPLES)
    levels = np.sort(np.sqrt(np.mean(np.square(windows, dtype=np.float64), axis=1)))
    k = max(1, n // 10)
    noise = float(np.mean(levels[:k]))
    sig = float(np.mean(levels[-k:]))
    if sig <= 0.0:
        return 0.0
    if noise <= 1e-9:
        noise = 1e-9
    return float(20.0 * np.log10(sig / noise))


def analyze(samples: np.ndarray, *, silence_threshold: float) -> QualityReport:
    """
    Produce a QualityReport for one chunk.

    Labels:
        "silent"   - nearly everything below the silence threshold
        "clipping" - too many samples at full scale
        "noisy"    - SNR below the minimum
        "good"     - none of the above
    """
    if samples.size == 0:
        return QualityReport(0.0, 0.0, 0.0, 1.0, 0.0, "silent")

    magnitudes = np.abs(samples)
    clipping_ratio = float(np.count_nonzero(magnitudes >= QUALITY_CLIPPING_LEVEL)) / samples.size
    silence_ratio = float(np.count_nonzero(magnitudes < silence_threshold)) / samples.size
    snr_db = estimate_snr_db(samples)

    if silence_ratio > QUALITY_MAX_SILENCE_RATIO:
        label = "silent"
    elif clipping_ratio > QUALITY_MAX_CLIPPING_RATIO:
        label = "clipping"
    elif 0.0 < snr_db < QUALITY_MIN_SNR_DB:
        label = "noisy"
    else:
        label = "good"

    return QualityReport(
        peak=peak(samples),
        rms=rms(samples),
        clipping_ratio=clipping_ratio,
        silence_ratio=silence_ratio,
        snr_db=snr_db,
        label=label,
    )
