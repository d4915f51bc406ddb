"""
A minimal, energy-based speech detector.

Classifies short windows of float32 samples as speech or silence using
both RMS energy and peak amplitude. The adaptive buffer feeds it every
incoming frame and tracks trailing silence from its verdicts.
"""

from __future__ import annotations

import numpy as np

from audio.pcm import peak, rms
from constants import BUFFER_PEAK_SPEECH_FACTOR


class EnergyVAD:
    """
    Stateless energy detector.

    A window is speech when its RMS exceeds `threshold` or its peak
    exceeds `peak_factor * threshold`. The peak rule catches short plosive
    bursts whose RMS over a whole frame stays low.
    """
    def __init__(self, threshold: float, peak_factor: float = BUFFER_PEAK_SPEECH_FACTOR):
        self._threshold = threshold
        self._peak_factor = peak_factor

    @property
    def threshold(self) -> float:
        return self._threshold

    def observe(self, f32: np.ndarray) -> bool:
        """
        Classify one window.

        Args:
            f32:
                A 1D NumPy array of float32 samples.

        Returns:
            True if the window counts as speech.
        """
        if f32.size == 0:
            return False
        return rms(f32) > self._threshold or peak(f32) > self._peak_factor * self._threshold
