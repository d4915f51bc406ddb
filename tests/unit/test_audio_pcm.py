# pylint: disable=missing-module-docstring,missing-function-docstring

import io
import wave
from math import gcd

import numpy as np
import pytest
from scipy import signal

from audio.pcm import StreamResampler, encode_wav, float32_to_pcm16le, pcm16le_to_float32, resample, rms
from audio.quality import analyze
from audio.vad import EnergyVAD


# ---------------------------------------------------------------------
# PCM16 conversion
# ---------------------------------------------------------------------

def test_float32_to_pcm16_saturates_at_both_ends():
    pcm = float32_to_pcm16le(np.array([-2.0, -1.0, 0.0, 1.0, 2.0], dtype=np.float32))

    values = np.frombuffer(pcm, dtype="<i2").tolist()

    assert values == [-32768, -32768, 0, 32767, 32767]


def test_pcm16_to_float32_drops_trailing_odd_byte():
    out = pcm16le_to_float32(b"\x00\x40\x00\xc0\x01")

    assert out.tolist() == [0.5, -0.5]


def test_resample_48k_to_16k_keeps_duration():
    samples = np.zeros(48_000, dtype=np.float32)

    out = resample(samples, from_hz=48_000, to_hz=16_000)

    assert out.dtype == np.float32
    assert out.size == 16_000


@pytest.mark.parametrize("from_hz, block", [(48_000, 1024), (48_000, 777), (44_100, 441), (44_100, 1000)])
def test_stream_resampler_matches_whole_signal_resample(from_hz, block):
    t = np.arange(from_hz) / from_hz
    samples = (0.5 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)
    expected = signal.resample_poly(samples, *_ratio(from_hz, 16_000))

    resampler = StreamResampler(from_hz=from_hz, to_hz=16_000)
    parts = [resampler.process(samples[i:i + block]) for i in range(0, samples.size, block)]
    out = np.concatenate(parts + [resampler.flush()])

    assert out.size == expected.size == 16_000
    np.testing.assert_allclose(out, expected, atol=1e-5)


def test_stream_resampler_emits_nothing_twice():
    resampler = StreamResampler(from_hz=48_000, to_hz=16_000)

    first = resampler.process(np.ones(3000, dtype=np.float32))
    again = resampler.process(np.zeros(0, dtype=np.float32))

    assert first.size > 0
    assert again.size == 0


def test_stream_resampler_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        StreamResampler(from_hz=0, to_hz=16_000)


def _ratio(from_hz: int, to_hz: int) -> tuple[int, int]:
    g = gcd(from_hz, to_hz)
    return to_hz // g, from_hz // g


def test_resample_same_rate_is_identity():
    samples = np.arange(10, dtype=np.float32)

    out = resample(samples, from_hz=16_000, to_hz=16_000)

    np.testing.assert_array_equal(out, samples)


def test_encode_wav_produces_readable_riff():
    pcm = float32_to_pcm16le(np.zeros(1600, dtype=np.float32))

    wav = encode_wav(pcm, sample_rate_hz=16_000)

    with wave.open(io.BytesIO(wav), "rb") as wf:
        assert wf.getnchannels() == 1
        assert wf.getsampwidth() == 2
        assert wf.getframerate() == 16_000
        assert wf.getnframes() == 1600


# ---------------------------------------------------------------------
# VAD / quality
# ---------------------------------------------------------------------

def test_vad_classifies_tone_and_silence():
    vad = EnergyVAD(threshold=0.01)
    t = np.arange(1600) / 16_000
    tone = (0.2 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)

    assert vad.observe(tone) is True
    assert vad.observe(np.zeros(1600, dtype=np.float32)) is False
    assert vad.observe(np.zeros(0, dtype=np.float32)) is False


def test_vad_peak_rule_catches_short_burst():
    vad = EnergyVAD(threshold=0.01, peak_factor=3.0)
    burst = np.zeros(1600, dtype=np.float32)
    burst[10] = 0.5

    assert rms(burst) < 0.01
    assert vad.observe(burst) is True


def test_quality_labels_silence():
    report = analyze(np.zeros(3200, dtype=np.float32), silence_threshold=0.001)

    assert report.label == "silent"
    assert report.silence_ratio == 1.0


def test_quality_labels_clipping():
    samples = np.ones(3200, dtype=np.float32)

    report = analyze(samples, silence_threshold=0.001)

    assert report.label == "clipping"
    assert report.clipping_ratio == 1.0


def test_quality_empty_input_is_silent():
    report = analyze(np.zeros(0, dtype=np.float32), silence_threshold=0.001)

    assert report.label == "silent"
    assert report.to_dict()["silence_ratio"] == 1.0
