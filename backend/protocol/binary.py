# backend/protocol/binary.py
"""
Binary framing for audio pushed by the browser shim over the page relay.

Page -> Server (remote participant audio):
    4 bytes  seq_num        (u32, little-endian)
    2 bytes  stream_id_len  (u16, little-endian)
    N bytes  stream_id      (utf-8)
    M*4      samples        (float32, little-endian, mono)

Sequence numbers are per relay connection, not per stream.

Usage example:

    frame = decode_relay_frame(payload)

    result = check_sequence_gap(last_seq=prev_seq, current_seq=frame.sequence_num)
    if result.gap:
        log_event({
            "event_type": "RELAY_SEQ_GAP",
            "expected": result.expected,
            "actual": result.actual,
            "gap_size": result.gap_size,
        })

    page.push_samples(frame.stream_id, frame.samples)
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional

import numpy as np

from constants import (
    RELAY_HEADER_BYTES,
    RELAY_MAX_SAMPLES_PER_FRAME,
    RELAY_MAX_STREAM_ID_BYTES,
    RELAY_SAMPLE_BYTES,
    SEQ_NUM_MAX,
    SEQ_NUM_START,
)


# -------------------------
# Exceptions
# -------------------------

class BinaryProtocolError(Exception):
    """Base class for binary protocol errors."""


class InvalidFrameLength(BinaryProtocolError):
    """
    Raised when a relay frame is truncated, oversized, or its sample
    section is not a whole number of float32 values.

    The frame is unsafe to process and must be dropped.
    """


class InvalidSequenceNumber(BinaryProtocolError):
    """
    Raised when a sequence number is outside the valid range.
    """


class InvalidStreamId(BinaryProtocolError):
    """Raised when the stream id is empty or not valid utf-8."""


# -------------------------
# Frame type
# -------------------------

@dataclass(frozen=True)
class RelayFrame:
    sequence_num: int
    stream_id: str
    samples: np.ndarray


# -------------------------
# Low-level helpers
# -------------------------

def _read_u32_le(buf: bytes, offset: int = 0) -> int:
    return struct.unpack_from("<I", buf, offset)[0]


def _read_u16_le(buf: bytes, offset: int = 0) -> int:
    return struct.unpack_from("<H", buf, offset)[0]


def is_seq_next(prev: int, current: int) -> bool:
    """
    Return True if `current` is the expected next sequence number
    after `prev`, accounting for wraparound.
    """
    if prev == SEQ_NUM_MAX:
        return current == SEQ_NUM_START
    return current == prev + 1


# -------------------------
# Encode / decode
# -------------------------

def decode_relay_frame(payload: bytes) -> RelayFrame:
    if len(payload) < RELAY_HEADER_BYTES:
        raise InvalidFrameLength(f"relay frame length {len(payload)} < header {RELAY_HEADER_BYTES}")

    seq = _read_u32_le(payload, 0)
    if seq < SEQ_NUM_START or seq > SEQ_NUM_MAX:
        raise InvalidSequenceNumber(f"Invalid seq_num: {seq}")

    id_len = _read_u16_le(payload, 4)
    if id_len == 0 or id_len > RELAY_MAX_STREAM_ID_BYTES:
        raise InvalidStreamId(f"stream id length {id_len} out of range")

    body_start = RELAY_HEADER_BYTES + id_len
    if len(payload) < body_start:
        raise InvalidFrameLength(f"relay frame truncated inside stream id ({len(payload)} bytes)")

    try:
        stream_id = payload[RELAY_HEADER_BYTES:body_start].decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidStreamId("stream id is not utf-8") from e

    body = payload[body_start:]
    if len(body) % RELAY_SAMPLE_BYTES != 0:
        raise InvalidFrameLength(f"sample section {len(body)} not a multiple of {RELAY_SAMPLE_BYTES}")
    if len(body) // RELAY_SAMPLE_BYTES > RELAY_MAX_SAMPLES_PER_FRAME:
        raise InvalidFrameLength(f"relay frame carries too many samples ({len(body) // RELAY_SAMPLE_BYTES})")

    samples = np.frombuffer(body, dtype="<f4").astype(np.float32)
    return RelayFrame(sequence_num=seq, stream_id=stream_id, samples=samples)


def encode_relay_frame(*, sequence_num: int, stream_id: str, samples: np.ndarray) -> bytes:
    """Inverse of decode_relay_frame (used by tools and tests)."""
    if sequence_num < SEQ_NUM_START or sequence_num > SEQ_NUM_MAX:
        raise InvalidSequenceNumber(f"Invalid seq_num: {sequence_num}")

    sid = stream_id.encode("utf-8")
    if not sid or len(sid) > RELAY_MAX_STREAM_ID_BYTES:
        raise InvalidStreamId(f"stream id length {len(sid)} out of range")

    body = np.asarray(samples, dtype="<f4").tobytes()
    return struct.pack("<IH", sequence_num, len(sid)) + sid + body


# -------------------------
# Sequence gap detection
# -------------------------

@dataclass(frozen=True)
class SeqCheckResult:
    """
    Result of a sequence continuity check.
    """
    gap: bool
    expected: int
    actual: int

    @property
    def gap_size(self) -> int:
        """
        Number of frames skipped (0 if no gap).

        Handles wraparound correctly.
        """
        if not self.gap:
            return 0

        if self.actual > self.expected:
            return self.actual - self.expected

        return (SEQ_NUM_MAX - self.expected + 1) + (self.actual - SEQ_NUM_START)


def check_sequence_gap(
    *,
    last_seq: Optional[int],
    current_seq: int,
) -> SeqCheckResult:
    """
    Check whether `current_seq` follows `last_seq`.

    Pure function; never raises.
    """
    if last_seq is None or is_seq_next(last_seq, current_seq):
        return SeqCheckResult(gap=False, expected=current_seq, actual=current_seq)

    expected = SEQ_NUM_START if last_seq == SEQ_NUM_MAX else last_seq + 1
    return SeqCheckResult(gap=True, expected=expected, actual=current_seq)
