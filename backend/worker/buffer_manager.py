"""
Per-speaker adaptive buffers.

One AdaptiveBuffer per user_id, created on the first frame. Frames of one
participant arrive in sample-time order; a chunk_index that restarts at 0
means a fresh capture (resume, stream swap), so whatever the old capture
left buffered is force-extracted before the new audio is appended. Chunks
therefore never straddle two captures.

When a participant leaves, the emptied buffer is set aside rather than
dropped. Its adapted target duration, transcription metrics and chunk
sequence carry over if the same user_id comes back, and metrics for
chunks still in flight keep landing on it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from audio.frames import PCMFrame, UtteranceChunk
from constants import BUFFER_RETAINED_USERS_MAX
from observability.logger import log_event
from worker.adaptive_buffer import AdaptiveBuffer, BufferConfig


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass
class _UserTrack:
    buffer: AdaptiveBuffer
    last_chunk_index: Optional[int] = None
    frame_gaps: int = 0
    frames: int = 0
    in_flight: bool = False


class BufferManager:
    def __init__(
        self,
        *,
        config: BufferConfig = BufferConfig(),
        clock: Callable[[], int] = _now_ms,
        retained_max: int = BUFFER_RETAINED_USERS_MAX,
    ) -> None:
        self._config = config
        self._clock = clock
        self._retained_max = retained_max
        self._users: dict[str, _UserTrack] = {}
        self._departed: dict[str, AdaptiveBuffer] = {}

    def _track(self, user_id: str) -> _UserTrack:
        track = self._users.get(user_id)
        if track is None:
            buffer = self._departed.pop(user_id, None)
            if buffer is None:
                buffer = AdaptiveBuffer(user_id, config=self._config, clock=self._clock)
            else:
                log_event({
                    "event_type": "BUFFER_STATE_RESTORED",
                    "zone": "worker",
                    "user_id": user_id,
                    "target_duration_s": round(buffer.target_duration_s, 3),
                })
            track = _UserTrack(buffer=buffer)
            self._users[user_id] = track
        return track

    def get(self, user_id: str) -> Optional[AdaptiveBuffer]:
        track = self._users.get(user_id)
        return track.buffer if track else None

    @property
    def user_ids(self) -> list[str]:
        return sorted(self._users)

    def add_frame(self, frame: PCMFrame) -> list[UtteranceChunk]:
        track = self._track(frame.user_id)
        chunks: list[UtteranceChunk] = []

        last = track.last_chunk_index
        if last is not None:
            if frame.chunk_index == 0:
                if track.buffer.buffered_samples > 0:
                    chunks.extend(track.buffer.force_extract())
                log_event({
                    "event_type": "BUFFER_CAPTURE_RESTARTED",
                    "zone": "worker",
                    "user_id": frame.user_id,
                    "previous_chunk_index": last,
                    "flushed_chunks": len(chunks),
                })
            elif frame.chunk_index != last + 1:
                track.frame_gaps += 1
                log_event({
                    "event_type": "BUFFER_FRAME_GAP",
                    "zone": "worker",
                    "user_id": frame.user_id,
                    "expected": last + 1,
                    "actual": frame.chunk_index,
                })

        track.last_chunk_index = frame.chunk_index
        track.frames += 1
        chunks.extend(track.buffer.add(frame))
        return chunks

    def check_timeouts(self, now_ms: Optional[int] = None) -> list[UtteranceChunk]:
        now = self._clock() if now_ms is None else now_ms
        chunks = []
        for track in self._users.values():
            chunk = track.buffer.check_timeout(now)
            if chunk is not None:
                chunks.append(chunk)
        return chunks

    def end_user(self, user_id: str) -> list[UtteranceChunk]:
        """Participant left: flush the buffer and set it aside for a rejoin."""
        track = self._users.pop(user_id, None)
        if track is None:
            return []
        chunks = track.buffer.force_extract()
        self._departed.pop(user_id, None)
        self._departed[user_id] = track.buffer
        while len(self._departed) > self._retained_max:
            del self._departed[next(iter(self._departed))]
        return chunks

    def flush_all(self) -> list[UtteranceChunk]:
        """Force-extract every buffer; the next frame of each user starts a fresh run."""
        chunks: list[UtteranceChunk] = []
        for track in self._users.values():
            chunks.extend(track.buffer.force_extract())
            track.last_chunk_index = None
        return chunks

    def update_metrics(
        self,
        user_id: str,
        *,
        success: bool,
        latency_s: Optional[float] = None,
        transcription_time_s: Optional[float] = None,
    ) -> None:
        buffer = self.get(user_id)
        if buffer is None:
            buffer = self._departed.get(user_id)
        if buffer is not None:
            buffer.update_metrics(
                success=success,
                latency_s=latency_s,
                transcription_time_s=transcription_time_s,
            )

    def set_in_flight(self, user_id: str, in_flight: bool) -> None:
        track = self._users.get(user_id)
        if track is not None:
            track.in_flight = in_flight

    def snapshot(self) -> dict[str, Any]:
        return {
            user_id: {
                **track.buffer.snapshot(),
                "frames": track.frames,
                "frame_gaps": track.frame_gaps,
                "last_chunk_index": track.last_chunk_index,
                "in_flight": track.in_flight,
            }
            for user_id, track in sorted(self._users.items())
        }
