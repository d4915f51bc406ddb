"""
Capture attachment.

Responsibilities:
- Own one CaptureGraph (source node -> frame processor) per participant
- Create the page's shared audio context lazily, on first attach
- Enforce at most one active capture per user_id and no shared streams
- Tear down gracefully: flush pending samples, disconnect nodes, remove
  the entry, report duration and frame count

Non-responsibilities:
- Finding sinks (page/discovery.py)
- Deciding when a participant ends (track end, sink removal and stream
  swaps are reported by the caller)
- Sending anything over the bus (callbacks are injected)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from audio.frames import PCMFrame
from constants import CAPTURE_MAX_CONCURRENT
from errors import CaptureError, FatalSetupError, InvariantViolation, TranscriberError
from observability.logger import log_event
from page.audio_context import SharedAudioContext, SourceNode
from page.dom import AudioSinkElement, MediaStream
from page.processor import FrameProcessor


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


ContextFactory = Callable[[], SharedAudioContext]


class CaptureStatus(str, Enum):
    ACTIVE = "active"
    FAILED = "failed"


@dataclass
class CaptureGraph:
    source: SourceNode
    processor: FrameProcessor
    context: SharedAudioContext


@dataclass
class ParticipantAudio:
    user_id: str
    element: AudioSinkElement
    stream: MediaStream
    graph: CaptureGraph
    started_at_ms: int

    @property
    def chunk_count(self) -> int:
        return self.graph.processor.stats.frames_emitted

    def describe(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "element_id": self.element.id,
            "stream_id": self.stream.id,
            "started_at_ms": self.started_at_ms,
            "duration_s": round((_now_ms() - self.started_at_ms) / 1000.0, 3),
            **self.graph.processor.stats.snapshot(),
        }


class CaptureManager:
    def __init__(
        self,
        *,
        context_factory: ContextFactory,
        get_volume: Callable[[], float],
        on_frame: Callable[[PCMFrame], Awaitable[None]],
        on_started: Callable[[ParticipantAudio], Awaitable[None]],
        on_stopped: Callable[[ParticipantAudio, str], Awaitable[None]],
        on_error: Callable[[str, TranscriberError], Awaitable[None]],
        max_captures: int = CAPTURE_MAX_CONCURRENT,
    ) -> None:
        self._context_factory = context_factory
        self._get_volume = get_volume
        self._on_frame = on_frame
        self._on_started = on_started
        self._on_stopped = on_stopped
        self._on_error = on_error
        self._max_captures = max_captures

        self._context: Optional[SharedAudioContext] = None
        self._captures: dict[str, ParticipantAudio] = {}
        self._failed: dict[str, str] = {}
        self._stopping: set[str] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Shared context
    # ------------------------------------------------------------------

    @property
    def context(self) -> Optional[SharedAudioContext]:
        return self._context

    def ensure_context(self) -> SharedAudioContext:
        """
        Raises:
            FatalSetupError ("audio-unavailable") if the context cannot be created.
        """
        if self._context is None:
            try:
                self._context = self._context_factory()
            except FatalSetupError:
                raise
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "AUDIO_CONTEXT_FAILED",
                    "zone": "page",
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })
                raise FatalSetupError(
                    f"audio context could not be created: {exc}",
                    code="audio-unavailable",
                ) from exc
        return self._context

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, user_id: str) -> Optional[ParticipantAudio]:
        return self._captures.get(user_id)

    def active_user_ids(self) -> list[str]:
        return sorted(self._captures)

    def failed_user_ids(self) -> list[str]:
        return sorted(self._failed)

    def __len__(self) -> int:
        return len(self._captures)

    # ------------------------------------------------------------------
    # Attach / stop
    # ------------------------------------------------------------------

    async def attach(self, element: AudioSinkElement, user_id: str, stream: MediaStream) -> Optional[ParticipantAudio]:
        """
        Build and start a capture.

        Returns None when the capture was refused (duplicate, shared stream,
        limit, source failure). FatalSetupError propagates.
        """
        if user_id in self._captures:
            log_event({
                "event_type": "CAPTURE_DUPLICATE_DROPPED",
                "zone": "page",
                "user_id": user_id,
                "kind": InvariantViolation.kind.value,
            })
            return None

        if any(p.stream is stream for p in self._captures.values()):
            log_event({
                "event_type": "CAPTURE_SHARED_STREAM_DROPPED",
                "zone": "page",
                "user_id": user_id,
                "stream_id": stream.id,
                "kind": InvariantViolation.kind.value,
            })
            return None

        if len(self._captures) >= self._max_captures:
            log_event({
                "event_type": "CAPTURE_LIMIT_REACHED",
                "zone": "page",
                "user_id": user_id,
                "max_captures": self._max_captures,
            })
            return None

        context = self.ensure_context()

        try:
            source = context.create_media_stream_source(stream)
        except (CaptureError, InvariantViolation) as e:
            self._failed[user_id] = e.message
            log_event({
                "event_type": "CAPTURE_SOURCE_FAILED",
                "zone": "page",
                "user_id": user_id,
                "error": e.to_payload(),
            })
            await self._on_error(user_id, e)
            return None

        processor = FrameProcessor(
            user_id=user_id,
            get_volume=self._get_volume,
            sample_rate_hz=context.sample_rate_hz,
        )
        participant = ParticipantAudio(
            user_id=user_id,
            element=element,
            stream=stream,
            graph=CaptureGraph(source=source, processor=processor, context=context),
            started_at_ms=_now_ms(),
        )
        self._captures[user_id] = participant
        self._failed.pop(user_id, None)

        source.connect(processor, on_frame=self._emit_frame, on_ended=self._source_ended)

        log_event({
            "event_type": "CAPTURE_STARTED",
            "zone": "page",
            "user_id": user_id,
            "element_id": element.id,
            "stream_id": stream.id,
            "active_captures": len(self._captures),
        })
        await self._on_started(participant)
        return participant

    async def stop(self, user_id: str, *, reason: str) -> bool:
        participant = await self._teardown(user_id, reason=reason)
        if participant is None:
            return False
        await self._on_stopped(participant, reason)
        return True

    async def stop_all(self, *, reason: str) -> list[str]:
        stopped = []
        for user_id in list(self._captures):
            if await self.stop(user_id, reason=reason):
                stopped.append(user_id)
        return stopped

    async def restart(self, user_id: str) -> Optional[ParticipantAudio]:
        """
        Rebuild a participant's graph on its current element stream.

        The new capture starts with fresh chunk indices. No stopped/started
        callbacks fire; the participant never leaves from the caller's view.
        """
        participant = self._captures.get(user_id)
        if participant is None:
            return None
        element = participant.element
        await self._teardown(user_id, reason="resume")

        stream = element.stream
        if stream is None or not stream.active:
            log_event({
                "event_type": "CAPTURE_RESUME_NO_STREAM",
                "zone": "page",
                "user_id": user_id,
            })
            await self._on_stopped(participant, "resume-failed")
            return None

        context = self.ensure_context()
        try:
            source = context.create_media_stream_source(stream)
        except (CaptureError, InvariantViolation) as e:
            self._failed[user_id] = e.message
            await self._on_error(user_id, e)
            await self._on_stopped(participant, "resume-failed")
            return None

        processor = FrameProcessor(
            user_id=user_id,
            get_volume=self._get_volume,
            sample_rate_hz=context.sample_rate_hz,
        )
        fresh = ParticipantAudio(
            user_id=user_id,
            element=element,
            stream=stream,
            graph=CaptureGraph(source=source, processor=processor, context=context),
            started_at_ms=participant.started_at_ms,
        )
        self._captures[user_id] = fresh
        source.connect(processor, on_frame=self._emit_frame, on_ended=self._source_ended)
        log_event({"event_type": "CAPTURE_RESUMED", "zone": "page", "user_id": user_id})
        return fresh

    async def close(self) -> None:
        """Page teardown: stop every capture, then close the shared context."""
        await self.stop_all(reason="shutdown")
        for task in list(self._tasks):
            task.cancel()
        if self._context is not None:
            await self._context.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _teardown(self, user_id: str, *, reason: str) -> Optional[ParticipantAudio]:
        if user_id in self._stopping:
            return None
        participant = self._captures.get(user_id)
        if participant is None:
            return None

        self._stopping.add(user_id)
        try:
            await participant.graph.source.disconnect()
            # Entry stays registered until the tail frame is out
            tail = participant.graph.processor.flush()
            if tail is not None:
                await self._on_frame(tail)
            del self._captures[user_id]
        finally:
            self._stopping.discard(user_id)

        log_event({
            "event_type": "CAPTURE_STOPPED",
            "zone": "page",
            "user_id": user_id,
            "reason": reason,
            "frames": participant.chunk_count,
            "stats": participant.graph.processor.stats.snapshot(),
        })
        return participant

    async def _emit_frame(self, frame: PCMFrame) -> None:
        if frame.user_id not in self._captures:
            log_event({
                "event_type": "FRAME_WITHOUT_CAPTURE_DROPPED",
                "zone": "page",
                "user_id": frame.user_id,
            })
            return
        await self._on_frame(frame)

    def _source_ended(self, source: SourceNode) -> None:
        for user_id, participant in self._captures.items():
            if participant.graph.source is source:
                task = asyncio.create_task(self.stop(user_id, reason="track-ended"))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                return
