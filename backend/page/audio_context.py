"""
Shared audio context and per-capture source nodes.

One SharedAudioContext exists per page. It is created lazily by the first
capture, may be suspended and resumed, and refuses to close while any
source node is still connected. Its lifetime is bound to the page zone,
never to a single capture.

A SourceNode reads one audio track, resamples to the context rate when
needed, cuts the audio into render quanta and feeds a FrameProcessor.
Its render task stands in for the audio rendering thread: it only
touches the processor and hands finished frames to the owning zone.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

import numpy as np

from audio.frames import PCMFrame
from audio.pcm import StreamResampler
from constants import AUDIO_QUANTUM_SAMPLES, AUDIO_SAMPLE_RATE_HZ
from errors import CaptureError, FatalSetupError, InvariantViolation
from observability.logger import log_event
from page.dom import AudioTrack, MediaStream
from page.processor import FrameProcessor


FrameSink = Callable[[PCMFrame], Awaitable[None]]
EndedCallback = Callable[["SourceNode"], None]


class ContextState(str, Enum):
    RUNNING = "running"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class SharedAudioContext:
    def __init__(self, *, sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ) -> None:
        self.sample_rate_hz = sample_rate_hz
        self.state = ContextState.RUNNING
        self._running = asyncio.Event()
        self._running.set()
        self._sources: set[SourceNode] = set()
        self._claimed_tracks: set[str] = set()
        log_event({
            "event_type": "AUDIO_CONTEXT_CREATED",
            "zone": "page",
            "sample_rate_hz": sample_rate_hz,
        })

    @property
    def active_sources(self) -> int:
        return len(self._sources)

    def create_media_stream_source(self, stream: MediaStream) -> SourceNode:
        """
        Raises:
            FatalSetupError if the context is closed.
            CaptureError if the stream carries no live audio track.
            InvariantViolation if the track already feeds another source.
        """
        if self.state is ContextState.CLOSED:
            raise FatalSetupError("audio context is closed", code="audio-unavailable")

        tracks = [t for t in stream.get_audio_tracks() if t.live]
        if not tracks:
            raise CaptureError(f"stream {stream.id} has no live audio track", code="no-audio-track")

        track = tracks[0]
        if track.id in self._claimed_tracks:
            raise InvariantViolation(f"track {track.id} already has a source node")

        node = SourceNode(context=self, stream=stream, track=track)
        self._claimed_tracks.add(track.id)
        self._sources.add(node)
        return node

    def _release(self, node: SourceNode) -> None:
        self._sources.discard(node)
        self._claimed_tracks.discard(node.track.id)

    async def wait_running(self) -> None:
        await self._running.wait()

    async def suspend(self) -> None:
        if self.state is ContextState.RUNNING:
            self.state = ContextState.SUSPENDED
            self._running.clear()
            log_event({"event_type": "AUDIO_CONTEXT_SUSPENDED", "zone": "page"})

    async def resume(self) -> None:
        if self.state is ContextState.SUSPENDED:
            self.state = ContextState.RUNNING
            self._running.set()
            log_event({"event_type": "AUDIO_CONTEXT_RESUMED", "zone": "page"})

    async def close(self) -> None:
        if self._sources:
            raise InvariantViolation(
                f"refusing to close audio context with {len(self._sources)} active captures"
            )
        if self.state is not ContextState.CLOSED:
            self.state = ContextState.CLOSED
            self._running.set()
            log_event({"event_type": "AUDIO_CONTEXT_CLOSED", "zone": "page"})


class SourceNode:
    def __init__(self, *, context: SharedAudioContext, stream: MediaStream, track: AudioTrack) -> None:
        self.context = context
        self.stream = stream
        self.track = track
        self._task: Optional[asyncio.Task[None]] = None
        self._carry = np.zeros(0, dtype=np.float32)

    @property
    def connected(self) -> bool:
        return self._task is not None

    def connect(self, processor: FrameProcessor, *, on_frame: FrameSink, on_ended: EndedCallback) -> None:
        if self._task is not None:
            raise InvariantViolation("source node already connected")
        self._task = asyncio.create_task(
            self._render(processor, on_frame, on_ended),
            name=f"render-{processor.user_id}",
        )

    async def disconnect(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.context._release(self)  # pylint: disable=protected-access

    async def _render(self, processor: FrameProcessor, on_frame: FrameSink, on_ended: EndedCallback) -> None:
        resampler: Optional[StreamResampler] = None
        if self.track.sample_rate_hz != self.context.sample_rate_hz:
            resampler = StreamResampler(from_hz=self.track.sample_rate_hz, to_hz=self.context.sample_rate_hz)

        while True:
            block = await self.track.read()
            if block is None:
                break
            await self.context.wait_running()
            if resampler is not None:
                block = resampler.process(block)
            await self._feed(block, processor, on_frame)

        if resampler is not None:
            await self._feed(resampler.flush(), processor, on_frame)

        if self._carry.size:
            tail = np.zeros(AUDIO_QUANTUM_SAMPLES, dtype=np.float32)
            tail[: self._carry.size] = self._carry
            self._carry = np.zeros(0, dtype=np.float32)
            frame = processor.process(tail)
            if frame is not None:
                await on_frame(frame)

        on_ended(self)

    async def _feed(self, block: np.ndarray, processor: FrameProcessor, on_frame: FrameSink) -> None:
        data = np.concatenate([self._carry, block]) if self._carry.size else block
        whole = (data.shape[0] // AUDIO_QUANTUM_SAMPLES) * AUDIO_QUANTUM_SAMPLES
        for offset in range(0, whole, AUDIO_QUANTUM_SAMPLES):
            frame = processor.process(data[offset:offset + AUDIO_QUANTUM_SAMPLES])
            if frame is not None:
                await on_frame(frame)
        self._carry = data[whole:].copy()
