"""
Worker zone.

Responsibilities:
- Feed audio frames into per-speaker adaptive buffers
- Run the wall-clock speech-end check for speakers that went quiet
- Force-extract on participant end, reconnect flush and shutdown
- Transcribe chunks through the circuit-breaker-protected client, one
  sender task per speaker so each speaker's transcripts stay in order
- Push latency / success metrics back into the speaker's buffer
- Store transcripts and emit TRANSCRIPT_* / CIRCUIT_STATE / WORKER_ERROR
  to the Bridge; report each distinct permanent error once

Non-responsibilities:
- Capture, discovery, reconnection
- Talking to the UI directly (everything goes through the Bridge)
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from audio.frames import PCMFrame, UtteranceChunk
from config import AppConfig
from constants import (
    TRANSCRIPTION_MIN_CHUNK_S,
    WORKER_DRAIN_TIMEOUT_S,
    WORKER_TICK_INTERVAL_S,
)
from errors import PermanentNetworkError, TransientNetworkError, TranscriberError
from observability.logger import log_event
from protocol.bus import Endpoint
from protocol.messages import Message, MessageType, Zone
from worker.adaptive_buffer import BufferConfig
from worker.buffer_manager import BufferManager
from worker.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitPhase
from worker.speakers import SpeakerDirectory
from worker.transcription_client import TranscriptionClient
from worker.transcripts import TranscriptEntry, TranscriptStore


class Worker:
    def __init__(
        self,
        *,
        endpoint: Endpoint,
        config: AppConfig,
        openai_client: Optional[Any] = None,
        transcription: Optional[TranscriptionClient] = None,
        buffer_config: BufferConfig = BufferConfig(),
        breaker_config: CircuitBreakerConfig = CircuitBreakerConfig(),
        tick_interval_s: float = WORKER_TICK_INTERVAL_S,
        drain_timeout_s: float = WORKER_DRAIN_TIMEOUT_S,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._endpoint = endpoint
        self._config = config
        self._tick_interval_s = tick_interval_s
        self._drain_timeout_s = drain_timeout_s
        self._buffer_config = buffer_config

        if clock is not None:
            self.buffers = BufferManager(config=buffer_config, clock=clock)
        else:
            self.buffers = BufferManager(config=buffer_config)

        if transcription is None:
            breaker = CircuitBreaker(
                "transcription",
                config=breaker_config,
                on_state_change=self._circuit_changed,
            )
            transcription = TranscriptionClient(
                config=config,
                breaker=breaker,
                openai_client=openai_client,
            )
        self.transcription = transcription

        self.speakers = SpeakerDirectory()
        self.transcripts = TranscriptStore()

        self._queues: dict[str, asyncio.Queue[UtteranceChunk]] = {}
        self._senders: dict[str, asyncio.Task[None]] = {}
        self._busy: set[str] = set()
        self._tick_task: Optional[asyncio.Task[None]] = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._reported_permanent: set[tuple[Optional[str], str]] = set()

        self.chunks_submitted = 0
        self.chunks_skipped = 0
        self.transcripts_emitted = 0

        self._register()

    def _register(self) -> None:
        self._endpoint.on(MessageType.AUDIO_FRAME, self._on_audio_frame)
        self._endpoint.on(MessageType.USER_LEFT, self._on_user_left)
        self._endpoint.on(MessageType.FLUSH_BUFFERS, self._on_flush_buffers)
        self._endpoint.on(MessageType.SET_API_KEY, self._on_set_api_key)
        self._endpoint.on(MessageType.UPDATE_SPEAKER, self._on_update_speaker)
        self._endpoint.on(MessageType.GET_TRANSCRIPTS, self._on_get_transcripts)
        self._endpoint.on(MessageType.CLEAR_TRANSCRIPTS, self._on_clear_transcripts)
        self._endpoint.on(MessageType.GET_WORKER_STATUS, self._on_get_status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._tick_task is None and self._tick_interval_s > 0:
            self._tick_task = asyncio.create_task(self._tick_loop(), name="worker-tick")

    async def shutdown(self) -> None:
        """Stop ticking, flush every buffer, give senders a bounded drain."""
        if self._tick_task is not None:
            self._tick_task.cancel()
            await asyncio.gather(self._tick_task, return_exceptions=True)
            self._tick_task = None

        self._submit_all(self.buffers.flush_all())

        queues = [q.join() for q in self._queues.values()]
        if queues:
            try:
                await asyncio.wait_for(asyncio.gather(*queues), self._drain_timeout_s)
            except asyncio.TimeoutError:
                log_event({
                    "event_type": "WORKER_DRAIN_TIMEOUT",
                    "zone": "worker",
                    "pending": {u: q.qsize() for u, q in self._queues.items()},
                })

        tasks = [*self._senders.values(), *self._tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._senders.clear()
        self._queues.clear()
        log_event({
            "event_type": "WORKER_SHUTDOWN",
            "zone": "worker",
            "chunks_submitted": self.chunks_submitted,
            "chunks_skipped": self.chunks_skipped,
            "transcripts_emitted": self.transcripts_emitted,
        })

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval_s)
            self.tick()

    def tick(self, now_ms: Optional[int] = None) -> int:
        chunks = self.buffers.check_timeouts(now_ms)
        self._submit_all(chunks)
        return len(chunks)

    async def drain(self) -> None:
        """Wait until every queued chunk was transcribed (tests, shutdown)."""
        await asyncio.gather(*(q.join() for q in self._queues.values()))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_audio_frame(self, msg: Message) -> None:
        frame: PCMFrame = msg.data["frame"]
        self._submit_all(self.buffers.add_frame(frame))

    async def _on_user_left(self, msg: Message) -> None:
        user_id = str(msg.data.get("user_id", ""))
        chunks = self.buffers.end_user(user_id)
        log_event({
            "event_type": "WORKER_USER_LEFT",
            "zone": "worker",
            "user_id": user_id,
            "reason": msg.data.get("reason"),
            "flushed_chunks": len(chunks),
        })
        self._submit_all(chunks)
        if user_id in self._queues:
            self._spawn(self._retire_sender(user_id))

    async def _on_flush_buffers(self, msg: Message) -> dict[str, Any]:
        chunks = self.buffers.flush_all()
        log_event({
            "event_type": "WORKER_BUFFERS_FLUSHED",
            "zone": "worker",
            "reason": msg.data.get("reason"),
            "chunks": len(chunks),
        })
        self._submit_all(chunks)
        return {"flushed": len(chunks)}

    async def _on_set_api_key(self, msg: Message) -> dict[str, Any]:
        self.transcription.set_api_key(str(msg.data.get("api_key") or ""))
        self._reported_permanent.clear()
        self.transcription.breaker.reset()
        return {"configured": self.transcription.has_credentials}

    async def _on_update_speaker(self, msg: Message) -> dict[str, Any]:
        user_id = msg.data.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise PermanentNetworkError("update_speaker requires user_id", code="bad-request")
        self.speakers.set_name(user_id, str(msg.data.get("name") or ""))
        return {"user_id": user_id, "speaker": self.speakers.name_for(user_id)}

    async def _on_get_transcripts(self, msg: Message) -> dict[str, Any]:
        user_id = msg.data.get("user_id")
        limit = msg.data.get("limit")
        return {
            "transcripts": self.transcripts.entries(
                user_id=user_id if isinstance(user_id, str) else None,
                limit=limit if isinstance(limit, int) else None,
            )
        }

    async def _on_clear_transcripts(self, _msg: Message) -> dict[str, Any]:
        return {"cleared": self.transcripts.clear()}

    async def _on_get_status(self, _msg: Message) -> dict[str, Any]:
        return self.status()

    def status(self) -> dict[str, Any]:
        return {
            "buffers": self.buffers.snapshot(),
            "circuit": self.transcription.breaker.snapshot(),
            "credentials": self.transcription.has_credentials,
            "queued": {u: q.qsize() for u, q in self._queues.items()},
            "senders": sorted(self._senders),
            "transcripts": len(self.transcripts),
            "speakers": self.speakers.snapshot(),
            "chunks_submitted": self.chunks_submitted,
            "chunks_skipped": self.chunks_skipped,
            "transcripts_emitted": self.transcripts_emitted,
        }

    # ------------------------------------------------------------------
    # Chunk submission
    # ------------------------------------------------------------------

    def _submit_all(self, chunks: list[UtteranceChunk]) -> None:
        for chunk in chunks:
            self._submit(chunk)

    def _submit(self, chunk: UtteranceChunk) -> None:
        if not chunk.speech_detected or chunk.duration_s < TRANSCRIPTION_MIN_CHUNK_S:
            self.chunks_skipped += 1
            log_event({
                "event_type": "WORKER_CHUNK_SKIPPED",
                "zone": "worker",
                "reason": "no-speech" if not chunk.speech_detected else "too-short",
                **chunk.describe(),
            })
            return

        queue = self._queues.get(chunk.user_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[chunk.user_id] = queue
            self._senders[chunk.user_id] = asyncio.create_task(
                self._sender(chunk.user_id, queue),
                name=f"worker-sender-{chunk.user_id}",
            )
        self.chunks_submitted += 1
        queue.put_nowait(chunk)

    async def _sender(self, user_id: str, queue: asyncio.Queue[UtteranceChunk]) -> None:
        while True:
            chunk = await queue.get()
            self._busy.add(user_id)
            self.buffers.set_in_flight(user_id, True)
            try:
                await self._transcribe(chunk)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "WORKER_SENDER_ERROR",
                    "zone": "worker",
                    "user_id": user_id,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })
            finally:
                self._busy.discard(user_id)
                self.buffers.set_in_flight(user_id, False)
                queue.task_done()

    async def _retire_sender(self, user_id: str) -> None:
        """Drop a departed user's queue and sender once its last chunk is done."""
        queue = self._queues.get(user_id)
        if queue is None:
            return
        while True:
            await queue.join()
            if self.buffers.get(user_id) is not None or self._queues.get(user_id) is not queue:
                return
            if queue.empty() and user_id not in self._busy:
                break

        del self._queues[user_id]
        sender = self._senders.pop(user_id)
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        log_event({
            "event_type": "WORKER_SENDER_RETIRED",
            "zone": "worker",
            "user_id": user_id,
        })

    async def _transcribe(self, chunk: UtteranceChunk) -> None:
        user_id = chunk.user_id
        speaker = self.speakers.name_for(user_id)
        try:
            result = await self.transcription.transcribe(chunk, speaker=speaker)
        except PermanentNetworkError as e:
            self.buffers.update_metrics(user_id, success=False)
            await self._report_permanent(user_id, e)
            return
        except TransientNetworkError as e:
            self.buffers.update_metrics(user_id, success=False)
            await self._report_error(f"transcription:{user_id}", e)
            return

        if result is None:
            return

        self.buffers.update_metrics(
            user_id,
            success=True,
            latency_s=result.latency_s,
            transcription_time_s=result.total_time_s,
        )
        if not result.text:
            log_event({
                "event_type": "WORKER_EMPTY_TRANSCRIPT",
                "zone": "worker",
                "user_id": user_id,
                "sequence": chunk.sequence,
            })
            return

        entry = TranscriptEntry(
            user_id=user_id,
            speaker=speaker,
            text=result.text,
            timestamp=chunk.ended_at_ms,
            duration=round(chunk.duration_s, 3),
            sequence=chunk.sequence,
            is_final=result.is_final,
            confidence=result.confidence,
        )
        self.transcripts.add(entry)
        self.transcripts_emitted += 1

        # A hard-capped chunk cuts an utterance that is still going
        partial = not chunk.forced and chunk.duration_s >= self._buffer_config.max_duration_s
        msg_type = MessageType.TRANSCRIPT_PARTIAL if partial else MessageType.TRANSCRIPT_FINAL
        await self._endpoint.emit(Zone.BRIDGE, msg_type, entry.to_dict())

    async def _report_permanent(self, user_id: str, error: PermanentNetworkError) -> None:
        key = (error.code, error.message)
        if key in self._reported_permanent:
            return
        self._reported_permanent.add(key)
        await self._report_error(f"transcription:{user_id}", error)

    async def _report_error(self, context: str, error: TranscriberError) -> None:
        await self._endpoint.emit(Zone.BRIDGE, MessageType.WORKER_ERROR, {
            "context": context,
            "error": error.to_payload(),
        })

    # ------------------------------------------------------------------
    # Circuit state
    # ------------------------------------------------------------------

    def _circuit_changed(self, previous: CircuitPhase, current: CircuitPhase) -> None:
        self._spawn(self._endpoint.emit(Zone.BRIDGE, MessageType.CIRCUIT_STATE, {
            "phase": current.value,
            "previous": previous.value,
        }))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
