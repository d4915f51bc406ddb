"""
Transcription endpoint client.

Responsibilities:
- Frame an UtteranceChunk as a 16-bit 16 kHz mono WAV and post it to an
  OpenAI-compatible audio transcription endpoint
- Classify failures: transient (rate limit, 5xx, connection, timeout) vs
  permanent (credential, payload)
- Retry transient failures with backoff 1, 2, 4, 8, 16 s, every attempt
  going through the circuit breaker
- Measure request latency for the adaptive buffer

Non-responsibilities:
- Deciding what to transcribe (the Worker)
- Delivering transcripts (the Worker emits them)

An open circuit short-circuits to None (no transcript for that chunk).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

import openai
from openai import AsyncOpenAI

from audio.frames import UtteranceChunk
from audio.pcm import encode_wav
from config import AppConfig
from constants import TRANSCRIPTION_PROMPT_TEMPLATE, TRANSCRIPTION_RETRY_DELAYS_S
from errors import (
    CircuitOpenError,
    PermanentNetworkError,
    TransientNetworkError,
)
from observability.logger import log_event
from observability.metrics import timed
from worker.circuit_breaker import CircuitBreaker


_PERMANENT_ERRORS: tuple[type[openai.APIStatusError], ...] = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.BadRequestError,
    openai.UnprocessableEntityError,
    openai.NotFoundError,
)

_TRANSIENT_STATUS = frozenset({408, 409, 429})


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    is_final: bool = True
    confidence: Optional[float] = None
    attempts: int = 1
    latency_s: float = 0.0
    total_time_s: float = 0.0


def build_transcription_client(config: AppConfig, api_key: str) -> AsyncOpenAI:
    # Retries are ours (through the breaker), not the SDK's
    return AsyncOpenAI(
        api_key=api_key,
        base_url=config.transcription_base_url,
        max_retries=0,
        timeout=config.transcription_timeout_s,
    )


def classify_error(exc: Exception) -> Exception:
    """Map an SDK exception onto the transcriber's error kinds."""
    if isinstance(exc, openai.APITimeoutError):
        return TransientNetworkError(f"transcription request timed out: {exc}", code="timeout")
    if isinstance(exc, _PERMANENT_ERRORS):
        return PermanentNetworkError(
            f"transcription request rejected: {exc.message}",
            code=str(exc.status_code),
        )
    if isinstance(exc, (openai.RateLimitError, openai.InternalServerError)):
        return TransientNetworkError(
            f"transcription endpoint unavailable: {exc.message}",
            code=str(exc.status_code),
        )
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500 or exc.status_code in _TRANSIENT_STATUS:
            return TransientNetworkError(f"transcription failed: {exc.message}", code=str(exc.status_code))
        return PermanentNetworkError(f"transcription failed: {exc.message}", code=str(exc.status_code))
    if isinstance(exc, openai.APIConnectionError):
        return TransientNetworkError(f"transcription endpoint unreachable: {exc}", code="connection")
    if isinstance(exc, asyncio.TimeoutError):
        return TransientNetworkError("transcription request timed out", code="timeout")
    return exc


class TranscriptionClient:
    def __init__(
        self,
        *,
        config: AppConfig,
        breaker: CircuitBreaker,
        openai_client: Optional[Any] = None,
        client_factory: Callable[[AppConfig, str], Any] = build_transcription_client,
        retry_delays_s: Sequence[float] = TRANSCRIPTION_RETRY_DELAYS_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self.breaker = breaker
        self._client_factory = client_factory
        self._retry_delays_s = tuple(retry_delays_s)
        self._sleep = sleep

        self._client = openai_client
        if self._client is None and config.openai_api_key:
            self._client = client_factory(config, config.openai_api_key)

        self.requests = 0
        self.short_circuited = 0

    @property
    def has_credentials(self) -> bool:
        return self._client is not None

    def set_api_key(self, api_key: str) -> None:
        self._client = self._client_factory(self._config, api_key) if api_key else None
        log_event({
            "event_type": "TRANSCRIPTION_API_KEY_SET",
            "zone": "worker",
            "configured": self._client is not None,
        })

    async def transcribe(self, chunk: UtteranceChunk, *, speaker: str) -> Optional[TranscriptionResult]:
        """
        Transcribe one chunk.

        Returns None when the circuit is open.

        Raises:
            PermanentNetworkError when the credential is missing or the
            endpoint rejects the request.
            TransientNetworkError when every retry failed.
        """
        if self._client is None:
            raise PermanentNetworkError("no transcription API key configured", code="missing-api-key")

        wav = encode_wav(chunk.pcm, sample_rate_hz=chunk.sample_rate_hz)
        prompt = TRANSCRIPTION_PROMPT_TEMPLATE.format(speaker=speaker)
        started = time.monotonic()
        delays = (*self._retry_delays_s, None)

        for attempt, delay in enumerate(delays, start=1):
            try:
                with timed(
                    "transcription_request",
                    zone="worker",
                    user_id=chunk.user_id,
                    details={"sequence": chunk.sequence, "attempt": attempt},
                ) as request_timer:
                    text = await self.breaker.execute(lambda: self._request(wav, prompt))
            except CircuitOpenError:
                self.short_circuited += 1
                log_event({
                    "event_type": "TRANSCRIPTION_SHORT_CIRCUITED",
                    "zone": "worker",
                    "user_id": chunk.user_id,
                    "sequence": chunk.sequence,
                    "attempt": attempt,
                    "circuit": self.breaker.snapshot(),
                })
                return None
            except TransientNetworkError as e:
                if delay is None:
                    raise
                log_event({
                    "event_type": "TRANSCRIPTION_RETRY",
                    "zone": "worker",
                    "user_id": chunk.user_id,
                    "sequence": chunk.sequence,
                    "attempt": attempt,
                    "delay_s": delay,
                    "error": e.to_payload(),
                })
                await self._sleep(delay)
                continue

            return TranscriptionResult(
                text=text,
                attempts=attempt,
                latency_s=request_timer.duration_s,
                total_time_s=time.monotonic() - started,
            )

        # Unreachable: the last attempt either returns or raises
        raise TransientNetworkError("transcription retries exhausted", code="retries-exhausted")

    async def _request(self, wav: bytes, prompt: str) -> str:
        self.requests += 1
        assert self._client is not None
        try:
            response = await self._client.audio.transcriptions.create(
                model=self._config.transcription_model,
                file=("chunk.wav", wav, "audio/wav"),
                language=self._config.transcription_language,
                prompt=prompt,
                response_format="json",
                timeout=self._config.transcription_timeout_s,
            )
        except (openai.OpenAIError, asyncio.TimeoutError) as e:
            mapped = classify_error(e)
            if mapped is e:
                raise
            raise mapped from e
        return str(getattr(response, "text", "") or "").strip()
