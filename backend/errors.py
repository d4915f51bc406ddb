"""
Error kinds and the exception hierarchy shared by all zones.

Every error that can reach the UI carries a machine-readable kind plus a
human-readable message. Policies per kind:

TRANSIENT_PAGE:
    Sink not ready, stream not yet assigned, host globals not yet exposed.
    Retried by bounded polling; never surfaced as fatal.

TRANSIENT_NETWORK:
    Transcription request failed with a retryable status.
    Recorded in the circuit breaker and retried with backoff.

PERMANENT_NETWORK:
    Credential invalid or payload rejected.
    Surfaced once; the circuit breaker counts it like any failure.

FATAL_SETUP:
    Audio context cannot be created or a zone cannot communicate.
    InitState moves to FAILED, INIT_FAILED is emitted, captures halt.

PROGRAMMER_ERROR:
    An invariant was violated (duplicate capture, invalid transition).
    Logged; the offending operation is dropped; the system keeps running.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Machine-readable error classification."""

    TRANSIENT_PAGE = "transient_page"
    TRANSIENT_NETWORK = "transient_network"
    PERMANENT_NETWORK = "permanent_network"
    FATAL_SETUP = "fatal_setup"
    PROGRAMMER_ERROR = "programmer_error"


class TranscriberError(Exception):
    """Base class for all classified errors."""

    kind: ErrorKind = ErrorKind.PROGRAMMER_ERROR

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def to_payload(self) -> dict[str, Any]:
        """Wire form used in status objects and ERROR_UPDATE events."""
        payload: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.code is not None:
            payload["code"] = self.code
        return payload


class TransientPageError(TranscriberError):
    kind = ErrorKind.TRANSIENT_PAGE


class CaptureError(TransientPageError):
    """A single capture could not be attached (stream without live audio, etc.)."""


class TransientNetworkError(TranscriberError):
    kind = ErrorKind.TRANSIENT_NETWORK


class RequestTimeout(TransientNetworkError):
    """A bus request received no reply within its timeout."""


class PermanentNetworkError(TranscriberError):
    kind = ErrorKind.PERMANENT_NETWORK


class CircuitOpenError(TranscriberError):
    """
    Raised by the circuit breaker when a call is short-circuited and no
    fallback was supplied.
    """

    kind = ErrorKind.TRANSIENT_NETWORK


class FatalSetupError(TranscriberError):
    kind = ErrorKind.FATAL_SETUP


class InvariantViolation(TranscriberError):
    kind = ErrorKind.PROGRAMMER_ERROR


def error_payload(exc: BaseException) -> dict[str, Any]:
    """
    Classify any exception into {kind, message}.

    Unclassified exceptions are reported as programmer errors.
    """
    if isinstance(exc, TranscriberError):
        return exc.to_payload()
    return {
        "kind": ErrorKind.PROGRAMMER_ERROR.value,
        "message": f"{type(exc).__name__}: {exc}",
    }


_KIND_TO_CLASS: dict[ErrorKind, type[TranscriberError]] = {
    ErrorKind.TRANSIENT_PAGE: TransientPageError,
    ErrorKind.TRANSIENT_NETWORK: TransientNetworkError,
    ErrorKind.PERMANENT_NETWORK: PermanentNetworkError,
    ErrorKind.FATAL_SETUP: FatalSetupError,
    ErrorKind.PROGRAMMER_ERROR: InvariantViolation,
}


def error_from_payload(payload: Any) -> TranscriberError:
    """
    Rebuild a classified exception from a {kind, message, code?} payload
    received in a reply. Unknown kinds become programmer errors.
    """
    if not isinstance(payload, dict):
        return InvariantViolation(f"malformed error payload: {payload!r}")
    try:
        kind = ErrorKind(payload.get("kind"))
    except ValueError:
        kind = ErrorKind.PROGRAMMER_ERROR
    code = payload.get("code")
    return _KIND_TO_CLASS[kind](
        str(payload.get("message", "")),
        code=code if isinstance(code, str) else None,
    )
