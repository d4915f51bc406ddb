"""
BEHAVIOR-AS-CONSTANTS
---------------------
Single source of truth for every timing, threshold and size the
transcriber depends on.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Other modules MUST import from this file.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Audio Format (PCM16 mono @ 16kHz)
# =============================================================================

AUDIO_SAMPLE_RATE_HZ: Final[int] = 16_000
AUDIO_CHANNELS: Final[int] = 1
AUDIO_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16 (signed 16-bit)

# Render quantum delivered by a source node to the frame processor
AUDIO_QUANTUM_SAMPLES: Final[int] = 128

# Samples accumulated before a PCMFrame is emitted
AUDIO_FRAME_SAMPLES: Final[int] = 4096

# Quanta (and frames) whose peak is below this are treated as silence
CAPTURE_SILENCE_GATE: Final[float] = 0.001

# Teardown flush zero-pads the remainder up to half a frame
CAPTURE_FLUSH_PAD_SAMPLES: Final[int] = AUDIO_FRAME_SAMPLES // 2

CAPTURE_MAX_CONCURRENT: Final[int] = 50


# =============================================================================
# Sink Discovery
# =============================================================================

SINK_ID_PREFIX_DEFAULT: Final[str] = "msRemAudio-"
SINK_CONTAINER_ID: Final[str] = "topRoomDiv"

STREAM_WAIT_POLL_S: Final[float] = 0.05
STREAM_WAIT_MAX_S: Final[float] = 5.0

DISCOVERY_SWEEP_INTERVAL_S: Final[float] = 3.0

# Settle delay between tearing down a swapped stream and re-attaching
STREAM_SWAP_SETTLE_S: Final[float] = 0.1

NAVIGATION_EVENTS: Final[Tuple[str, ...]] = ("history", "hash", "app-ready")

# =============================================================================
# State Mirror & Host Globals
# =============================================================================

STATE_POLL_INTERVAL_S: Final[float] = 0.5

# Scalar changes smaller than this are ignored
STATE_VOLUME_CHANGE_THRESHOLD: Final[float] = 0.05

DEFAULT_VOLUME: Final[float] = 1.0

GLOBALS_PROBE_INTERVAL_S: Final[float] = 0.5
GLOBALS_DISCOVERY_DEADLINE_S: Final[float] = 30.0

# Context slots probed for an application service object
GLOBALS_CONTEXT_ELEMENT_IDS: Final[Tuple[str, ...]] = ("topRoomDiv", "webcam")

HOOKED_HOST_FUNCTIONS: Final[Tuple[str, ...]] = (
    "reconnectAudio",
    "adjustVol",
    "mute",
    "unMute",
)

SESSION_STATE_CLOSED: Final[str] = "closed"

# =============================================================================
# Adaptive Buffer
# =============================================================================

BUFFER_MIN_DURATION_S: Final[float] = 2.0
BUFFER_MAX_DURATION_S: Final[float] = 30.0
BUFFER_TARGET_DURATION_S: Final[float] = 10.0
BUFFER_SILENCE_THRESHOLD: Final[float] = 0.001
BUFFER_SPEECH_END_TIMEOUT_S: Final[float] = 1.5
BUFFER_ADAPTATION_RATE: Final[float] = 0.1

# Peak > factor * threshold also counts as speech
BUFFER_PEAK_SPEECH_FACTOR: Final[float] = 3.0

BUFFER_ADJUST_MOSTLY_SILENT_S: Final[float] = 2.0
BUFFER_ADJUST_HIGH_LATENCY_S: Final[float] = -2.0
BUFFER_ADJUST_LOW_SUCCESS_S: Final[float] = -1.0

BUFFER_MOSTLY_SILENT_RATIO: Final[float] = 0.7
BUFFER_HIGH_LATENCY_S: Final[float] = 2.0
BUFFER_LOW_SUCCESS_RATE: Final[float] = 0.8

METRICS_EMA_ALPHA: Final[float] = 0.2

# Departed speakers whose adapted buffer state is kept for a rejoin
BUFFER_RETAINED_USERS_MAX: Final[int] = 64

# =============================================================================
# Audio Quality
# =============================================================================

QUALITY_CLIPPING_LEVEL: Final[float] = 0.99
QUALITY_MIN_SNR_DB: Final[float] = 10.0
QUALITY_MAX_CLIPPING_RATIO: Final[float] = 0.01
QUALITY_MAX_SILENCE_RATIO: Final[float] = 0.9

# =============================================================================
# Circuit Breaker
# =============================================================================

CIRCUIT_FAILURE_THRESHOLD: Final[int] = 5
CIRCUIT_RESET_TIMEOUT_S: Final[float] = 60.0
CIRCUIT_MONITORING_PERIOD_S: Final[float] = 120.0
CIRCUIT_FAILURE_RATE_THRESHOLD: Final[float] = 0.5
CIRCUIT_MIN_REQUESTS: Final[int] = 10
CIRCUIT_HALF_OPEN_REQUESTS: Final[int] = 2

# =============================================================================
# Reconnection
# =============================================================================

RECONNECT_PROBE_TIMEOUT_S: Final[float] = 2.0
RECONNECT_BASE_DELAY_S: Final[float] = 1.0
RECONNECT_BACKOFF: Final[float] = 2.0
RECONNECT_MAX_DELAY_S: Final[float] = 10.0
RECONNECT_MAX_ATTEMPTS: Final[int] = 10
RECONNECT_RESUME_TIMEOUT_S: Final[float] = 5.0

# Host reconnectAudio hook fires before the host rebuilds its sinks
HOST_RECONNECT_SETTLE_S: Final[float] = 0.1

LIVENESS_PROBE_INTERVAL_S: Final[float] = 15.0

# =============================================================================
# Message Bus
# =============================================================================

BUS_REQUEST_TIMEOUT_S: Final[float] = 2.0
BUS_INBOX_MAX: Final[int] = 1000
BUS_OUTBOUND_QUEUE_MAX: Final[int] = 500

# =============================================================================
# Page Relay Binary Frames
# =============================================================================
# 4B seq_num (u32 LE) + 2B stream id length (u16 LE) + stream id (utf-8)
# + float32 LE samples

RELAY_SEQ_NUM_BYTES: Final[int] = 4
RELAY_STREAM_ID_LEN_BYTES: Final[int] = 2
RELAY_HEADER_BYTES: Final[int] = RELAY_SEQ_NUM_BYTES + RELAY_STREAM_ID_LEN_BYTES
RELAY_SAMPLE_BYTES: Final[int] = 4
RELAY_MAX_STREAM_ID_BYTES: Final[int] = 256
RELAY_MAX_SAMPLES_PER_FRAME: Final[int] = 48_000

SEQ_NUM_START: Final[int] = 1
SEQ_NUM_MAX: Final[int] = 2**32 - 1  # u32 wraparound

# =============================================================================
# Bridge Initialization
# =============================================================================

INIT_SETUP_TIMEOUT_S: Final[float] = 10.0

# UI commands wrap a Bridge -> Page request, so they wait longer than one hop
UI_COMMAND_TIMEOUT_S: Final[float] = 5.0
UI_EVENT_HISTORY_MAX: Final[int] = 500

# =============================================================================
# Transcription
# =============================================================================

TRANSCRIPTION_MODEL_DEFAULT: Final[str] = "whisper-1"
TRANSCRIPTION_LANGUAGE_DEFAULT: Final[str] = "en"
TRANSCRIPTION_REQUEST_TIMEOUT_S: Final[float] = 30.0
TRANSCRIPTION_PROMPT_TEMPLATE: Final[str] = (
    "Speaker: {speaker}. Virtual Trading Floor audio."
)

# Backoff between transient retries; len() is the retry budget
TRANSCRIPTION_RETRY_DELAYS_S: Final[Tuple[float, ...]] = (1.0, 2.0, 4.0, 8.0, 16.0)

TRANSCRIPT_HISTORY_MAX: Final[int] = 1000

# Chunks shorter than this are not worth a request
TRANSCRIPTION_MIN_CHUNK_S: Final[float] = 0.1

# =============================================================================
# Worker
# =============================================================================

# Wall-clock speech-end check for buffers that stopped receiving frames
WORKER_TICK_INTERVAL_S: Final[float] = 0.5
WORKER_DRAIN_TIMEOUT_S: Final[float] = 5.0
