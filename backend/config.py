"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No capture or transcription logic
- No behavioral constants (see constants.py)
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from constants import (
    SINK_ID_PREFIX_DEFAULT,
    TRANSCRIPTION_LANGUAGE_DEFAULT,
    TRANSCRIPTION_MODEL_DEFAULT,
    TRANSCRIPTION_REQUEST_TIMEOUT_S,
)


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the server and every ExtensionSession it creates.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str = "dev"
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Transcription endpoint
    # ------------------------------------------------------------------

    openai_api_key: str | None = None
    transcription_base_url: str | None = None
    transcription_model: str = TRANSCRIPTION_MODEL_DEFAULT
    transcription_language: str = TRANSCRIPTION_LANGUAGE_DEFAULT
    transcription_timeout_s: float = TRANSCRIPTION_REQUEST_TIMEOUT_S

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    sink_id_prefix: str = SINK_ID_PREFIX_DEFAULT
    auto_start_capture: bool = True

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool = True

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Every variable is optional; a missing OPENAI_API_KEY only means
        the worker waits for SET_API_KEY before transcribing.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            openai_api_key=os.environ.get("OPENAI_API_KEY"),
            transcription_base_url=os.environ.get("TRANSCRIPTION_BASE_URL"),
            transcription_model=os.environ.get(
                "TRANSCRIPTION_MODEL", TRANSCRIPTION_MODEL_DEFAULT
            ),
            transcription_language=os.environ.get(
                "TRANSCRIPTION_LANGUAGE", TRANSCRIPTION_LANGUAGE_DEFAULT
            ),
            transcription_timeout_s=float(
                os.environ.get(
                    "TRANSCRIPTION_TIMEOUT_S", str(TRANSCRIPTION_REQUEST_TIMEOUT_S)
                )
            ),

            sink_id_prefix=os.environ.get("SINK_ID_PREFIX", SINK_ID_PREFIX_DEFAULT),
            auto_start_capture=os.environ.get("AUTO_START_CAPTURE", "1") == "1",

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",
        )
