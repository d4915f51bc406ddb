"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (transcription client, session registry)
- Register routes
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import AppConfig
from observability import logger

from server.routes import register_routes
from worker.transcription_client import build_transcription_client


def create_app(config: Optional[AppConfig] = None, *, openai_client: Optional[Any] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with different configurations
    - Environment-specific setup
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()
    logger.set_enabled(config.enable_json_logs)

    app = FastAPI(title="VTF Transcriber API")

    app.state.config = config

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # the page relay connects from the host page origin
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # One transcription client per process; without a key each session
    # waits for SET_API_KEY
    if openai_client is None and config.openai_api_key:
        openai_client = build_transcription_client(config, config.openai_api_key)
    app.state.openai_client = openai_client

    # session_id -> ExtensionSession
    app.state.sessions = {}

    # Routes
    register_routes(app)

    return app
