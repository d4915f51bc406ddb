"""
Route registration for the transcriber API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- /ws/page: one connection == one host page == one ExtensionSession;
  JSON frames and binary audio are applied to the session's page model
- /ws/ui/{session_id}: Bridge events out, control commands in
- Pull dependencies from app.state
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from observability.logger import log_event
from page.dom import HostPage
from page.relay import PageRelay, RelayError
from protocol.binary import BinaryProtocolError
from protocol.messages import Message, MessageType
from session.extension import ExtensionSession
from ui.client import COMMAND_TYPES, UIClient


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""
    @app.get("/health")
    async def health() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        return {"status": "ok", "sessions": len(app.state.sessions)}

    @app.get("/sessions/{session_id}/status")
    async def session_status(session_id: str) -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        session: ExtensionSession | None = app.state.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="unknown session")
        return session.status()

    @app.websocket("/ws/page")
    async def page_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        page = HostPage()
        relay = PageRelay(page=page)
        session = ExtensionSession(
            config=app.state.config,
            page=page,
            openai_client=app.state.openai_client,
        )
        app.state.sessions[session.session_id] = session

        reason = "client_disconnect"
        try:
            await session.start()
            await ws.send_text(json.dumps({"type": "session", "session_id": session.session_id}))

            while True:
                msg = await ws.receive()
                if msg["type"] == "websocket.disconnect":
                    break

                if msg.get("text") is not None:
                    await ws.send_text(json.dumps(_apply_json(relay, msg["text"])))

                elif msg.get("bytes") is not None:
                    error = _apply_binary(relay, msg["bytes"])
                    if error is not None:
                        await ws.send_text(json.dumps(error))

        except WebSocketDisconnect:
            pass

        except Exception as exc:  # pylint: disable=broad-exception-caught
            reason = "server_error"
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "zone": "page",
                "session_id": session.session_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        finally:
            app.state.sessions.pop(session.session_id, None)
            await session.shutdown(reason=reason)

    @app.websocket("/ws/ui/{session_id}")
    async def ui_endpoint(ws: WebSocket, session_id: str) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        session: ExtensionSession | None = app.state.sessions.get(session_id)
        if session is None:
            await ws.send_text(json.dumps({"type": "error", "message": "unknown session"}))
            await ws.close(code=4404)
            return

        ui = session.ui
        events = ui.subscribe()
        forwarder = asyncio.create_task(_forward_events(ws, events))
        try:
            while True:
                text = await ws.receive_text()
                await ws.send_text(json.dumps(await _run_command(ui, text)))

        except WebSocketDisconnect:
            pass

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "zone": "ui",
                "session_id": session_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        finally:
            ui.unsubscribe(events)
            forwarder.cancel()
            await asyncio.gather(forwarder, return_exceptions=True)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _apply_json(relay: PageRelay, text: str) -> dict[str, Any]:
    try:
        return relay.apply_json(json.loads(text))
    except (json.JSONDecodeError, RelayError) as e:
        log_event({"event_type": "PAGE_RELAY_REJECTED", "zone": "page", "error": str(e)})
        return {"type": "error", "message": str(e)}


def _apply_binary(relay: PageRelay, payload: bytes) -> dict[str, Any] | None:
    try:
        relay.apply_binary(payload)
    except (BinaryProtocolError, RelayError) as e:
        log_event({
            "event_type": "PAGE_RELAY_BINARY_REJECTED",
            "zone": "page",
            "exception": type(e).__name__,
            "error": str(e),
        })
        return {"type": "error", "message": str(e)}
    return None


def _event_json(msg: Message) -> dict[str, Any]:
    return {"type": msg.type.value, "data": msg.data, "timestamp": msg.timestamp}


async def _forward_events(ws: WebSocket, events: asyncio.Queue[Message]) -> None:
    while True:
        msg = await events.get()
        await ws.send_text(json.dumps(_event_json(msg)))


async def _run_command(ui: UIClient, text: str) -> dict[str, Any]:
    """
    Commands arrive as {"type": "<command>", "data": {...}, "id": <any>}.
    """
    try:
        request = json.loads(text)
        if not isinstance(request, dict):
            raise ValueError("command must be an object")
        msg_type = MessageType(request.get("type"))
        if msg_type not in COMMAND_TYPES:
            raise ValueError(f"not a command: {msg_type.value}")
        data = request.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("data must be an object")
    except ValueError as e:
        return {"type": "reply", "id": None, "result": {"ok": False, "error": {
            "kind": "programmer_error",
            "message": str(e),
        }}}

    result = await ui.command(msg_type, data)
    return {"type": "reply", "id": request.get("id"), "result": result}
