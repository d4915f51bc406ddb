"""
Extension session: the four zones of one host page, wired together.

Responsibilities:
- Own the MessageBus and one endpoint per zone, with the trust rules
  (page <- bridge; bridge <- page, worker, ui; worker <- bridge; ui <- bridge)
- Construct PageAgent, Bridge, Worker and UIClient
- Start in order (bus, readiness, worker ticks, bridge initialization)
- Shut down in order (bridge, page, drain bus, worker flush, bus stop)

Non-responsibilities:
- Transport (server/routes.py feeds the host page model)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from bridge.bridge import Bridge, BridgeTimings
from bridge.reconnection import ReconnectionPolicy
from config import AppConfig
from observability.logger import log_event
from page.agent import PageAgent, PageTimings
from page.audio_context import SharedAudioContext
from page.capture import ContextFactory
from page.dom import HostPage
from protocol.bus import MessageBus
from protocol.messages import Zone
from ui.client import UIClient
from worker.adaptive_buffer import BufferConfig
from worker.circuit_breaker import CircuitBreakerConfig
from worker.transcription_client import TranscriptionClient
from worker.worker import Worker


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _new_session_id() -> str:
    return f"sess_{uuid4().hex[:12]}"


class ExtensionSession:
    """
    One session == one host page.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        page: Optional[HostPage] = None,
        openai_client: Optional[Any] = None,
        transcription: Optional[TranscriptionClient] = None,
        context_factory: ContextFactory = SharedAudioContext,
        page_timings: PageTimings = PageTimings(),
        bridge_timings: BridgeTimings = BridgeTimings(),
        reconnect_policy: ReconnectionPolicy = ReconnectionPolicy(),
        reconnect_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        buffer_config: BufferConfig = BufferConfig(),
        breaker_config: CircuitBreakerConfig = CircuitBreakerConfig(),
        worker_tick_s: Optional[float] = None,
        bus: Optional[MessageBus] = None,
    ) -> None:
        self.session_id = _new_session_id()
        self.config = config
        self.created_at_ms = _now_ms()
        self.page = page or HostPage()

        self.bus = bus or MessageBus()
        page_ep = self.bus.endpoint(Zone.PAGE, accepts={Zone.BRIDGE})
        bridge_ep = self.bus.endpoint(Zone.BRIDGE, accepts={Zone.PAGE, Zone.WORKER, Zone.UI})
        worker_ep = self.bus.endpoint(Zone.WORKER, accepts={Zone.BRIDGE})
        ui_ep = self.bus.endpoint(Zone.UI, accepts={Zone.BRIDGE})

        self.page_agent = PageAgent(
            endpoint=page_ep,
            page=self.page,
            config=config,
            context_factory=context_factory,
            timings=page_timings,
        )
        self.bridge = Bridge(
            endpoint=bridge_ep,
            config=config,
            timings=bridge_timings,
            reconnect_policy=reconnect_policy,
            reconnect_sleep=reconnect_sleep,
        )
        worker_kwargs: dict[str, Any] = {}
        if worker_tick_s is not None:
            worker_kwargs["tick_interval_s"] = worker_tick_s
        self.worker = Worker(
            endpoint=worker_ep,
            config=config,
            openai_client=openai_client,
            transcription=transcription,
            buffer_config=buffer_config,
            breaker_config=breaker_config,
            **worker_kwargs,
        )
        self.ui = UIClient(endpoint=ui_ep)

        self._started = False
        self._closed = False

    async def start(self) -> asyncio.Task[bool]:
        """
        Start every zone and kick off Bridge initialization.

        Returns the initialization task (resolves True when READY).
        """
        if self._started:
            raise RuntimeError("session already started")
        self._started = True

        self.bus.start()
        for zone in (Zone.PAGE, Zone.WORKER, Zone.UI, Zone.BRIDGE):
            await self.bus.get(zone).mark_ready()
        self.worker.start()

        log_event({
            "event_type": "SESSION_STARTED",
            "zone": "bridge",
            "session_id": self.session_id,
            "env": self.config.env,
        })
        return self.bridge.start()

    async def settle(self) -> None:
        await self.bus.settle()

    async def shutdown(self, *, reason: str = "shutdown") -> None:
        if self._closed:
            return
        self._closed = True

        await self.bridge.shutdown()
        await self.page_agent.shutdown()
        await self.bus.settle()
        await self.worker.shutdown()
        await self.bus.settle()
        await self.bus.stop()

        log_event({
            "event_type": "SESSION_ENDED",
            "zone": "bridge",
            "session_id": self.session_id,
            "reason": reason,
            "duration_ms": _now_ms() - self.created_at_ms,
        })

    @property
    def closed(self) -> bool:
        return self._closed

    def status(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "created_at_ms": self.created_at_ms,
            "closed": self._closed,
            "bridge": self.bridge.status(),
            "page": self.page_agent.state(),
            "worker": self.worker.status(),
            "bus": self.bus.snapshot(),
        }
