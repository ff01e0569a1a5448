"""Composition root wiring the engine, poller, bridge and registry together."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .bridge import ToolCallBridge
from .config import BridgeConfig
from .engine import OrchestrationEngine
from .errors import BridgeError
from .models import RunStatus
from .pending import PendingCallTable
from .poller import StatusPoller
from .registry import Connection, ConnectionRegistry
from .routing import ToolRouter

logger = logging.getLogger("toolbridge.service")

THREAD_ID_PREFIX = "thread_"


@dataclass(slots=True)
class ChatStarted:
    thread_id: str
    run_id: str
    status: RunStatus

    def to_payload(self) -> dict[str, Any]:
        return {"threadId": self.thread_id, "runId": self.run_id, "status": self.status.value}


class BridgeService:
    """Owns one bridge instance and its collaborators for the process lifetime."""

    def __init__(
        self,
        engine: OrchestrationEngine,
        *,
        config: BridgeConfig | None = None,
        registry: ConnectionRegistry | None = None,
        pending: PendingCallTable | None = None,
        router: ToolRouter | None = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self.engine = engine
        self.registry = registry or ConnectionRegistry()
        self.pending = pending or PendingCallTable()
        self.router = router or ToolRouter(self.config.routes)
        self.bridge = ToolCallBridge(
            self.registry,
            self.pending,
            router=self.router,
            call_timeout_s=self.config.call_timeout_s,
            notify_on_timeout=self.config.notify_on_timeout,
        )
        self.poller = StatusPoller(
            engine,
            self.bridge,
            interval_s=self.config.poll_interval_s,
            max_action_cycles=self.config.max_action_cycles,
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info("bridge_service_started")

    async def stop(self) -> None:
        if not self._started:
            return
        await self.poller.close()
        cancelled = self.pending.cancel_all()
        await self.registry.close_all()
        self._started = False
        logger.info("bridge_service_stopped", extra={"cancelled_calls": cancelled})

    async def start_chat(
        self,
        message: str | None,
        *,
        thread_id: str | None = None,
        agent_id: str | None = None,
    ) -> ChatStarted:
        """Post ``message`` to a thread and start a polled run for it."""

        agent = agent_id or self.config.default_agent_id
        if not agent:
            raise BridgeError("No assistant ID provided and OPENAI_AGENT_ID not set")
        if not message or not message.strip():
            raise BridgeError("Message is required")

        if not thread_id or not thread_id.startswith(THREAD_ID_PREFIX):
            thread_id = await self.engine.create_thread()
        await self.engine.add_message(thread_id, message)
        snapshot = await self.engine.create_run(thread_id, agent)
        logger.info(
            "run_created",
            extra={"thread_id": thread_id, "run_id": snapshot.run_id, "status": snapshot.status.value},
        )
        if snapshot.status.is_active:
            self.poller.start_polling(snapshot.run_id, thread_id, agent_id=agent)
        return ChatStarted(thread_id=thread_id, run_id=snapshot.run_id, status=snapshot.status)

    async def connect(self, session_id: str, connection: Connection) -> None:
        previous = await self.registry.register(session_id, connection)
        if previous is not None:
            try:
                await previous.close(1000)
            except Exception as exc:
                logger.debug("previous_connection_close_failed", extra={"session_id": session_id, "error": str(exc)})

    async def disconnect(self, connection: Connection) -> str | None:
        return await self.registry.unregister(connection)

    async def handle_message(self, session_id: str, message: str | bytes | Mapping[str, Any]) -> Any:
        return await self.bridge.on_inbound_message(session_id, message)


__all__ = ["BridgeService", "ChatStarted", "THREAD_ID_PREFIX"]
