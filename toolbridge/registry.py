"""Session-to-connection registry."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from pydantic import BaseModel

from .errors import ConnectionNotFound

logger = logging.getLogger("toolbridge.registry")


class Connection(Protocol):
    """Minimal surface of a live bidirectional channel."""

    @property
    def is_open(self) -> bool: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


def encode_payload(payload: Any) -> str:
    if isinstance(payload, BaseModel):
        data: Any = payload.model_dump(mode="json", exclude_none=True)
    elif isinstance(payload, Mapping):
        data = dict(payload)
    else:
        data = payload
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)


class ConnectionRegistry:
    """Maps a session id to exactly one live connection."""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._connections

    async def register(self, session_id: str, connection: Connection) -> Connection | None:
        """Install ``connection`` for ``session_id`` and return the one it replaced.

        The replaced connection is left open; closing it is the caller's job.
        """

        async with self._lock:
            replaced = self._connections.get(session_id)
            self._connections[session_id] = connection
        if replaced is not None and replaced is not connection:
            logger.info("connection_replaced", extra={"session_id": session_id})
            return replaced
        logger.info("connection_registered", extra={"session_id": session_id})
        return None

    async def unregister(self, connection: Connection) -> str | None:
        async with self._lock:
            for session_id, candidate in self._connections.items():
                if candidate is connection:
                    del self._connections[session_id]
                    break
            else:
                return None
        logger.info("connection_unregistered", extra={"session_id": session_id})
        return session_id

    async def lookup(self, session_id: str) -> Connection | None:
        async with self._lock:
            return self._connections.get(session_id)

    async def sessions(self) -> list[str]:
        async with self._lock:
            return list(self._connections)

    async def send(
        self,
        session_id: str,
        payload: BaseModel | Mapping[str, Any],
        *,
        strict: bool = False,
    ) -> bool:
        """Send ``payload`` to the session's connection.

        Best-effort: a missing or closed connection drops the frame and returns
        ``False``. Only ``strict=True`` turns that case into
        :class:`ConnectionNotFound`. Transport errors are always swallowed.
        """

        connection = await self.lookup(session_id)
        if connection is None or not connection.is_open:
            if strict:
                raise ConnectionNotFound(session_id)
            logger.debug("send_dropped", extra={"session_id": session_id, "reason": "no_open_connection"})
            return False
        try:
            text = encode_payload(payload)
        except (TypeError, ValueError) as exc:
            logger.warning("send_encode_failed", extra={"session_id": session_id, "error": str(exc)})
            return False
        try:
            await connection.send_text(text)
        except Exception as exc:
            logger.warning(
                "send_failed",
                extra={"session_id": session_id, "error": str(exc), "error_type": exc.__class__.__name__},
            )
            return False
        logger.debug("send_ok", extra={"session_id": session_id, "bytes": len(text)})
        return True

    async def close_all(self, code: int = 1001) -> None:
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            try:
                await connection.close(code)
            except Exception as exc:
                logger.debug("connection_close_failed", extra={"error": str(exc)})


__all__ = ["Connection", "ConnectionRegistry", "encode_payload"]
