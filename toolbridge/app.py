"""FastAPI surface: chat entry point and the client WebSocket gateway."""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import BridgeError
from .models import NotificationType
from .registry import encode_payload
from .service import BridgeService

logger = logging.getLogger("toolbridge.app")


class ChatRequest(BaseModel):
    """JSON body accepted by ``POST /api/chat``."""

    user_message: str | None = Field(default=None, alias="userMessage")
    thread_id: str | None = None
    assistant_id: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("user_message", "thread_id", "assistant_id", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value


class WebSocketConnection:
    """Adapts a Starlette WebSocket to the registry's connection protocol."""

    __slots__ = ("_websocket",)

    def __init__(self, websocket: Any) -> None:
        self._websocket = websocket

    @property
    def is_open(self) -> bool:
        from fastapi.websockets import WebSocketState

        return (
            self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> None:
        await self._websocket.send_text(data)

    async def close(self, code: int = 1000) -> None:
        if self.is_open:
            await self._websocket.close(code=code)


def create_bridge_app(service: BridgeService, *, include_docs: bool = True):
    """Create a FastAPI application exposing ``service``."""

    try:
        from fastapi import FastAPI, Request, WebSocket
        from fastapi.responses import JSONResponse
    except ModuleNotFoundError as exc:  # pragma: no cover - optional extra
        raise RuntimeError("FastAPI is required for the bridge server. Install toolbridge[server].") from exc

    docs_url = "/docs" if include_docs else None
    openapi_url = "/openapi.json" if include_docs else None

    @asynccontextmanager
    async def _lifespan(_app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(title="toolbridge", docs_url=docs_url, openapi_url=openapi_url, lifespan=_lifespan)
    app.state.bridge_service = service

    @app.exception_handler(BridgeError)
    async def _handle_bridge_error(request: Request, exc: BridgeError):
        logger.error(
            "request_failed",
            extra={"method": request.method, "path": request.url.path, "code": exc.code, "error": exc.message},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "statusCode": exc.status_code,
                "timestamp": datetime.now(UTC).isoformat(),
                "path": request.url.path,
                "code": exc.code,
                "message": exc.message,
            },
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "sessions": len(service.registry),
            "pendingCalls": len(service.pending),
            "activeRuns": len(service.poller.active_runs()),
        }

    @app.post("/api/chat")
    async def chat(payload: ChatRequest) -> dict[str, Any]:
        logger.info(
            "chat_request",
            extra={"thread_id": payload.thread_id, "assistant_id": payload.assistant_id},
        )
        started = await service.start_chat(
            payload.user_message,
            thread_id=payload.thread_id,
            agent_id=payload.assistant_id,
        )
        return started.to_payload()

    @app.websocket(service.config.socket_path)
    async def socket(websocket: WebSocket) -> None:
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        session_id = (websocket.query_params.get("threadId") or "").strip()
        generated = not session_id
        if generated:
            session_id = uuid.uuid4().hex
        await service.connect(session_id, connection)
        try:
            if generated:
                await connection.send_text(
                    encode_payload({"type": NotificationType.SESSION.value, "sessionId": session_id})
                )
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                frame = message.get("text")
                if frame is None:
                    frame = message.get("bytes")
                if frame is None:
                    continue
                reply = await service.handle_message(session_id, frame)
                if reply is not None and connection.is_open:
                    await connection.send_text(encode_payload(reply))
        finally:
            await service.disconnect(connection)

    return app


__all__ = ["ChatRequest", "WebSocketConnection", "create_bridge_app"]
