"""Tool-call bridge between polled runs and live client connections."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from .config import RouteKind, ToolRoute
from .errors import BridgeError, CallTimedOut, DuplicateCallId, MalformedMessage, UnsupportedTool
from .models import (
    InboundEnvelope,
    NotificationType,
    OutboundCommand,
    RunOutput,
    RunState,
    ToolCall,
    ToolOutput,
)
from .pending import PendingCall, PendingCallTable
from .registry import ConnectionRegistry
from .routing import ToolRouter

logger = logging.getLogger("toolbridge.bridge")

UnsolicitedHandler = Callable[[str, Any], Awaitable[Any] | Any]

INTERNAL_ERROR_REPLY = {"event": "error", "data": "Internal server error"}


def _error_output(call: ToolCall, error: BridgeError) -> ToolOutput:
    return ToolOutput(call_id=call.call_id, error=error.message, code=error.code)


def parse_inbound(message: str | bytes | Mapping[str, Any]) -> InboundEnvelope:
    """Parse a raw client frame, raising :class:`MalformedMessage` on any defect."""

    if isinstance(message, bytes | bytearray):
        try:
            message = message.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedMessage("Frame is not valid UTF-8") from exc
    if isinstance(message, str):
        try:
            message = json.loads(message)
        except json.JSONDecodeError as exc:
            raise MalformedMessage(f"Frame is not valid JSON: {exc.msg}") from exc
    if not isinstance(message, Mapping):
        raise MalformedMessage("Frame must be a JSON object")
    try:
        envelope = InboundEnvelope.model_validate(dict(message))
    except ValidationError as exc:
        raise MalformedMessage(f"Frame does not match the envelope: {exc.error_count()} error(s)") from exc
    if envelope.tool_call_id is None and not envelope.event:
        raise MalformedMessage("Frame carries neither 'event' nor 'tool_call_id'")
    return envelope


class ToolCallBridge:
    """Dispatch tool calls to client sessions and route what comes back.

    Also serves as the :class:`~toolbridge.poller.RunDelegate` for the status
    poller: required actions become :meth:`dispatch` batches, completions and
    failures become session notifications.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        pending: PendingCallTable,
        *,
        router: ToolRouter | None = None,
        call_timeout_s: float = 180.0,
        notify_on_timeout: bool = True,
    ) -> None:
        if call_timeout_s <= 0:
            raise ValueError("call_timeout_s must be positive")
        self._registry = registry
        self._pending = pending
        self._router = router or ToolRouter()
        self._call_timeout_s = call_timeout_s
        self._notify_on_timeout = notify_on_timeout
        self._handlers: dict[str, UnsolicitedHandler] = {}

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def pending(self) -> PendingCallTable:
        return self._pending

    @property
    def router(self) -> ToolRouter:
        return self._router

    def register_unsolicited_handler(self, event_name: str, handler: UnsolicitedHandler) -> None:
        if event_name in self._handlers:
            logger.info("unsolicited_handler_replaced", extra={"event": event_name})
        self._handlers[event_name] = handler

    async def notify_session_result(self, session_id: str, payload: Mapping[str, Any]) -> bool:
        return await self._registry.send(session_id, payload)

    async def dispatch(
        self,
        session_id: str,
        calls: Iterable[ToolCall],
        *,
        run_id: str | None = None,
        timeout_s: float | None = None,
    ) -> list[ToolOutput]:
        """Run a batch of tool calls concurrently and collect one output per call.

        Client-routed calls are registered before any command goes out, so a
        duplicate id aborts the batch before the client sees anything. Each
        call is bounded by its own deadline; timeouts and handler errors are
        reported in that call's output rather than failing the batch.

        Deadline precedence: an explicit ``timeout_s`` for this batch, then
        the route's ``timeout_s``, then the bridge default.
        """

        if timeout_s is not None and timeout_s <= 0:
            raise ValueError("timeout_s must be positive")

        plan: list[tuple[ToolCall, ToolRoute | None, float, PendingCall | None]] = []
        registered: list[PendingCall] = []
        seen: set[str] = set()
        try:
            for call in calls:
                if call.call_id in seen:
                    raise DuplicateCallId(call.call_id)
                seen.add(call.call_id)
                route = self._router.resolve(call.name)
                deadline = self._call_deadline(route, timeout_s)
                entry = None
                if route is not None and route.kind == RouteKind.CLIENT:
                    entry = self._pending.register(
                        call.call_id,
                        deadline,
                        session_id=session_id,
                        run_id=run_id,
                    )
                    registered.append(entry)
                plan.append((call, route, deadline, entry))
        except BaseException as exc:
            # Nothing was sent yet; no registered entry may outlive the batch.
            for entry in registered:
                self._pending.cancel(entry.call_id)
            if isinstance(exc, DuplicateCallId):
                logger.error(
                    "dispatch_duplicate_call_id",
                    extra={"session_id": session_id, "run_id": run_id, "call_id": exc.call_id},
                )
            raise

        logger.info(
            "dispatch_started",
            extra={"session_id": session_id, "run_id": run_id, "count": len(plan)},
        )
        try:
            outputs = await asyncio.gather(
                *(
                    self._execute_client(session_id, call, route, entry)
                    if entry is not None
                    else self._execute(session_id, call, route, deadline)
                    for call, route, deadline, entry in plan
                )
            )
        finally:
            # Settled entries are already gone; this only drops leftovers when
            # the batch itself is cancelled.
            for entry in registered:
                self._pending.cancel(entry.call_id)
        logger.info(
            "dispatch_finished",
            extra={
                "session_id": session_id,
                "run_id": run_id,
                "count": len(outputs),
                "failed": len([output for output in outputs if not output.ok]),
            },
        )
        return list(outputs)

    def _call_deadline(self, route: ToolRoute | None, timeout_s: float | None) -> float:
        if timeout_s is not None:
            return timeout_s
        if route is not None and route.timeout_s is not None:
            return route.timeout_s
        return self._call_timeout_s

    async def _execute(
        self,
        session_id: str,
        call: ToolCall,
        route: ToolRoute | None,
        deadline: float,
    ) -> ToolOutput:
        """Run a call that has no pending entry: unrouted, local or notify."""

        if route is None:
            logger.warning("tool_unrouted", extra={"session_id": session_id, "tool": call.name})
            return _error_output(call, UnsupportedTool(call.name))
        command_name = route.command_name(call.name)
        if route.kind == RouteKind.LOCAL:
            return await self._execute_local(call, command_name, deadline)
        sent = await self._registry.send(session_id, OutboundCommand.for_call(command_name, call))
        return ToolOutput(call_id=call.call_id, output={"status": "sent" if sent else "dropped"})

    async def _execute_client(
        self,
        session_id: str,
        call: ToolCall,
        route: ToolRoute,
        entry: PendingCall,
    ) -> ToolOutput:
        command_name = route.command_name(call.name)
        sent = await self._registry.send(session_id, OutboundCommand.for_call(command_name, call))
        if not sent:
            logger.info(
                "command_not_delivered",
                extra={"session_id": session_id, "call_id": call.call_id, "cmd": command_name},
            )
        try:
            result = await entry.wait()
        except CallTimedOut as exc:
            if self._notify_on_timeout:
                await self._registry.send(
                    session_id,
                    {
                        "type": NotificationType.TOOL_CALL_TIMEOUT.value,
                        "tool_call_id": call.call_id,
                        "cmd": command_name,
                    },
                )
            return _error_output(call, exc)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if entry.future.cancelled() and task is not None and not task.cancelling():
                # Entry cancelled from outside while this batch keeps running.
                return ToolOutput(call_id=call.call_id, error="Tool call was cancelled.", code="call_cancelled")
            raise
        if isinstance(result, Mapping) and result.get("error") is not None:
            return ToolOutput(call_id=call.call_id, error=str(result["error"]), code="client_error")
        return ToolOutput(call_id=call.call_id, output=result)

    async def _execute_local(self, call: ToolCall, command_name: str, timeout: float) -> ToolOutput:
        handler = self._router.local_handler(command_name)
        if handler is None:
            logger.warning("local_tool_missing", extra={"tool": call.name, "cmd": command_name})
            return _error_output(call, UnsupportedTool(call.name))
        try:
            async with asyncio.timeout(timeout):
                result = await handler(call)
        except TimeoutError:
            return _error_output(call, CallTimedOut(call.call_id, timeout))
        except BridgeError as exc:
            return _error_output(call, exc)
        except Exception as exc:
            logger.exception("local_tool_failed", extra={"tool": call.name, "call_id": call.call_id})
            return ToolOutput(call_id=call.call_id, error=str(exc) or exc.__class__.__name__, code="tool_error")
        return ToolOutput(call_id=call.call_id, output=result)

    async def on_inbound_message(self, session_id: str, message: str | bytes | Mapping[str, Any]) -> Any:
        """Route one client frame; return the reply to send back, if any."""

        try:
            envelope = parse_inbound(message)
        except MalformedMessage as exc:
            logger.warning("inbound_malformed", extra={"session_id": session_id, "error": exc.message})
            return None

        if envelope.tool_call_id is not None:
            fulfilled = self._pending.fulfill(
                envelope.tool_call_id,
                envelope.result_payload(),
                session_id=session_id,
            )
            if not fulfilled:
                logger.info(
                    "inbound_response_dropped",
                    extra={"session_id": session_id, "call_id": envelope.tool_call_id},
                )
            return None

        event_name = envelope.event or ""
        handler = self._handlers.get(event_name)
        if handler is None:
            logger.warning("inbound_event_unhandled", extra={"session_id": session_id, "event": event_name})
            return None
        try:
            reply = handler(session_id, envelope.data)
            if inspect.isawaitable(reply):
                reply = await reply
        except Exception:
            logger.exception("inbound_event_failed", extra={"session_id": session_id, "event": event_name})
            return dict(INTERNAL_ERROR_REPLY)
        return reply

    async def run_completed(self, run: RunState, output: RunOutput | None) -> None:
        if output is None:
            logger.info("run_completed_without_output", extra={"run_id": run.run_id})
            return
        await self.notify_session_result(run.session_id, output.to_notification())

    async def run_requires_action(self, run: RunState, calls: list[ToolCall]) -> list[ToolOutput]:
        return await self.dispatch(run.session_id, calls, run_id=run.run_id)

    async def run_failed(self, run: RunState, error: BridgeError) -> None:
        self._pending.cancel_run(run.run_id)
        await self.notify_session_result(
            run.session_id,
            {
                "type": NotificationType.RUN_FAILED.value,
                "runId": run.run_id,
                "code": error.code,
                "message": "The assistant run failed.",
            },
        )

    def run_abandoned(self, run: RunState) -> None:
        self._pending.cancel_run(run.run_id)


__all__ = ["INTERNAL_ERROR_REPLY", "ToolCallBridge", "UnsolicitedHandler", "parse_inbound"]
