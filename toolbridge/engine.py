"""Orchestration engine protocol and the OpenAI Assistants implementation."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Awaitable, Sequence
from typing import Any, Protocol, TypeVar

from pydantic import ValidationError

from .errors import EngineUnreachable, MalformedMessage
from .models import RunOutput, RunSnapshot, RunStatus, ToolCall, ToolOutput

logger = logging.getLogger("toolbridge.engine")

T = TypeVar("T")


class OrchestrationEngine(Protocol):
    """Create-and-poll surface of the external run engine."""

    async def create_thread(self) -> str:
        """Create a conversation thread and return its id."""

    async def add_message(self, thread_id: str, content: str) -> None:
        """Append a user message to ``thread_id``."""

    async def create_run(self, thread_id: str, agent_id: str) -> RunSnapshot:
        """Start a run of ``agent_id`` against ``thread_id``."""

    async def get_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        """Return the current status and any required tool calls."""

    async def get_run_output(self, thread_id: str) -> RunOutput | None:
        """Return the latest assistant output on ``thread_id``."""

    async def submit_tool_outputs(self, thread_id: str, run_id: str, outputs: Sequence[ToolOutput]) -> None:
        """Hand collected tool outputs back to the run."""


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise MalformedMessage(f"Tool call arguments are not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedMessage("Tool call arguments must decode to an object")
    return parsed


def _extract_tool_calls(run: Any) -> list[ToolCall]:
    required = getattr(run, "required_action", None)
    if required is None or getattr(required, "type", None) != "submit_tool_outputs":
        return []
    submit = getattr(required, "submit_tool_outputs", None)
    calls: list[ToolCall] = []
    for item in getattr(submit, "tool_calls", None) or []:
        function = getattr(item, "function", None)
        try:
            calls.append(
                ToolCall(
                    call_id=item.id,
                    name=function.name,
                    arguments=_parse_arguments(getattr(function, "arguments", None)),
                )
            )
        except (AttributeError, ValidationError) as exc:
            raise MalformedMessage(f"Unexpected tool call payload: {exc}") from exc
    return calls


def _snapshot_from_run(run: Any, thread_id: str) -> RunSnapshot:
    try:
        status = RunStatus(getattr(run, "status", None))
        run_id = run.id
    except (AttributeError, ValueError) as exc:
        raise MalformedMessage(f"Unexpected run payload: {exc}") from exc
    last_error = getattr(run, "last_error", None)
    detail = getattr(last_error, "message", None) if last_error is not None else None
    return RunSnapshot(
        run_id=run_id,
        thread_id=thread_id,
        status=status,
        required_tool_calls=_extract_tool_calls(run) if status == RunStatus.REQUIRES_ACTION else [],
        last_error=detail,
    )


def _extract_output(message: Any) -> RunOutput | None:
    content = getattr(message, "content", None) or []
    if not content:
        return None
    first = content[0]
    kind = getattr(first, "type", None)
    if kind == "text":
        return RunOutput(kind="text", text=first.text.value)
    if kind == "image_file":
        return RunOutput(kind="image", file_id=first.image_file.file_id)
    logger.warning("unhandled_content_type", extra={"content_type": kind})
    return None


class OpenAIAssistantsEngine:
    """Engine backed by the OpenAI Assistants (threads/runs) API."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
        client: Any | None = None,
    ) -> None:
        if client is not None:
            self._client = client
            return
        try:
            from openai import AsyncOpenAI
        except ImportError as e:
            raise ImportError("OpenAI SDK not installed. Install with: pip install toolbridge[openai]") from e

        api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OpenAI API key required. Set OPENAI_API_KEY environment variable or pass api_key.")
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    @property
    def _threads(self) -> Any:
        return self._client.beta.threads

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except MalformedMessage:
            raise
        except Exception as exc:
            logger.warning(
                "engine_call_failed",
                extra={"operation": operation, "error": str(exc), "error_type": exc.__class__.__name__},
            )
            raise EngineUnreachable(
                f"{operation} failed: {exc}",
                extra={"operation": operation},
            ) from exc

    async def create_thread(self) -> str:
        thread = await self._call("create_thread", self._threads.create())
        thread_id = getattr(thread, "id", None)
        if not thread_id:
            raise MalformedMessage("Failed to create thread: no thread id returned")
        logger.info("thread_created", extra={"thread_id": thread_id})
        return thread_id

    async def add_message(self, thread_id: str, content: str) -> None:
        await self._call(
            "add_message",
            self._threads.messages.create(thread_id, role="user", content=content),
        )

    async def create_run(self, thread_id: str, agent_id: str) -> RunSnapshot:
        run = await self._call(
            "create_run",
            self._threads.runs.create(thread_id=thread_id, assistant_id=agent_id),
        )
        return _snapshot_from_run(run, thread_id)

    async def get_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        run = await self._call("get_run", self._threads.runs.retrieve(run_id, thread_id=thread_id))
        return _snapshot_from_run(run, thread_id)

    async def get_run_output(self, thread_id: str) -> RunOutput | None:
        page = await self._call(
            "get_run_output",
            self._threads.messages.list(thread_id=thread_id, order="desc", limit=1),
        )
        messages = getattr(page, "data", None) or []
        if not messages:
            return None
        return _extract_output(messages[0])

    async def submit_tool_outputs(self, thread_id: str, run_id: str, outputs: Sequence[ToolOutput]) -> None:
        await self._call(
            "submit_tool_outputs",
            self._threads.runs.submit_tool_outputs(
                run_id,
                thread_id=thread_id,
                tool_outputs=[output.to_submission() for output in outputs],
            ),
        )


__all__ = ["OpenAIAssistantsEngine", "OrchestrationEngine"]
