"""Run, tool-call and wire models for the tool-call bridge."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
        RunStatus.EXPIRED,
        RunStatus.INCOMPLETE,
    }
)
ACTIVE_STATUSES = frozenset({RunStatus.QUEUED, RunStatus.IN_PROGRESS, RunStatus.REQUIRES_ACTION})


class NotificationType(str, Enum):
    SESSION = "SESSION"
    ASSISTANT_RESPONSE = "ASSISTANT_RESPONSE"
    ASSISTANT_IMAGE = "ASSISTANT_IMAGE"
    RUN_FAILED = "RUN_FAILED"
    TOOL_CALL_TIMEOUT = "TOOL_CALL_TIMEOUT"


class ToolCall(BaseModel):
    call_id: str = Field(min_length=1)
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolOutput(BaseModel):
    call_id: str
    output: Any | None = None
    error: str | None = None
    code: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_submission(self) -> dict[str, str]:
        """Render the entry the engine expects in a tool-output submission."""

        if self.error is not None:
            body: Any = {"error": self.error, "code": self.code}
        else:
            body = self.output
        return {
            "tool_call_id": self.call_id,
            "output": json.dumps(body, ensure_ascii=False, default=str),
        }


class OutboundCommand(BaseModel):
    """Command frame sent to a client connection."""

    cmd: str
    type: str = "command"
    tool_call_id: str

    model_config = ConfigDict(extra="allow")

    @classmethod
    def for_call(cls, cmd: str, call: ToolCall) -> OutboundCommand:
        args = dict(call.arguments)
        command_type = args.pop("type", None) or "command"
        args.pop("cmd", None)
        args.pop("tool_call_id", None)
        return cls(cmd=cmd, type=str(command_type), tool_call_id=call.call_id, **args)


class InboundEnvelope(BaseModel):
    """Frame received from a client connection.

    Either an unsolicited notification routed by ``event`` or the answer to a
    pending tool call identified by ``tool_call_id``.
    """

    event: str | None = None
    data: Any | None = None
    tool_call_id: str | None = None

    model_config = ConfigDict(extra="allow")

    @field_validator("tool_call_id")
    @classmethod
    def _non_empty_call_id(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("tool_call_id must be non-empty")
        return value

    def result_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"tool_call_id"}, exclude_none=True)


class RunSnapshot(BaseModel):
    run_id: str
    thread_id: str
    status: RunStatus
    required_tool_calls: list[ToolCall] = Field(default_factory=list)
    last_error: str | None = None


class RunOutput(BaseModel):
    kind: Literal["text", "image"]
    text: str | None = None
    file_id: str | None = None

    def to_notification(self) -> dict[str, Any]:
        if self.kind == "image":
            return {"type": NotificationType.ASSISTANT_IMAGE.value, "fileId": self.file_id}
        return {"type": NotificationType.ASSISTANT_RESPONSE.value, "message": self.text}


@dataclass(slots=True)
class RunState:
    run_id: str
    session_id: str
    status: RunStatus = RunStatus.QUEUED
    agent_id: str | None = None
    polling: bool = False
    action_cycles: int = 0
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    @property
    def thread_id(self) -> str:
        return self.session_id

    def update_status(self, status: RunStatus) -> None:
        self.status = status
        self.updated_at = _utc_now()


__all__ = [
    "ACTIVE_STATUSES",
    "InboundEnvelope",
    "NotificationType",
    "OutboundCommand",
    "RunOutput",
    "RunSnapshot",
    "RunState",
    "RunStatus",
    "TERMINAL_STATUSES",
    "ToolCall",
    "ToolOutput",
]
