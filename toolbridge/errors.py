"""Error taxonomy for the tool-call bridge."""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for bridge failures.

    ``code`` is a stable machine-readable identifier; it is what ends up in
    tool outputs and session notifications.
    """

    code = "bridge_error"
    status_code = 400

    def __init__(self, message: str, *, extra: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.extra:
            payload.update(self.extra)
        return payload


class ConnectionNotFound(BridgeError):
    code = "connection_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"No open connection for session '{session_id}'.",
            extra={"session_id": session_id},
        )
        self.session_id = session_id


class DuplicateCallId(BridgeError):
    code = "duplicate_call_id"

    def __init__(self, call_id: str) -> None:
        super().__init__(
            f"Tool call '{call_id}' is already pending.",
            extra={"call_id": call_id},
        )
        self.call_id = call_id


class CallTimedOut(BridgeError):
    code = "call_timed_out"

    def __init__(self, call_id: str, timeout_s: float) -> None:
        super().__init__(
            f"Tool call '{call_id}' timed out after {timeout_s:g}s.",
            extra={"call_id": call_id, "timeout_s": timeout_s},
        )
        self.call_id = call_id
        self.timeout_s = timeout_s


class MalformedMessage(BridgeError):
    code = "malformed_message"


class UnsupportedTool(BridgeError):
    code = "unsupported_tool"

    def __init__(self, name: str) -> None:
        super().__init__(f"No route handles tool '{name}'.", extra={"tool": name})
        self.name = name


class EngineUnreachable(BridgeError):
    code = "engine_unreachable"
    status_code = 502


class RunFailed(BridgeError):
    """The engine reported a terminal non-success status for a run."""

    code = "run_failed"


__all__ = [
    "BridgeError",
    "CallTimedOut",
    "ConnectionNotFound",
    "DuplicateCallId",
    "EngineUnreachable",
    "MalformedMessage",
    "RunFailed",
    "UnsupportedTool",
]
