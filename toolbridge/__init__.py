"""Public package surface for toolbridge."""

from __future__ import annotations

from .bridge import ToolCallBridge, parse_inbound
from .config import BridgeConfig, RouteKind, ToolRoute
from .engine import OpenAIAssistantsEngine, OrchestrationEngine
from .errors import (
    BridgeError,
    CallTimedOut,
    ConnectionNotFound,
    DuplicateCallId,
    EngineUnreachable,
    MalformedMessage,
    RunFailed,
    UnsupportedTool,
)
from .models import (
    InboundEnvelope,
    OutboundCommand,
    RunOutput,
    RunSnapshot,
    RunState,
    RunStatus,
    ToolCall,
    ToolOutput,
)
from .pending import PendingCall, PendingCallTable
from .poller import RunDelegate, StatusPoller
from .registry import Connection, ConnectionRegistry
from .routing import ToolRouter
from .service import BridgeService, ChatStarted

__all__ = [
    "__version__",
    "BridgeConfig",
    "BridgeError",
    "BridgeService",
    "CallTimedOut",
    "ChatStarted",
    "Connection",
    "ConnectionNotFound",
    "ConnectionRegistry",
    "DuplicateCallId",
    "EngineUnreachable",
    "InboundEnvelope",
    "MalformedMessage",
    "OpenAIAssistantsEngine",
    "OrchestrationEngine",
    "OutboundCommand",
    "PendingCall",
    "PendingCallTable",
    "RouteKind",
    "RunDelegate",
    "RunFailed",
    "RunOutput",
    "RunSnapshot",
    "RunState",
    "RunStatus",
    "StatusPoller",
    "ToolCall",
    "ToolCallBridge",
    "ToolOutput",
    "ToolRoute",
    "ToolRouter",
    "UnsupportedTool",
    "parse_inbound",
]

__version__ = "0.1.0"
