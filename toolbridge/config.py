from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum


class RouteKind(str, Enum):
    CLIENT = "client"  # sent to the session, result awaited
    NOTIFY = "notify"  # sent to the session, fire-and-forget
    LOCAL = "local"  # resolved by an in-process handler


@dataclass(frozen=True, slots=True)
class ToolRoute:
    prefix: str
    kind: RouteKind = RouteKind.CLIENT
    strip_prefix: bool = True
    timeout_s: float | None = None

    def __post_init__(self) -> None:
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError(f"timeout_s for route {self.prefix!r} must be positive")

    def command_name(self, tool_name: str) -> str:
        if self.strip_prefix and self.prefix:
            return tool_name.removeprefix(self.prefix)
        return tool_name


DEFAULT_ROUTES: tuple[ToolRoute, ...] = (ToolRoute("ws_", RouteKind.CLIENT),)


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be a number, got {raw!r}") from exc


@dataclass(slots=True)
class BridgeConfig:
    poll_interval_s: float = 1.0
    call_timeout_s: float = 180.0
    max_action_cycles: int = 25
    default_agent_id: str | None = None
    socket_path: str = "/socket"
    notify_on_timeout: bool = True
    routes: tuple[ToolRoute, ...] = field(default=DEFAULT_ROUTES)

    def __post_init__(self) -> None:
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be positive")
        if self.call_timeout_s <= 0:
            raise ValueError("call_timeout_s must be positive")
        if self.max_action_cycles < 1:
            raise ValueError("max_action_cycles must be at least 1")
        self.routes = tuple(self.routes)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> BridgeConfig:
        env = os.environ if env is None else env
        return cls(
            poll_interval_s=_env_float(env, "TOOLBRIDGE_POLL_INTERVAL_S", 1.0),
            call_timeout_s=_env_float(env, "TOOLBRIDGE_CALL_TIMEOUT_S", 180.0),
            max_action_cycles=int(_env_float(env, "TOOLBRIDGE_MAX_ACTION_CYCLES", 25)),
            default_agent_id=env.get("OPENAI_AGENT_ID") or None,
        )


__all__ = ["BridgeConfig", "DEFAULT_ROUTES", "RouteKind", "ToolRoute"]
