"""Prefix-based dispatch table deciding how each tool call is executed."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from .config import DEFAULT_ROUTES, RouteKind, ToolRoute
from .models import ToolCall

logger = logging.getLogger("toolbridge.routing")

LocalToolHandler = Callable[[ToolCall], Awaitable[Any]]


class ToolRouter:
    """Resolve tool names to routes; the longest matching prefix wins."""

    def __init__(self, routes: Iterable[ToolRoute] = DEFAULT_ROUTES) -> None:
        self._routes: list[ToolRoute] = []
        self._local: dict[str, LocalToolHandler] = {}
        for route in routes:
            self.add_route(route)

    @property
    def routes(self) -> tuple[ToolRoute, ...]:
        return tuple(self._routes)

    def add_route(self, route: ToolRoute) -> None:
        if any(existing.prefix == route.prefix for existing in self._routes):
            raise ValueError(f"Route prefix {route.prefix!r} already registered")
        self._routes.append(route)
        self._routes.sort(key=lambda item: len(item.prefix), reverse=True)

    def resolve(self, tool_name: str) -> ToolRoute | None:
        for route in self._routes:
            if tool_name.startswith(route.prefix):
                return route
        return None

    def register_local_tool(self, name: str, handler: LocalToolHandler) -> None:
        """Register the handler for a ``local`` route, keyed by command name."""

        if name in self._local:
            raise ValueError(f"Local tool {name!r} already registered")
        self._local[name] = handler
        logger.debug("local_tool_registered", extra={"tool": name})

    def local_handler(self, name: str) -> LocalToolHandler | None:
        return self._local.get(name)


__all__ = ["LocalToolHandler", "RouteKind", "ToolRoute", "ToolRouter"]
