"""toolbridge command-line interface."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, replace

import click

from .config import BridgeConfig


@dataclass(slots=True)
class ServeResult:
    host: str
    port: int

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


def run_serve(
    *,
    host: str,
    port: int,
    poll_interval_s: float | None = None,
    call_timeout_s: float | None = None,
    log_level: str = "info",
) -> ServeResult:
    """Build the service from the environment and serve it with uvicorn."""

    import uvicorn

    from .app import create_bridge_app
    from .engine import OpenAIAssistantsEngine
    from .service import BridgeService

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    overrides: dict[str, float] = {}
    if poll_interval_s is not None:
        overrides["poll_interval_s"] = poll_interval_s
    if call_timeout_s is not None:
        overrides["call_timeout_s"] = call_timeout_s
    # replace() re-runs BridgeConfig validation on the overridden values.
    config = replace(BridgeConfig.from_env(), **overrides)
    service = BridgeService(OpenAIAssistantsEngine(), config=config)
    app = create_bridge_app(service)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level=log_level.lower()))
    server.run()
    return ServeResult(host=host, port=port)


@click.group()
@click.version_option(package_name="toolbridge")
def app() -> None:
    """toolbridge CLI - serve the tool-call bridge."""


@app.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Interface to bind.")
@click.option("--port", default=3000, show_default=True, type=int, help="Port to listen on.")
@click.option(
    "--poll-interval",
    type=float,
    default=None,
    help="Seconds between run status checks (overrides TOOLBRIDGE_POLL_INTERVAL_S).",
)
@click.option(
    "--call-timeout",
    type=float,
    default=None,
    help="Seconds to wait for a client tool result (overrides TOOLBRIDGE_CALL_TIMEOUT_S).",
)
@click.option(
    "--log-level",
    default="info",
    show_default=True,
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
)
def serve(
    host: str,
    port: int,
    poll_interval: float | None,
    call_timeout: float | None,
    log_level: str,
) -> None:
    """Serve the chat endpoint and the client WebSocket gateway."""
    try:
        run_serve(
            host=host,
            port=port,
            poll_interval_s=poll_interval,
            call_timeout_s=call_timeout,
            log_level=log_level,
        )
    except (ImportError, ValueError) as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":  # pragma: no cover
    app()
