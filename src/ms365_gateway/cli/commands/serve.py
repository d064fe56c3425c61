"""Serve command for ms365-gateway CLI.

Runs the gateway under uvicorn.
"""

from __future__ import annotations

__all__ = ["serve"]

import sys
from pathlib import Path

import click
import uvicorn

from ms365_gateway import __version__
from ms365_gateway.exceptions import StorageError

from ..styling import style_dim, style_error
from ._config import load_config_or_exit


@click.command()
@click.option("--host", default=None, help="Bind address (overrides HOST)")
@click.option("--port", type=click.IntRange(1, 65535), default=None, help="Port (overrides PORT)")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file to layer environment values on",
)
def serve(host: str | None, port: int | None, config_path: Path | None) -> None:
    """Start the gateway HTTP server."""
    from ms365_gateway.api.server import create_app

    config = load_config_or_exit(config_path)
    if host is not None:
        config.server.host = host
    if port is not None:
        config.server.port = port

    try:
        app = create_app(config)
    except StorageError as e:
        click.echo(style_error(f"Secret store unavailable: {e.message}"), err=True)
        sys.exit(1)

    click.echo(style_dim(f"ms365-gateway {__version__} ({config.mode}) on {config.server.host}:{config.server.port}"))
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.log_level.lower(),
    )
