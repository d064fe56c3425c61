"""Config command group for ms365-gateway CLI."""

from __future__ import annotations

__all__ = ["config"]

import json

import click

from ms365_gateway.config import get_config_path

from ..styling import style_dim, style_header
from ._config import load_config_or_exit

_REDACTED = "********"


@click.group()
def config() -> None:
    """Configuration commands."""


@config.command("show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def config_show(as_json: bool) -> None:
    """Display the effective configuration.

    Values come from the environment layered on the saved config file
    (if any). Secrets are masked.
    """
    loaded = load_config_or_exit()
    data = loaded.model_dump(mode="json")
    data["gateway_tokens"]["secret"] = _REDACTED
    if data["upstream"].get("client_secret"):
        data["upstream"]["client_secret"] = _REDACTED

    config_path = get_config_path()
    if as_json:
        data["_computed"] = {
            "config_file": str(config_path),
            "config_file_exists": config_path.exists(),
            "base_url": loaded.server.base_url,
            "authority": loaded.upstream.authority,
        }
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"\nms365-gateway configuration ({loaded.mode}):\n")
    click.echo(style_dim(f"config file: {config_path}" + ("" if config_path.exists() else " (not present)")))
    click.echo()

    upstream = data["upstream"]
    click.echo(style_header("Upstream"))
    click.echo(f"  client_id: {upstream['client_id'] or '(not set, interactive login disabled)'}")
    click.echo(f"  authority: {loaded.upstream.authority}")
    click.echo(f"  redirect_uri: {upstream['redirect_uri']}")
    click.echo(f"  scopes: {' '.join(upstream['scopes'])}")
    click.echo(f"  graph_base_url: {upstream['graph_base_url']}")
    click.echo()

    tokens = data["gateway_tokens"]
    click.echo(style_header("Gateway tokens"))
    click.echo(f"  algorithm: {tokens['algorithm']}")
    click.echo(f"  short_lived_seconds: {tokens['short_lived_seconds']}")
    click.echo(f"  long_lived_seconds: {tokens['long_lived_seconds']}")
    click.echo()

    limits = data["rate_limit"]
    click.echo(style_header("Rate limits"))
    click.echo(f"  window_seconds: {limits['window_seconds']}")
    click.echo(f"  max_requests: {limits['max_requests']}")
    click.echo(f"  auth_max_requests: {limits['auth_max_requests']}")
    click.echo()

    click.echo(style_header("CORS"))
    origins = data["cors"]["allowed_origins"]
    if origins:
        for origin in origins:
            click.echo(f"  - {origin}")
    elif loaded.allow_all_origins:
        click.echo("  all origins (development, no allowlist)")
    else:
        click.echo(style_dim("  (no origins allowed)"))
    click.echo()

    click.echo(style_header("Storage"))
    click.echo(f"  backend: {data['storage']['backend']}")
    click.echo(f"  directory: {data['storage']['directory']}")
    click.echo()

    click.echo(style_header("Logging"))
    click.echo(f"  log_dir: {data['logging']['log_dir'] or '(stderr only)'}")
    click.echo(f"  log_level: {data['logging']['log_level']}")
    click.echo()

    click.echo(style_header("Server"))
    click.echo(f"  listen: {data['server']['host']}:{data['server']['port']}")
    click.echo(f"  base_url: {loaded.server.base_url}")
    click.echo(f"  sse_keepalive_seconds: {data['server']['sse_keepalive_seconds']}")
