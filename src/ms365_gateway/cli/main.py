"""Main CLI entry point for ms365-gateway.

Defines the CLI group and registers all subcommands.

Commands:
    serve   - Run the gateway HTTP server
    storage - Secret store inspection (info)
    token   - Token utilities (inspect, issue)
    config  - Configuration display (show)

Subcommand help:
    ms365-gateway COMMAND -h         Show help for a specific command
"""

from __future__ import annotations

__all__ = ["cli", "main"]

import sys

import click

from ms365_gateway import __version__

from .commands.config import config
from .commands.serve import serve
from .commands.storage import storage
from .commands.token import token


class ReorderedGroup(click.Group):
    """Group that shows a quick start after the command list."""

    def format_epilog(self, ctx: click.Context, formatter: click.HelpFormatter) -> None:
        formatter.write(
            """
Quick Start:
  export MICROSOFT_CLIENT_ID=<app registration id>
  export MCP_TOKEN_SECRET=<random string>
  ms365-gateway serve --port 3000

Development (no signing secret required, all CORS origins allowed):
  NODE_ENV=development ms365-gateway serve
  NODE_ENV=development ms365-gateway token issue --email dev@example.com
"""
        )


@click.group(
    cls=ReorderedGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """ms365-gateway: authenticating gateway for Microsoft Graph."""
    if version:
        click.echo(f"ms365-gateway {__version__}")
        sys.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


cli.add_command(config)
cli.add_command(serve)
cli.add_command(storage)
cli.add_command(token)


def main() -> None:
    """CLI entry point."""
    cli()
