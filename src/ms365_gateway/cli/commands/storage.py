"""Storage command group for ms365-gateway CLI."""

from __future__ import annotations

__all__ = ["storage"]

import json
import sys

import click

from ms365_gateway.constants import LAST_USER_SETTING
from ms365_gateway.exceptions import StorageError
from ms365_gateway.security.secret_store import create_secret_store

from ..styling import style_dim, style_error, style_header
from ._config import load_config_or_exit


@click.group()
def storage() -> None:
    """Secret store commands."""


@storage.command("info")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def storage_info(as_json: bool) -> None:
    """Show the active secret-store backend and the last signed-in user."""
    config = load_config_or_exit()
    try:
        store = create_secret_store(config.storage)
        last_user = store.get_setting(LAST_USER_SETTING)
    except StorageError as e:
        click.echo(style_error(e.message), err=True)
        sys.exit(1)

    info = store.describe()
    if as_json:
        click.echo(json.dumps({"storage": info, "last_user": last_user}, indent=2))
        return

    click.echo(style_header("Secret store"))
    for key, value in info.items():
        click.echo(f"  {key}: {value}")
    click.echo()
    click.echo(style_header("Last interactive sign-in"))
    if not isinstance(last_user, dict):
        click.echo(style_dim("  (none)"))
        return
    for key in ("canonical_user_id", "name", "signed_in_at"):
        if last_user.get(key):
            click.echo(f"  {key}: {last_user[key]}")
