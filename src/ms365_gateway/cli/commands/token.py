"""Token command group for ms365-gateway CLI.

Commands:
    inspect - Quick-validate an upstream (Microsoft Graph) token
    issue   - Mint a gateway token for an email (development mode only)
"""

from __future__ import annotations

__all__ = ["token"]

import json
import sys

import click

from ms365_gateway.security.auth.gateway_tokens import GatewayTokenService, LifetimeClass
from ms365_gateway.security.auth.token_records import canonical_user_id_for, synthetic_device_id
from ms365_gateway.security.auth.upstream_validator import quick_validate
from ms365_gateway.utils.logging.logging_helpers import redact_token

from ..styling import style_error, style_header, style_success, style_warning
from ._config import load_config_or_exit


@click.group()
def token() -> None:
    """Upstream and gateway token utilities."""


@token.command("inspect")
@click.argument("value")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def token_inspect(value: str, as_json: bool) -> None:
    """Decode an upstream token and show its metadata.

    Structure, expiry and audience are checked locally; Microsoft Graph is
    not contacted. Exits 1 when the token is rejected.
    """
    result = quick_validate(value)
    if as_json:
        payload = {
            "valid": result.valid,
            "token": redact_token(value),
            "error": result.error_code.value if result.error_code else None,
            "message": result.message,
            "metadata": result.metadata.to_dict() if result.metadata else None,
        }
        click.echo(json.dumps(payload, indent=2))
        sys.exit(0 if result.valid else 1)

    click.echo(style_header("Upstream token"))
    click.echo(f"  token: {redact_token(value)}")
    if not result.valid or result.metadata is None:
        code = result.error_code.value if result.error_code else "VALIDATION_FAILED"
        click.echo(style_error(f"{code}: {result.message}"), err=True)
        sys.exit(1)

    metadata = result.metadata
    click.echo(f"  user: {metadata.name or '-'} <{metadata.email or '-'}>")
    click.echo(f"  user id: {metadata.user_id or '-'}")
    click.echo(f"  tenant: {metadata.user.get('tenant') or '-'}")
    click.echo(f"  app: {metadata.app.get('name') or metadata.app.get('id') or '-'}")
    click.echo(f"  expires: {metadata.expires_at} ({metadata.expires_in_seconds}s)")
    click.echo(f"  scopes: {' '.join(metadata.scopes) or '(none)'}")
    if metadata.is_expiring_soon:
        click.echo(style_warning("token expires in under ten minutes"))
    click.echo(style_success("Token is structurally valid"))


@token.command("issue")
@click.option("--email", required=True, help="Identity to mint the token for")
@click.option("--name", default=None, help="Display name carried in token metadata")
@click.option(
    "--lifetime",
    type=click.Choice([c.value for c in LifetimeClass]),
    default=LifetimeClass.SHORT.value,
    show_default=True,
)
def token_issue(email: str, name: str | None, lifetime: str) -> None:
    """Mint a gateway token for an operator-provided identity.

    Only allowed in development mode. The token is printed to stdout.
    """
    config = load_config_or_exit()
    if not config.is_development:
        click.echo(style_error("token issue is only available in development mode"), err=True)
        sys.exit(1)
    if "@" not in email:
        click.echo(style_error(f"Not an email address: {email}"), err=True)
        sys.exit(1)

    issued = GatewayTokenService(config.gateway_tokens).issue(
        synthetic_device_id(email),
        canonical_user_id_for(email),
        {"email": email.strip().lower(), "name": name, "source": "cli"},
        LifetimeClass(lifetime),
    )
    click.echo(style_success(f"Issued {lifetime}-lived token, expires {issued.expires_at}"), err=True)
    click.echo(issued.token)
