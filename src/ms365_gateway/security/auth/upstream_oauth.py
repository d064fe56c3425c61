"""Client for the Microsoft identity platform token endpoints.

Implements the two grants the gateway initiates itself:
- authorization_code with PKCE (interactive login callback)
- refresh_token (silent refresh)

Flow:
1. /login builds the authorize URL (build_authorization_url)
2. /callback exchanges code + verifier (exchange_code)
3. The provider refreshes near expiry (refresh)
"""

from __future__ import annotations

__all__ = [
    "TokenRefreshError",
    "TokenRefreshExpiredError",
    "UpstreamAuthority",
    "UpstreamTokenResponse",
    "UpstreamTokenRequestError",
    "parse_token_response",
]

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx
import jwt

from ms365_gateway.constants import DEFAULT_UPSTREAM_EXPIRES_IN_SECONDS, UPSTREAM_TIMEOUT_SECONDS
from ms365_gateway.exceptions import AuthenticationError, ConfigurationError

if TYPE_CHECKING:
    from ms365_gateway.config import UpstreamConfig


class UpstreamTokenRequestError(AuthenticationError):
    """The token endpoint rejected a code exchange or could not be reached."""

    default_code = "TOKEN_EXCHANGE_FAILED"


class TokenRefreshError(AuthenticationError):
    """Token refresh failed."""

    default_code = "REFRESH_FAILED"


class TokenRefreshExpiredError(TokenRefreshError):
    """Refresh token has expired or was revoked - user must re-authenticate."""

    default_code = "REAUTH_REQUIRED"


@dataclass(frozen=True, slots=True)
class UpstreamTokenResponse:
    """Parsed token endpoint response.

    Attributes:
        access_token: Graph bearer.
        refresh_token: Present when offline_access was granted.
        expires_at: Epoch seconds.
        scopes: Granted scopes, sorted.
        id_claims: Unverified id_token claims (OIDC), empty if none.
    """

    access_token: str = field(repr=False)
    refresh_token: str | None = field(repr=False, default=None)
    expires_at: float = 0.0
    scopes: list[str] = field(default_factory=list)
    id_claims: dict[str, Any] = field(default_factory=dict)

    @property
    def username(self) -> str | None:
        """Sign-in name of the account (what MSAL calls account.username)."""
        for claim in ("preferred_username", "email", "upn"):
            value = self.id_claims.get(claim)
            if isinstance(value, str) and value:
                return value
        try:
            payload = jwt.decode(self.access_token, options={"verify_signature": False})
        except jwt.PyJWTError:
            return None
        for claim in ("upn", "unique_name", "preferred_username", "email"):
            value = payload.get(claim)
            if isinstance(value, str) and value:
                return value
        return None

    @property
    def display_name(self) -> str | None:
        name = self.id_claims.get("name")
        return name if isinstance(name, str) else None

    @property
    def object_id(self) -> str | None:
        oid = self.id_claims.get("oid") or self.id_claims.get("sub")
        return oid if isinstance(oid, str) else None


def parse_token_response(data: dict[str, Any], *, now: float | None = None) -> UpstreamTokenResponse:
    """Parse an OAuth 2.0 token response.

    Args:
        data: Token response JSON.
        now: Clock override in epoch seconds.

    Returns:
        UpstreamTokenResponse.

    Raises:
        UpstreamTokenRequestError: If access_token is missing.
    """
    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise UpstreamTokenRequestError("Token response did not include an access_token")

    issued = time.time() if now is None else now
    expires_in = data.get("expires_in", DEFAULT_UPSTREAM_EXPIRES_IN_SECONDS)
    try:
        expires_in = int(expires_in)
    except (TypeError, ValueError):
        expires_in = DEFAULT_UPSTREAM_EXPIRES_IN_SECONDS

    id_claims: dict[str, Any] = {}
    id_token = data.get("id_token")
    if isinstance(id_token, str) and id_token:
        try:
            id_claims = jwt.decode(id_token, options={"verify_signature": False})
        except jwt.PyJWTError:
            id_claims = {}

    scope = data.get("scope")
    scopes = sorted({s for s in scope.split(" ") if s}) if isinstance(scope, str) else []

    return UpstreamTokenResponse(
        access_token=access_token,
        refresh_token=data.get("refresh_token") or None,
        expires_at=issued + expires_in,
        scopes=scopes,
        id_claims=id_claims,
    )


class UpstreamAuthority:
    """Talks to {authority}/oauth2/v2.0/{authorize,token}.

    Args:
        config: Application registration.
        http_client: Shared async client. The caller owns its lifecycle.
        timeout_seconds: Per-request timeout.
    """

    def __init__(
        self,
        config: "UpstreamConfig",
        http_client: httpx.AsyncClient,
        timeout_seconds: float = UPSTREAM_TIMEOUT_SECONDS,
    ) -> None:
        self._config = config
        self._http = http_client
        self._timeout = timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self._config.client_id)

    def _require_client_id(self) -> str:
        if not self._config.client_id:
            raise ConfigurationError("MICROSOFT_CLIENT_ID is not configured")
        return self._config.client_id

    def build_authorization_url(self, *, state: str, code_challenge: str, login_hint: str | None = None) -> str:
        """Authorize URL for the interactive login redirect.

        Raises:
            ConfigurationError: If no client id is configured.
        """
        params = {
            "client_id": self._require_client_id(),
            "response_type": "code",
            "redirect_uri": self._config.redirect_uri,
            "response_mode": "query",
            "scope": " ".join(self._config.scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "prompt": "select_account",
        }
        if login_hint:
            params["login_hint"] = login_hint
        return f"{self._config.authorize_endpoint}?{urlencode(params)}"

    async def _token_request(self, form: dict[str, str]) -> httpx.Response:
        form = {"client_id": self._require_client_id(), **form}
        if self._config.client_secret:
            form["client_secret"] = self._config.client_secret
        return await self._http.post(
            self._config.token_endpoint,
            data=form,
            headers={"Accept": "application/json"},
            timeout=self._timeout,
        )

    @staticmethod
    def _error_fields(response: httpx.Response) -> tuple[str, str]:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        return str(body.get("error", "")), str(body.get("error_description") or response.status_code)

    async def exchange_code(self, code: str, code_verifier: str) -> UpstreamTokenResponse:
        """Redeem an authorization code.

        Raises:
            UpstreamTokenRequestError: If the code is rejected or the endpoint
                is unreachable.
            ConfigurationError: If no client id is configured.
        """
        try:
            response = await self._token_request(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self._config.redirect_uri,
                    "code_verifier": code_verifier,
                    "scope": " ".join(self._config.scopes),
                }
            )
        except httpx.TimeoutException as e:
            raise UpstreamTokenRequestError("Token endpoint timed out during code exchange") from e
        except httpx.HTTPError as e:
            raise UpstreamTokenRequestError(f"HTTP error during code exchange: {e}") from e

        if response.status_code != 200:
            error, description = self._error_fields(response)
            raise UpstreamTokenRequestError(
                f"Authorization code was rejected: {description}",
                details={"error": error} if error else None,
            )
        return parse_token_response(response.json())

    async def refresh(self, refresh_token: str) -> UpstreamTokenResponse:
        """Refresh access token using refresh_token grant.

        Raises:
            TokenRefreshExpiredError: If the refresh token is expired or revoked.
            TokenRefreshError: For other refresh failures.
        """
        try:
            response = await self._token_request(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "scope": " ".join(self._config.scopes),
                }
            )
        except httpx.HTTPError as e:
            raise TokenRefreshError(f"HTTP error during token refresh: {e}") from e

        if response.status_code == 200:
            return parse_token_response(response.json())

        error, description = self._error_fields(response)
        if error in ("invalid_grant", "expired_token", "interaction_required"):
            raise TokenRefreshExpiredError(
                "Refresh token has expired. Sign in again at /api/auth/login."
            )
        raise TokenRefreshError(f"Token refresh failed: {description}")
