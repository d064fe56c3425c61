"""Unit tests for the upstream authority client.

Tests cover:
- parse_token_response: expiry, scopes, id_token claims
- UpstreamTokenResponse.username: claim fallbacks
- UpstreamAuthority: authorize URL, code exchange, refresh error mapping
"""

from __future__ import annotations

import json
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest

from ms365_gateway.config import UpstreamConfig
from ms365_gateway.exceptions import ConfigurationError
from ms365_gateway.security.auth.upstream_oauth import (
    TokenRefreshError,
    TokenRefreshExpiredError,
    UpstreamAuthority,
    UpstreamTokenRequestError,
    parse_token_response,
)

KEY = "oauth-test-signing-key-0123456789abcdef0000"
TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"


def _authority(handler, **config) -> UpstreamAuthority:  # type: ignore[no-untyped-def]
    upstream = UpstreamConfig(client_id="client-1", **config)
    return UpstreamAuthority(upstream, httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestParseTokenResponse:
    """Tests for parse_token_response."""

    def test_parses_fields(self) -> None:
        """Expiry is absolute, scopes are sorted, id_token claims are decoded."""
        # Arrange
        id_token = jwt.encode({"preferred_username": "ann@contoso.com", "name": "Ann", "oid": "oid-1"}, KEY)
        data = {
            "access_token": "at",
            "refresh_token": "rt",
            "expires_in": 3599,
            "scope": "User.Read Mail.Read offline_access",
            "id_token": id_token,
        }

        # Act
        response = parse_token_response(data, now=1000.0)

        # Assert
        assert response.expires_at == 4599.0
        assert response.scopes == ["Mail.Read", "User.Read", "offline_access"]
        assert response.username == "ann@contoso.com"
        assert response.display_name == "Ann"
        assert response.object_id == "oid-1"

    def test_missing_access_token(self) -> None:
        with pytest.raises(UpstreamTokenRequestError):
            parse_token_response({"token_type": "Bearer"})

    def test_default_expiry(self) -> None:
        response = parse_token_response({"access_token": "at", "expires_in": "soon"}, now=0.0)

        assert response.expires_at == 3600.0

    def test_username_from_access_token(self) -> None:
        """Without an id_token, the access token's upn names the account."""
        access_token = jwt.encode({"upn": "ann@contoso.com"}, KEY)

        response = parse_token_response({"access_token": access_token})

        assert response.username == "ann@contoso.com"

    def test_opaque_access_token_has_no_username(self) -> None:
        assert parse_token_response({"access_token": "EwB-opaque"}).username is None


class TestUpstreamAuthority:
    """Tests for UpstreamAuthority."""

    def test_authorization_url(self) -> None:
        """The authorize URL carries PKCE, state and the configured scopes."""
        # Arrange
        authority = _authority(lambda r: httpx.Response(500), scopes=["User.Read", "Mail.Read"])

        # Act
        url = authority.build_authorization_url(state="st", code_challenge="cc", login_hint="ann@contoso.com")

        # Assert
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert parsed.netloc == "login.microsoftonline.com"
        assert parsed.path == "/common/oauth2/v2.0/authorize"
        assert query["client_id"] == ["client-1"]
        assert query["code_challenge"] == ["cc"]
        assert query["code_challenge_method"] == ["S256"]
        assert query["state"] == ["st"]
        assert query["scope"] == ["User.Read Mail.Read"]
        assert query["login_hint"] == ["ann@contoso.com"]

    def test_unconfigured(self) -> None:
        authority = UpstreamAuthority(UpstreamConfig(), httpx.AsyncClient())

        assert authority.is_configured is False
        with pytest.raises(ConfigurationError):
            authority.build_authorization_url(state="st", code_challenge="cc")

    async def test_exchange_code(self) -> None:
        """The code grant posts the verifier and parses the response."""
        # Arrange
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 3600})

        authority = _authority(handler, client_secret="shh")

        # Act
        response = await authority.exchange_code("the-code", "the-verifier")

        # Assert
        assert response.access_token == "at"
        form = parse_qs(seen[0].content.decode())
        assert str(seen[0].url) == TOKEN_URL
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["the-code"]
        assert form["code_verifier"] == ["the-verifier"]
        assert form["client_secret"] == ["shh"]

    async def test_exchange_code_rejected(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "AADSTS70008: expired"})

        with pytest.raises(UpstreamTokenRequestError) as exc_info:
            await _authority(handler).exchange_code("c", "v")

        assert exc_info.value.code == "TOKEN_EXCHANGE_FAILED"
        assert "AADSTS70008" in exc_info.value.message

    async def test_exchange_code_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(UpstreamTokenRequestError):
            await _authority(handler).exchange_code("c", "v")

    async def test_refresh(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["refresh_token"]
            return httpx.Response(200, content=json.dumps({"access_token": "at-2", "expires_in": 3600}))

        response = await _authority(handler).refresh("rt")

        assert response.access_token == "at-2"

    @pytest.mark.parametrize("error", ["invalid_grant", "expired_token", "interaction_required"])
    async def test_refresh_needs_reauth(self, error: str) -> None:
        """Rejected refresh tokens map to TokenRefreshExpiredError."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": error})

        with pytest.raises(TokenRefreshExpiredError):
            await _authority(handler).refresh("rt")

    async def test_refresh_other_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        with pytest.raises(TokenRefreshError) as exc_info:
            await _authority(handler).refresh("rt")

        assert not isinstance(exc_info.value, TokenRefreshExpiredError)
