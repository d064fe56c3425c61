"""Tests for the interactive sign-in and session routes.

Tests use the AAA pattern (Arrange-Act-Assert) for clarity.

Tests cover:
- GET /status for anonymous and authenticated callers
- GET /login redirect (PKCE, session cookie, device user codes)
- GET /callback code exchange, stored record, failures
- POST /logout revocation
- POST /generate-mcp-token
- GET /.well-known/oauth-protected-resource
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from ms365_gateway.api.server import create_app
from ms365_gateway.config import AppConfig, GatewayTokenConfig, StorageConfig
from ms365_gateway.constants import LAST_USER_SETTING, SESSION_COOKIE_NAME
from ms365_gateway.security.auth.token_records import TokenRecord, TokenSource, slot_key
from ms365_gateway.security.secret_store import MemorySecretStore

from tests.conftest import TEST_SECRET, TOKEN_PATH, UPSTREAM_SIGNING_KEY, FakeUpstream

UID = "ms365:ann@contoso.com"


def _id_token(**claims: Any) -> str:
    payload = {
        "preferred_username": "Ann@Contoso.com",
        "name": "Ann Example",
        "oid": "00000000-0000-0000-0000-0000000000a1",
        **claims,
    }
    return jwt.encode(payload, UPSTREAM_SIGNING_KEY, algorithm="HS256")


def _start_login(client: TestClient, **params: str) -> str:
    """Run GET /login and return the state sent to the authority."""
    response = client.get("/api/auth/login", params=params, follow_redirects=False)
    assert response.status_code == 302, response.text
    query = parse_qs(urlsplit(response.headers["location"]).query)
    return query["state"][0]


@pytest.fixture
def token_endpoint(fake_upstream: FakeUpstream, make_token: Callable[..., str]) -> dict[str, Any]:
    """Token endpoint answering a code exchange for ann@contoso.com."""
    body = {
        "access_token": make_token(scopes="Mail.Read User.Read"),
        "refresh_token": "upstream-refresh-1",
        "expires_in": 3600,
        "scope": "Mail.Read User.Read offline_access",
        "id_token": _id_token(),
    }
    fake_upstream.add("POST", TOKEN_PATH, json=body)
    return body


# =============================================================================
# Status
# =============================================================================


class TestStatus:
    """Tests for GET /status."""

    def test_anonymous(self, client: TestClient) -> None:
        response = client.get("/api/auth/status")

        assert response.status_code == 200
        body = response.json()
        assert body["authenticated"] is False
        assert body["loginUrl"] == "/api/auth/login"
        assert "user" not in body

    def test_authenticated(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """A gateway-token caller sees their identity and the active source."""
        # Act
        body = client.get("/auth/status", headers=auth_headers).json()

        # Assert
        assert body["authenticated"] is True
        assert body["token_source"] == "exchange"
        assert body["logoutUrl"] == "/api/auth/logout"
        assert body["user"]["id"] == UID
        assert body["user"]["email"] == "ann@contoso.com"
        assert body["user"]["deviceId"].startswith("synthetic-employee-")
        assert body["user"]["authMethod"] == "gateway_token"

    def test_upstream_bearer_without_record(self, client: TestClient, upstream_token: str) -> None:
        body = client.get("/api/auth/status", headers={"Authorization": f"Bearer {upstream_token}"}).json()

        assert body["authenticated"] is True
        assert body["user"]["authMethod"] == "upstream_token"
        assert "token_source" not in body


# =============================================================================
# Login
# =============================================================================


class TestLogin:
    """Tests for GET /login."""

    def test_redirects_to_authority(self, client: TestClient) -> None:
        """The redirect carries a PKCE S256 challenge and sets the session cookie."""
        # Act
        response = client.get("/api/auth/login", params={"login_hint": "ann@contoso.com"}, follow_redirects=False)

        # Assert
        assert response.status_code == 302
        location = urlsplit(response.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == (
            "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
        )
        query = parse_qs(location.query)
        assert query["client_id"] == ["test-client-id"]
        assert query["response_type"] == ["code"]
        assert query["code_challenge_method"] == ["S256"]
        assert len(query["code_challenge"][0]) == 43
        assert query["login_hint"] == ["ann@contoso.com"]
        assert query["state"][0]
        assert SESSION_COOKIE_NAME in response.cookies

    def test_each_login_has_a_fresh_state(self, client: TestClient) -> None:
        assert _start_login(client) != _start_login(client)

    def test_not_configured(self, store: MemorySecretStore, http_client: httpx.AsyncClient) -> None:
        """Without an application registration, login is 503."""
        # Arrange
        config = AppConfig(
            gateway_tokens=GatewayTokenConfig(secret=TEST_SECRET),
            storage=StorageConfig(backend="memory"),
        )

        # Act
        with TestClient(create_app(config, store=store, http_client=http_client)) as client:
            response = client.get("/api/auth/login", follow_redirects=False)

        # Assert
        assert response.status_code == 503
        assert response.json()["error"] == "SERVICE_UNAVAILABLE"

    def test_unknown_user_code(self, client: TestClient) -> None:
        response = client.get("/api/auth/login", params={"user_code": "AAAA-AAAA"}, follow_redirects=False)

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_USER_CODE"


# =============================================================================
# Callback
# =============================================================================


class TestCallback:
    """Tests for GET /callback."""

    def test_completes_sign_in(
        self,
        client: TestClient,
        token_endpoint: dict[str, Any],
        fake_upstream: FakeUpstream,
        store: MemorySecretStore,
    ) -> None:
        """The code is redeemed with the verifier and the token stored as interactive."""
        # Arrange
        state = _start_login(client)

        # Act
        response = client.get(
            "/api/auth/callback", params={"code": "auth-code-1", "state": state}, follow_redirects=False
        )

        # Assert
        assert response.status_code == 302
        assert response.headers["location"] == "/"

        form = parse_qs(fake_upstream.requests_to(TOKEN_PATH)[0].content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["auth-code-1"]
        assert form["client_id"] == ["test-client-id"]
        assert len(form["code_verifier"][0]) >= 43

        raw = store.get_secret(slot_key(UID, TokenSource.INTERACTIVE))
        assert raw is not None
        record = TokenRecord.from_json(raw)
        assert record.upstream_token == token_endpoint["access_token"]
        assert record.refresh_token == "upstream-refresh-1"
        assert record.metadata.user.name == "Ann Example"
        assert record.metadata.scopes == ["Mail.Read", "User.Read", "offline_access"]

        last_user = store.get_setting(LAST_USER_SETTING)
        assert last_user["canonical_user_id"] == UID
        assert last_user["name"] == "Ann Example"

    def test_session_is_signed_in(self, client: TestClient, token_endpoint: dict[str, Any]) -> None:
        """After the callback the browser session identifies the user."""
        # Arrange
        state = _start_login(client)
        client.get("/api/auth/callback", params={"code": "auth-code-1", "state": state}, follow_redirects=False)

        # Act
        body = client.get("/api/auth/status").json()

        # Assert
        assert body["authenticated"] is True
        assert body["user"]["authMethod"] == "session"
        assert body["token_source"] == "interactive"

    def test_verifier_found_by_state_without_cookie(
        self, client: TestClient, token_endpoint: dict[str, Any], store: MemorySecretStore
    ) -> None:
        """If the session cookie is lost, the state still locates the verifier."""
        # Arrange
        state = _start_login(client)
        client.cookies.clear()

        # Act
        response = client.get(
            "/api/auth/callback", params={"code": "auth-code-1", "state": state}, follow_redirects=False
        )

        # Assert
        assert response.status_code == 302
        assert store.get_secret(slot_key(UID, TokenSource.INTERACTIVE)) is not None

    def test_approves_pending_device(
        self, client: TestClient, token_endpoint: dict[str, Any]
    ) -> None:
        """Signing in with ?user_code= approves that device authorization."""
        # Arrange
        registration = client.post("/api/auth/device/register").json()
        state = _start_login(client, user_code=registration["user_code"])

        # Act
        client.get("/api/auth/callback", params={"code": "auth-code-1", "state": state}, follow_redirects=False)
        poll = client.post("/api/auth/device/token", json={"device_code": registration["device_code"]})

        # Assert
        assert poll.status_code == 200
        claims = jwt.decode(poll.json()["access_token"], TEST_SECRET, algorithms=["HS256"])
        assert claims["sub"] == UID

    def test_authority_error(self, client: TestClient) -> None:
        response = client.get(
            "/api/auth/callback",
            params={"error": "access_denied", "error_description": "User cancelled"},
            follow_redirects=False,
        )

        assert response.status_code == 401
        assert response.json()["error"] == "LOGIN_FAILED"
        assert response.json()["error_description"] == "User cancelled"

    def test_missing_code(self, client: TestClient) -> None:
        response = client.get("/api/auth/callback", params={"state": "s"}, follow_redirects=False)

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_REQUEST"

    def test_no_verifier(self, client: TestClient) -> None:
        """A callback that matches no login attempt is refused."""
        response = client.get(
            "/api/auth/callback", params={"code": "c", "state": "never-issued"}, follow_redirects=False
        )

        assert response.status_code == 400
        assert response.json()["error"] == "NO_CODE_VERIFIER"

    def test_code_rejected(self, client: TestClient, fake_upstream: FakeUpstream, store: MemorySecretStore) -> None:
        """Given the token endpoint rejects the code, returns 401 and stores nothing."""
        # Arrange
        fake_upstream.add(
            "POST",
            TOKEN_PATH,
            status=400,
            json={"error": "invalid_grant", "error_description": "AADSTS70008: code expired"},
        )
        state = _start_login(client)

        # Act
        response = client.get("/api/auth/callback", params={"code": "old", "state": state}, follow_redirects=False)

        # Assert
        assert response.status_code == 401
        assert response.json()["error"] == "TOKEN_EXCHANGE_FAILED"
        assert store.get_secret(slot_key(UID, TokenSource.INTERACTIVE)) is None

    def test_state_is_single_use(self, client: TestClient, token_endpoint: dict[str, Any]) -> None:
        state = _start_login(client)
        client.get("/api/auth/callback", params={"code": "c", "state": state}, follow_redirects=False)
        client.cookies.clear()

        replay = client.get("/api/auth/callback", params={"code": "c", "state": state}, follow_redirects=False)

        assert replay.status_code == 400
        assert replay.json()["error"] == "NO_CODE_VERIFIER"

    def test_missing_state_with_session_verifier(self, client: TestClient, token_endpoint: dict[str, Any]) -> None:
        """A session holding a verifier does not stand in for the state parameter."""
        # Arrange
        _start_login(client)

        # Act
        response = client.get("/api/auth/callback", params={"code": "c"}, follow_redirects=False)

        # Assert
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_REQUEST"

    def test_mismatched_state_with_session_verifier(
        self, client: TestClient, token_endpoint: dict[str, Any], store: MemorySecretStore
    ) -> None:
        # Arrange
        _start_login(client)

        # Act
        response = client.get(
            "/api/auth/callback", params={"code": "c", "state": "forged-state"}, follow_redirects=False
        )

        # Assert
        assert response.status_code == 400
        assert response.json()["error"] == "NO_CODE_VERIFIER"
        assert store.get_secret(slot_key(UID, TokenSource.INTERACTIVE)) is None

    def test_failed_exchange_clears_session_verifier(
        self, client: TestClient, fake_upstream: FakeUpstream
    ) -> None:
        """After a rejected code, the same session cannot retry with the old verifier."""
        # Arrange
        fake_upstream.add(
            "POST",
            TOKEN_PATH,
            status=400,
            json={"error": "invalid_grant", "error_description": "AADSTS70008: code expired"},
        )
        state = _start_login(client)
        first = client.get("/api/auth/callback", params={"code": "old", "state": state}, follow_redirects=False)

        # Act
        retry = client.get("/api/auth/callback", params={"code": "old", "state": state}, follow_redirects=False)

        # Assert
        assert first.status_code == 401
        assert retry.status_code == 400
        assert retry.json()["error"] == "NO_CODE_VERIFIER"


# =============================================================================
# Logout
# =============================================================================


class TestLogout:
    """Tests for POST /logout."""

    def test_logout_revokes_tokens(
        self, client: TestClient, auth_headers: dict[str, str], store: MemorySecretStore
    ) -> None:
        """After logout the stored token is gone and the gateway token no longer works."""
        # Act
        response = client.post("/api/auth/logout", headers=auth_headers)

        # Assert
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Logged out successfully"}
        assert store.get_secret(slot_key(UID, TokenSource.EXCHANGE)) is None
        assert client.get("/api/v1/permissions", headers=auth_headers).status_code == 401
        assert client.get("/api/auth/status", headers=auth_headers).json()["authenticated"] is False

    def test_sign_in_again_after_logout(
        self,
        client: TestClient,
        auth_headers: dict[str, str],
        upstream_token: str,
        exchange_for: Callable[[str], dict[str, Any]],
    ) -> None:
        """Storing a new upstream token after logout makes new gateway tokens usable."""
        # Arrange
        client.post("/api/auth/logout", headers=auth_headers)

        # Act
        fresh = exchange_for(upstream_token)["access_token"]
        response = client.get("/api/auth/status", headers={"Authorization": f"Bearer {fresh}"})

        # Assert
        assert response.json()["authenticated"] is True
        assert response.json()["token_source"] == "exchange"

    def test_browser_logout_redirects(self, client: TestClient) -> None:
        response = client.post("/api/auth/logout", headers={"Accept": "text/html"}, follow_redirects=False)

        assert response.status_code == 303
        assert response.headers["location"] == "/"

    def test_anonymous_logout(self, client: TestClient) -> None:
        response = client.post("/auth/logout")

        assert response.status_code == 200
        assert response.json()["success"] is True


# =============================================================================
# Gateway tokens and discovery
# =============================================================================


class TestGenerateMcpToken:
    """Tests for POST /generate-mcp-token."""

    def test_issues_long_lived_token(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        # Act
        response = client.post("/api/auth/generate-mcp-token", headers=auth_headers)

        # Assert
        assert response.status_code == 200
        body = response.json()
        assert body["expires_in"] == 86400
        assert body["user"]["id"] == UID
        claims = jwt.decode(body["access_token"], TEST_SECRET, algorithms=["HS256"])
        assert claims["sub"] == UID
        assert claims["metadata"]["source"] == "mcp-token"

    def test_requires_stored_token(self, client: TestClient, upstream_token: str) -> None:
        response = client.post(
            "/api/auth/generate-mcp-token", headers={"Authorization": f"Bearer {upstream_token}"}
        )

        assert response.status_code == 401
        assert response.json()["error"] == "NO_VALID_TOKEN"

    def test_requires_authentication(self, client: TestClient) -> None:
        assert client.post("/api/auth/generate-mcp-token").status_code == 401


class TestProtectedResourceMetadata:
    """Tests for GET /.well-known/oauth-protected-resource."""

    def test_document(self, client: TestClient) -> None:
        body = client.get("/api/auth/.well-known/oauth-protected-resource").json()

        assert body["authorization_servers"] == ["https://login.microsoftonline.com/common/v2.0"]
        assert body["bearer_methods_supported"] == ["header"]
        assert "Mail.ReadWrite" in body["scopes_supported"]
        assert body["resource_documentation"] == f"{body['resource']}/tools"
