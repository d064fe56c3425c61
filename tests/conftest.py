"""Shared fixtures for ms365-gateway tests.

Upstream services (the Microsoft token endpoint and Graph) are replaced by an
httpx.MockTransport, so no test touches the network. Upstream access tokens
are real JWTs signed with a throwaway key; the gateway never verifies their
signature, only their claims.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from typing import Any

import httpx
import jwt
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from ms365_gateway.api.server import create_app
from ms365_gateway.config import (
    AppConfig,
    CorsConfig,
    GatewayTokenConfig,
    StorageConfig,
    UpstreamConfig,
)
from ms365_gateway.constants import GRAPH_AUDIENCE
from ms365_gateway.security.secret_store import MemorySecretStore

TEST_SECRET = "test-gateway-signing-secret-0123456789abcdef"
UPSTREAM_SIGNING_KEY = "upstream-test-signing-key-0123456789abcdef"
ALLOWED_ORIGIN = "https://app.example.com"
TOKEN_PATH = "/common/oauth2/v2.0/token"


def make_upstream_token(
    email: str | None = "ann@contoso.com",
    *,
    name: str | None = "Ann Example",
    oid: str | None = "00000000-0000-0000-0000-0000000000a1",
    scopes: str | None = "Mail.Read Files.Read",
    expires_in: int = 3600,
    audience: str | None = GRAPH_AUDIENCE,
    now: int | None = None,
    **extra: Any,
) -> str:
    """Graph-shaped access token.

    Claims passed as None are omitted, so tests can build tokens that miss
    required claims.
    """
    issued = int(time.time()) if now is None else now
    claims: dict[str, Any] = {
        "aud": audience,
        "iat": issued - 60,
        "exp": issued + expires_in,
        "oid": oid,
        "name": name,
        "upn": email,
        "tid": "tenant-1234",
        "scp": scopes,
        "appid": "app-5678",
        "app_displayname": "Contoso Assistant",
    }
    claims.update(extra)
    payload = {key: value for key, value in claims.items() if value is not None}
    return jwt.encode(payload, UPSTREAM_SIGNING_KEY, algorithm="HS256")


def _unverified(token: str) -> dict[str, Any]:
    return jwt.decode(token, options={"verify_signature": False})


class FakeUpstream:
    """MockTransport handler standing in for login.microsoftonline.com and Graph.

    - GET /v1.0/me answers with a profile built from the bearer's claims,
      unless me_status is set to an error status.
    - Other (method, path) pairs answer from routes; unknown ones are 404.

    Every request is recorded in requests.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.me_status = 200

    def add(self, method: str, path: str, status: int = 200, json: Any = None) -> None:
        self.routes[(method, path)] = lambda request: httpx.Response(status, json=json)

    def add_handler(self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[(method, path)] = handler

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is not None:
            return route(request)
        if request.method == "GET" and request.url.path == "/v1.0/me":
            return self._me(request)
        return httpx.Response(404, json={"error": {"code": "itemNotFound", "message": "Not found"}})

    def _me(self, request: httpx.Request) -> httpx.Response:
        if self.me_status != 200:
            return httpx.Response(
                self.me_status,
                json={"error": {"code": "InvalidAuthenticationToken", "message": "Access token is invalid"}},
            )
        token = request.headers.get("authorization", "").split(" ", 1)[-1]
        claims = _unverified(token)
        return httpx.Response(
            200,
            json={
                "id": claims.get("oid"),
                "displayName": claims.get("name"),
                "mail": claims.get("upn"),
                "userPrincipalName": claims.get("upn"),
            },
        )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    """Recording stand-in for the Microsoft endpoints."""
    return FakeUpstream()


@pytest.fixture
def http_client(fake_upstream: FakeUpstream) -> httpx.AsyncClient:
    """Async client routed to fake_upstream."""
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_upstream.handler))


@pytest.fixture
def store() -> MemorySecretStore:
    """Empty in-memory secret store."""
    return MemorySecretStore()


@pytest.fixture
def app_config() -> AppConfig:
    """Production configuration with one allowed origin and an app registration."""
    return AppConfig(
        mode="production",
        upstream=UpstreamConfig(client_id="test-client-id"),
        gateway_tokens=GatewayTokenConfig(secret=TEST_SECRET),
        cors=CorsConfig(allowed_origins=[ALLOWED_ORIGIN]),
        storage=StorageConfig(backend="memory"),
    )


@pytest.fixture
def app(app_config: AppConfig, store: MemorySecretStore, http_client: httpx.AsyncClient) -> FastAPI:
    """Gateway app wired to the in-memory store and fake upstream."""
    return create_app(app_config, store=store, http_client=http_client)


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    """TestClient with the lifespan running."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def upstream_token() -> str:
    """Valid upstream token for ann@contoso.com with Mail.Read and Files.Read."""
    return make_upstream_token()


def exchange(client: TestClient, token: str) -> dict[str, Any]:
    """Run the token exchange and return its JSON body."""
    response = client.post("/api/auth/graph-token-exchange", json={"graph_access_token": token})
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def gateway_token(client: TestClient, upstream_token: str) -> str:
    """Gateway token for ann@contoso.com, with the upstream token stored."""
    return exchange(client, upstream_token)["access_token"]


@pytest.fixture
def auth_headers(gateway_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {gateway_token}"}


@pytest.fixture
def make_token() -> Callable[..., str]:
    """Factory for upstream tokens (see make_upstream_token)."""
    return make_upstream_token


@pytest.fixture
def exchange_for(client: TestClient) -> Callable[[str], dict[str, Any]]:
    """Callable running the token exchange on the shared client."""
    return lambda token: exchange(client, token)
