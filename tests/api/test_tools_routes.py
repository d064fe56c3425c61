"""Tests for the generated REST tool routes (/v1).

Tests use the AAA pattern (Arrange-Act-Assert) for clarity.

Tests cover:
- Argument collection from query string, JSON body and path
- Success status from the catalogue (200, 201)
- Error mapping: validation 400, upstream 404, untyped 500, missing token 401
- Authentication with a stored token and with an upstream bearer
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx
from fastapi.testclient import TestClient

from ms365_gateway.tools.dispatcher import ToolDispatcher
from ms365_gateway.tools.registry import ModuleRegistry, ToolContext, ToolHandler

from tests.conftest import FakeUpstream

INBOX_PATH = "/v1.0/me/mailFolders/inbox/messages"


class FailingMailModule:
    """Mail module whose inbox handler raises an untyped error."""

    name = "mail"

    def handlers(self) -> Mapping[str, ToolHandler]:
        async def get_inbox(arguments: dict[str, Any], context: ToolContext) -> Any:
            raise RuntimeError("mailbox is on fire")

        return {"getInbox": get_inbox}


# =============================================================================
# Successful calls
# =============================================================================


class TestToolRoutes:
    """Tests for successful REST tool calls."""

    def test_query_arguments(
        self,
        client: TestClient,
        auth_headers: dict[str, str],
        upstream_token: str,
        fake_upstream: FakeUpstream,
    ) -> None:
        """Query parameters are coerced and passed to the handler."""
        # Arrange
        fake_upstream.add("GET", INBOX_PATH, json={"value": [{"id": "m1", "subject": "Hi"}]})

        # Act
        response = client.get("/api/v1/mail", params={"top": "5", "unreadOnly": "true"}, headers=auth_headers)

        # Assert
        assert response.status_code == 200
        assert response.json()[0]["id"] == "m1"
        sent = fake_upstream.requests_to(INBOX_PATH)[0]
        assert sent.headers["authorization"] == f"Bearer {upstream_token}"
        assert sent.url.params["$top"] == "5"
        assert sent.url.params["$filter"] == "(isRead eq false)"

    def test_path_argument(self, client: TestClient, auth_headers: dict[str, str], fake_upstream: FakeUpstream) -> None:
        fake_upstream.add("GET", "/v1.0/me/messages/abc", json={"id": "abc", "subject": "Details"})

        response = client.get("/v1/mail/abc", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["id"] == "abc"
        assert response.json()["subject"] == "Details"

    def test_body_arguments_and_created_status(
        self, client: TestClient, auth_headers: dict[str, str], fake_upstream: FakeUpstream
    ) -> None:
        """A creation tool answers 201 with the handler result."""
        # Arrange
        fake_upstream.add(
            "POST",
            "/v1.0/me/contacts",
            status=201,
            json={"id": "c1", "givenName": "Bob", "emailAddresses": [{"address": "bob@contoso.com"}]},
        )

        # Act
        response = client.post(
            "/api/v1/contacts",
            json={"givenName": "Bob", "emailAddresses": ["bob@contoso.com"]},
            headers=auth_headers,
        )

        # Assert
        assert response.status_code == 201
        assert response.json()["id"] == "c1"
        assert response.json()["emailAddresses"] == ["bob@contoso.com"]
        sent = fake_upstream.requests_to("/v1.0/me/contacts")[0]
        assert sent.method == "POST"

    def test_upstream_bearer_authenticates(
        self, client: TestClient, make_token: Any, fake_upstream: FakeUpstream
    ) -> None:
        """A caller presenting a Graph token is served with the stored token of that user."""
        # Arrange
        fake_upstream.add("GET", INBOX_PATH, json={"value": []})
        bearer = make_token()
        client.post("/api/auth/graph-token-exchange", json={"graph_access_token": bearer})

        # Act
        response = client.get("/api/v1/mail", headers={"Authorization": f"Bearer {bearer}"})

        # Assert
        assert response.status_code == 200
        assert response.json() == []


# =============================================================================
# Failures
# =============================================================================


class TestToolRouteErrors:
    """Tests for REST error mapping."""

    def test_validation_error(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """Rejected arguments are 400 INVALID_REQUEST with per-field details."""
        # Act
        response = client.post("/api/v1/mail/send", json={"subject": "Hi", "to": []}, headers=auth_headers)

        # Assert
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "INVALID_REQUEST"
        assert {detail["field"] for detail in body["details"]} == {"to", "body"}

    def test_invalid_json_body(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.post(
            "/api/v1/mail/send", content=b"{oops", headers={**auth_headers, "Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_REQUEST"

    def test_upstream_not_found(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """Graph's 404 is passed through as 404."""
        response = client.get("/api/v1/mail/does-not-exist", headers=auth_headers)

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "NOT_FOUND"
        assert body["details"]["upstream_code"] == "itemNotFound"

    def test_upstream_throttled(self, client: TestClient, auth_headers: dict[str, str], fake_upstream: FakeUpstream) -> None:
        fake_upstream.add_handler(
            "GET",
            INBOX_PATH,
            lambda request: httpx.Response(
                429,
                headers={"Retry-After": "30"},
                json={"error": {"code": "TooManyRequests", "message": "Slow down"}},
            ),
        )

        response = client.get("/api/v1/mail", headers=auth_headers)

        assert response.status_code == 502
        assert response.json()["error"] == "UPSTREAM_THROTTLED"
        assert response.json()["details"]["retryAfter"] == "30"

    def test_untyped_handler_error(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """An unexpected exception is 500 TOOL_EXECUTION_FAILED."""
        # Arrange
        client.app.state.dispatcher = ToolDispatcher(
            ModuleRegistry([FailingMailModule()]), client.app.state.provider
        )

        # Act
        response = client.get("/api/v1/mail", headers=auth_headers)

        # Assert
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "TOOL_EXECUTION_FAILED"
        assert "mailbox is on fire" in body["error_description"]

    def test_no_stored_token(self, client: TestClient) -> None:
        """A gateway token for a user with nothing stored is 401 NO_VALID_TOKEN."""
        # Arrange
        issued = client.app.state.token_service.issue("device-1", "ms365:carol@contoso.com", {"source": "test"})

        # Act
        response = client.get("/api/v1/mail", headers={"Authorization": f"Bearer {issued.token}"})

        # Assert
        assert response.status_code == 401
        assert response.json()["error"] == "NO_VALID_TOKEN"

    def test_unauthenticated(self, client: TestClient) -> None:
        response = client.get("/api/v1/profile")

        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHENTICATED"
