"""Tests for the JSON-RPC transport (/mcp).

Tests use the AAA pattern (Arrange-Act-Assert) for clarity.

Tests cover:
- initialize, ping, notifications
- tools/list filtered by the caller's scopes
- tools/call: success, validation, unknown tools, upstream failures
- Envelope errors (-32700, -32600, -32601)
- SSE stream: endpoint event, published responses, keepalive, session close
- Message posts delivered to the caller's SSE session
- /mcp/info
"""

from __future__ import annotations

import json
from typing import Any

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from ms365_gateway.api.identity import IdentitySource, RequestIdentity
from ms365_gateway.api.mcp.sessions import SseSessionRegistry
from ms365_gateway.api.routes.mcp import open_stream
from ms365_gateway.config import AppConfig, GatewayTokenConfig, ServerConfig

from tests.conftest import TEST_SECRET, FakeUpstream

MCP_PATH = "/api/mcp"
INBOX_PATH = "/v1.0/me/mailFolders/inbox/messages"
UID = "ms365:ann@contoso.com"


def _rpc(method: str, params: dict[str, Any] | None = None, request_id: Any = 1) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def _identity(uid: str = UID) -> RequestIdentity:
    return RequestIdentity(
        canonical_user_id=uid,
        device_id="device-test",
        source=IdentitySource.GATEWAY_TOKEN,
        email=uid.split(":", 1)[1],
    )


# =============================================================================
# Lifecycle methods
# =============================================================================


class TestLifecycle:
    """Tests for initialize, ping and notifications."""

    def test_initialize(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.post(MCP_PATH, json=_rpc("initialize", {}), headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["jsonrpc"] == "2.0"
        assert body["id"] == 1
        result = body["result"]
        assert result["protocolVersion"]
        assert result["serverInfo"]["name"]
        assert result["capabilities"] == {"tools": {"listChanged": False}}

    def test_ping(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        body = client.post("/mcp", json=_rpc("ping", request_id="p-1"), headers=auth_headers).json()

        assert body == {"jsonrpc": "2.0", "id": "p-1", "result": {}}

    def test_notification_is_accepted(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """A notification (no id) gets 202 and no body."""
        response = client.post(
            MCP_PATH, json={"jsonrpc": "2.0", "method": "notifications/initialized"}, headers=auth_headers
        )

        assert response.status_code == 202
        assert response.content == b""

    def test_unknown_notification_gets_no_reply(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """Any message without an id is a notification, even for methods the server does not know."""
        # Act
        response = client.post(
            MCP_PATH,
            json={"jsonrpc": "2.0", "method": "notifications/cancelled", "params": {"requestId": 7}},
            headers=auth_headers,
        )

        # Assert
        assert response.status_code == 202
        assert response.content == b""

    def test_notification_with_bad_params_gets_no_reply(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        response = client.post(
            MCP_PATH, json={"jsonrpc": "2.0", "method": "tools/call", "params": [1]}, headers=auth_headers
        )

        assert response.status_code == 202
        assert response.content == b""

    def test_requires_authentication(self, client: TestClient) -> None:
        response = client.post(MCP_PATH, json=_rpc("initialize", {}))

        assert response.status_code == 401


# =============================================================================
# tools/list
# =============================================================================


class TestToolsList:
    """Tests for tools/list."""

    def test_filtered_by_scopes(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """Only tools unlocked by Mail.Read and Files.Read are listed."""
        # Act
        body = client.post(MCP_PATH, json=_rpc("tools/list"), headers=auth_headers).json()

        # Assert
        names = sorted(tool["name"] for tool in body["result"]["tools"])
        assert names == [
            "downloadFile",
            "getEmailDetails",
            "getFileContent",
            "getFileMetadata",
            "getInbox",
            "getMailAttachments",
            "getSharingLinks",
            "listFiles",
            "search",
            "searchEmails",
            "searchFiles",
        ]

    def test_tool_shape(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        tools = client.post(MCP_PATH, json=_rpc("tools/list"), headers=auth_headers).json()["result"]["tools"]

        inbox = next(tool for tool in tools if tool["name"] == "getInbox")
        assert inbox["description"]
        assert inbox["inputSchema"]["type"] == "object"
        assert "top" in inbox["inputSchema"]["properties"]

    def test_scopes_follow_the_presented_bearer(self, client: TestClient, make_token: Any) -> None:
        """A caller presenting an upstream bearer sees that bearer's tools."""
        # Arrange
        bearer = make_token(scopes="User.Read")

        # Act
        body = client.post(MCP_PATH, json=_rpc("tools/list"), headers={"Authorization": f"Bearer {bearer}"}).json()

        # Assert
        assert [tool["name"] for tool in body["result"]["tools"]] == ["getProfile"]

    def test_no_stored_token(self, client: TestClient) -> None:
        """A caller with no upstream token stored gets -32001."""
        # Arrange
        issued = client.app.state.token_service.issue("device-1", "ms365:carol@contoso.com", {"source": "test"})
        headers = {"Authorization": f"Bearer {issued.token}"}

        # Act
        listed = client.post(MCP_PATH, json=_rpc("tools/list"), headers=headers).json()
        called = client.post(
            MCP_PATH, json=_rpc("tools/call", {"name": "getInbox", "arguments": {}}), headers=headers
        ).json()

        # Assert
        assert listed["error"]["code"] == -32001
        assert called["error"]["code"] == -32001
        assert called["error"]["data"]["code"] == "NO_VALID_TOKEN"


# =============================================================================
# tools/call
# =============================================================================


class TestToolsCall:
    """Tests for tools/call."""

    def test_call_uses_stored_token(
        self,
        client: TestClient,
        auth_headers: dict[str, str],
        upstream_token: str,
        fake_upstream: FakeUpstream,
    ) -> None:
        """The stored upstream token is sent to Graph; the result is text content."""
        # Arrange
        fake_upstream.add(
            "GET",
            INBOX_PATH,
            json={"value": [{"id": "m1", "subject": "Quarterly report", "isRead": False}]},
        )

        # Act
        body = client.post(
            MCP_PATH,
            json=_rpc("tools/call", {"name": "getInbox", "arguments": {"top": 5}}, request_id=7),
            headers=auth_headers,
        ).json()

        # Assert
        assert body["id"] == 7
        result = body["result"]
        assert result["isError"] is False
        messages = json.loads(result["content"][0]["text"])
        assert messages[0]["id"] == "m1"
        assert messages[0]["subject"] == "Quarterly report"
        sent = fake_upstream.requests_to(INBOX_PATH)[0]
        assert sent.headers["authorization"] == f"Bearer {upstream_token}"
        assert sent.url.params["$top"] == "5"

    def test_legacy_alias(self, client: TestClient, auth_headers: dict[str, str], fake_upstream: FakeUpstream) -> None:
        fake_upstream.add("GET", INBOX_PATH, json={"value": []})

        body = client.post(
            MCP_PATH, json=_rpc("tools/call", {"name": "getMail", "arguments": {}}), headers=auth_headers
        ).json()

        assert body["result"]["content"][0]["text"] == "[]"

    def test_unknown_tool(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        body = client.post(
            MCP_PATH, json=_rpc("tools/call", {"name": "launchRockets", "arguments": {}}), headers=auth_headers
        ).json()

        assert body["error"]["code"] == -32602
        assert body["error"]["data"]["code"] == "UNKNOWN_TOOL"

    def test_invalid_arguments(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """Rejected arguments are -32602 with the per-field errors."""
        # Act
        body = client.post(
            MCP_PATH,
            json=_rpc("tools/call", {"name": "sendEmail", "arguments": {"subject": "Hi"}}),
            headers=auth_headers,
        ).json()

        # Assert
        assert body["error"]["code"] == -32602
        assert body["error"]["data"]["code"] == "INVALID_REQUEST"
        fields = {error["field"] for error in body["error"]["data"]["details"]}
        assert fields == {"to", "body"}

    def test_arguments_must_be_an_object(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        body = client.post(
            MCP_PATH, json=_rpc("tools/call", {"name": "getInbox", "arguments": [1]}), headers=auth_headers
        ).json()

        assert body["error"]["code"] == -32602

    def test_upstream_failure_is_reported_in_result(
        self, client: TestClient, auth_headers: dict[str, str]
    ) -> None:
        """A Graph 404 is a tool error, not a JSON-RPC error."""
        # Act
        body = client.post(
            MCP_PATH,
            json=_rpc("tools/call", {"name": "getEmailDetails", "arguments": {"id": "missing"}}),
            headers=auth_headers,
        ).json()

        # Assert
        result = body["result"]
        assert result["isError"] is True
        assert result["content"][0]["text"] == "Error: Not found"


# =============================================================================
# Envelope errors
# =============================================================================


class TestEnvelope:
    """Tests for malformed JSON-RPC messages."""

    def test_unparseable_body(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.post(
            MCP_PATH, content=b"{not json", headers={**auth_headers, "Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32700

    def test_batch_array_is_invalid_request(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """Valid JSON that is not an object is an invalid request, not a parse error."""
        # Act
        response = client.post(MCP_PATH, json=[_rpc("ping")], headers=auth_headers)

        # Assert
        assert response.status_code == 200
        assert response.json()["error"]["code"] == -32600
        assert response.json()["id"] is None

    def test_scalar_body_is_invalid_request(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.post(MCP_PATH, json="ping", headers=auth_headers)

        assert response.json()["error"]["code"] == -32600

    def test_wrong_version(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        body = client.post(
            MCP_PATH, json={"jsonrpc": "1.0", "id": 3, "method": "ping"}, headers=auth_headers
        ).json()

        assert body["id"] == 3
        assert body["error"]["code"] == -32600

    def test_unknown_method(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        body = client.post(MCP_PATH, json=_rpc("resources/list"), headers=auth_headers).json()

        assert body["error"]["code"] == -32601

    def test_params_must_be_an_object(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        body = client.post(
            MCP_PATH, json={"jsonrpc": "2.0", "id": 4, "method": "tools/list", "params": [1]}, headers=auth_headers
        ).json()

        assert body["error"]["code"] == -32602


# =============================================================================
# SSE sessions
# =============================================================================


def _stream_request(path: str = "/api/mcp/sse") -> Request:
    return Request({"type": "http", "method": "GET", "path": path, "headers": [], "query_string": b""})


class TestEventStream:
    """Tests for the GET /sse generator."""

    async def test_endpoint_then_messages(self) -> None:
        """The first event names the message endpoint; published responses follow."""
        # Arrange
        registry = SseSessionRegistry()
        config = AppConfig(
            gateway_tokens=GatewayTokenConfig(secret=TEST_SECRET),
            server=ServerConfig(public_base_url="https://gw.example.com"),
        )
        response = await open_stream(_stream_request(), _identity(), config, registry)
        stream = response.body_iterator

        # Act
        first = await stream.__anext__()
        (session_id,) = [sid for sid in registry._sessions]
        registry.publish(session_id, {"jsonrpc": "2.0", "id": 1, "result": {}})
        second = await stream.__anext__()
        await stream.aclose()

        # Assert
        assert response.media_type == "text/event-stream"
        assert first == {
            "event": "endpoint",
            "data": f"https://gw.example.com/api/mcp/message?sessionId={session_id}",
        }
        assert second == {"event": "message", "data": '{"jsonrpc": "2.0", "id": 1, "result": {}}'}
        assert len(registry) == 0

    async def test_keepalive(self) -> None:
        registry = SseSessionRegistry()
        config = AppConfig(
            gateway_tokens=GatewayTokenConfig(secret=TEST_SECRET),
            server=ServerConfig(sse_keepalive_seconds=0.01),
        )
        response = await open_stream(_stream_request("/mcp/sse"), _identity(), config, registry)
        stream = response.body_iterator

        first = await stream.__anext__()
        second = await stream.__anext__()
        await stream.aclose()

        assert "/mcp/message?sessionId=mcp-" in first["data"]
        assert "/api/mcp/" not in first["data"]
        assert second == {"comment": "keepalive"}

    def test_stream_requires_authentication(self, client: TestClient) -> None:
        assert client.get("/api/mcp/sse").status_code == 401


class TestSessionDelivery:
    """Tests for POST /message delivering responses to the caller's stream."""

    def test_response_is_published(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        """The HTTP response is returned and also queued on the open session."""
        # Arrange
        registry: SseSessionRegistry = client.app.state.sse_registry
        session = registry.open(_identity())

        # Act
        response = client.post(
            f"{MCP_PATH}/message",
            params={"sessionId": session.session_id},
            json=_rpc("ping", request_id=11),
            headers=auth_headers,
        )

        # Assert
        assert response.json()["id"] == 11
        assert session.queue.get_nowait() == {"jsonrpc": "2.0", "id": 11, "result": {}}

    def test_other_users_session_is_not_published(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        registry: SseSessionRegistry = client.app.state.sse_registry
        session = registry.open(_identity("ms365:bob@contoso.com"))

        client.post(
            f"{MCP_PATH}/sse",
            json={**_rpc("ping"), "sessionId": session.session_id},
            headers=auth_headers,
        )

        assert session.queue.empty()

    def test_unknown_session_still_answers(self, client: TestClient, auth_headers: dict[str, str]) -> None:
        response = client.post(
            f"{MCP_PATH}/message", params={"sessionId": "mcp-0-gone"}, json=_rpc("ping"), headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["result"] == {}


# =============================================================================
# Info
# =============================================================================


class TestInfo:
    """Tests for GET /mcp/info."""

    @pytest.mark.parametrize("path", ["/api/mcp/info", "/mcp/info"])
    def test_info(self, client: TestClient, path: str) -> None:
        body = client.get(path).json()

        assert body["protocolVersion"]
        assert body["capabilities"]["tools"]["available"] is True
        assert body["capabilities"]["tools"]["count"] > 0
        assert body["endpoints"]["sse"] == "/api/mcp/sse"
