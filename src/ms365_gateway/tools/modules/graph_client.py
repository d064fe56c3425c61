"""Thin async client for Microsoft Graph.

All module handlers go through GraphClient so upstream failures are mapped
to typed errors in one place:

    timeout                 UpstreamTimeoutError (UPSTREAM_TIMEOUT)
    connection failure      UpstreamError (UPSTREAM_UNREACHABLE)
    404                     UpstreamError (NOT_FOUND, status 404)
    401 / 403               UpstreamError (UPSTREAM_UNAUTHORIZED / UPSTREAM_FORBIDDEN)
    429                     UpstreamError (UPSTREAM_THROTTLED)
    other non-2xx           UpstreamError (UPSTREAM_ERROR)

The underlying httpx.AsyncClient is shared and owned by the application.
"""

from __future__ import annotations

__all__ = [
    "GraphClient",
]

import logging
from typing import Any

import httpx

from ms365_gateway.constants import APP_NAME, GRAPH_BASE_URL, UPSTREAM_TIMEOUT_SECONDS
from ms365_gateway.exceptions import UpstreamError, UpstreamTimeoutError

_logger = logging.getLogger(f"{APP_NAME}.graph")

_STATUS_CODES = {
    401: "UPSTREAM_UNAUTHORIZED",
    403: "UPSTREAM_FORBIDDEN",
    404: "NOT_FOUND",
    429: "UPSTREAM_THROTTLED",
}


class GraphClient:
    """Authenticated requests against the Graph REST API.

    Args:
        http_client: Shared httpx client.
        base_url: Graph root, e.g. https://graph.microsoft.com/v1.0.
        timeout_seconds: Per-request timeout.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str = GRAPH_BASE_URL,
        timeout_seconds: float = UPSTREAM_TIMEOUT_SECONDS,
    ) -> None:
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        # Absolute URLs come from @odata.nextLink
        if path.startswith("https://") or path.startswith("http://"):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    async def _send(
        self,
        method: str,
        path: str,
        token: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        content: bytes | str | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        request_headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            response = await self._http.request(
                method,
                self._url(path),
                params=clean_params or None,
                json=json,
                content=content,
                headers=request_headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(
                f"Microsoft Graph did not respond within {self._timeout:g}s ({method} {path})"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Could not reach Microsoft Graph: {e}", code="UPSTREAM_UNREACHABLE") from e

        if response.is_success:
            return response
        raise self._error_for(method, path, response)

    @staticmethod
    def _error_for(method: str, path: str, response: httpx.Response) -> UpstreamError:
        message = response.reason_phrase or f"HTTP {response.status_code}"
        upstream_code: str | None = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            message = body["error"].get("message") or message
            upstream_code = body["error"].get("code")

        details: dict[str, Any] = {"status": response.status_code, "path": path}
        if upstream_code:
            details["upstream_code"] = upstream_code
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            details["retryAfter"] = retry_after

        _logger.debug(
            {
                "event": "graph_request_failed",
                "message": f"{method} {path} -> {response.status_code}",
                "status": response.status_code,
                "upstream_code": upstream_code,
            }
        )
        return UpstreamError(
            message,
            status_code=response.status_code,
            code=_STATUS_CODES.get(response.status_code, "UPSTREAM_ERROR"),
            details=details,
        )

    @staticmethod
    def _json_or_none(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def get(self, path: str, token: str, *, params: dict[str, Any] | None = None,
                  headers: dict[str, str] | None = None) -> Any:
        return self._json_or_none(await self._send("GET", path, token, params=params, headers=headers))

    async def post(self, path: str, token: str, json: Any = None, *, params: dict[str, Any] | None = None) -> Any:
        return self._json_or_none(await self._send("POST", path, token, json=json, params=params))

    async def patch(self, path: str, token: str, json: Any) -> Any:
        return self._json_or_none(await self._send("PATCH", path, token, json=json))

    async def put(self, path: str, token: str, json: Any) -> Any:
        return self._json_or_none(await self._send("PUT", path, token, json=json))

    async def put_content(self, path: str, token: str, content: bytes | str, content_type: str) -> Any:
        return self._json_or_none(
            await self._send("PUT", path, token, content=content, headers={"Content-Type": content_type})
        )

    async def delete(self, path: str, token: str) -> None:
        await self._send("DELETE", path, token)

    async def get_bytes(self, path: str, token: str) -> tuple[bytes, str]:
        """Raw body and content type (file downloads, transcripts)."""
        response = await self._send("GET", path, token, headers={"Accept": "*/*"})
        return response.content, response.headers.get("Content-Type", "application/octet-stream")

    async def get_collection(self, path: str, token: str, *, params: dict[str, Any] | None = None) -> list[Any]:
        """The `value` array of a collection response (first page only)."""
        data = await self.get(path, token, params=params)
        if isinstance(data, dict):
            value = data.get("value")
            return value if isinstance(value, list) else []
        return []
