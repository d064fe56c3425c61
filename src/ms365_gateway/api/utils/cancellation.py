"""Tie outbound work to the lifetime of the inbound request.

Work started solely for one request (upstream calls, auth flows) is
cancelled when the client disconnects, and auth flows run under a hard
budget from receipt to response.
"""

from __future__ import annotations

__all__ = [
    "ClientDisconnected",
    "run_auth_flow",
    "run_request_bound",
]

import asyncio
import logging
from typing import Any, Coroutine, TypeVar

from fastapi import Request

from ms365_gateway.api.errors import APIError, ErrorCode
from ms365_gateway.constants import APP_NAME, AUTH_FLOW_BUDGET_SECONDS

T = TypeVar("T")

_logger = logging.getLogger(f"{APP_NAME}.api")

# How often the disconnect watcher polls the ASGI receive channel
DISCONNECT_POLL_SECONDS = 0.25


class ClientDisconnected(Exception):
    """The client went away before the work finished."""


async def _watch_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def run_request_bound(
    request: Request,
    coro: Coroutine[Any, Any, T],
    timeout: float | None = None,
) -> T:
    """Await `coro`, cancelling it if the client disconnects.

    Args:
        request: Inbound request whose lifetime bounds the work.
        coro: Work to run.
        timeout: Optional budget in seconds.

    Returns:
        The coroutine's result.

    Raises:
        ClientDisconnected: The client disconnected first; the work was cancelled.
        asyncio.TimeoutError: The budget elapsed; the work was cancelled.
    """
    work = asyncio.ensure_future(coro)
    watcher = asyncio.ensure_future(_watch_disconnect(request))
    try:
        done, _ = await asyncio.wait({work, watcher}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if work in done:
            return work.result()
        work.cancel()
        if watcher in done:
            _logger.info(
                {
                    "event": "client_disconnected",
                    "message": "Client disconnected; cancelled in-flight upstream work",
                    "path": request.url.path,
                }
            )
            raise ClientDisconnected(request.url.path)
        raise asyncio.TimeoutError()
    finally:
        watcher.cancel()
        if not work.done():
            work.cancel()


async def run_auth_flow(
    request: Request,
    coro: Coroutine[Any, Any, T],
    budget_seconds: float = AUTH_FLOW_BUDGET_SECONDS,
) -> T:
    """Run an auth flow under its hard budget.

    Raises:
        APIError: 504 AUTH_FLOW_TIMEOUT when the budget is exceeded.
    """
    try:
        return await run_request_bound(request, coro, timeout=budget_seconds)
    except asyncio.TimeoutError:
        _logger.warning(
            {
                "event": "auth_flow_timeout",
                "message": f"Auth flow exceeded {budget_seconds:g}s budget",
                "path": request.url.path,
            }
        )
        raise APIError(
            status_code=504,
            code=ErrorCode.AUTH_FLOW_TIMEOUT,
            message=f"Authentication did not complete within {budget_seconds:g} seconds",
        ) from None
