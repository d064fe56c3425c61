"""Active SSE sessions of the JSON-RPC transport.

Each GET /mcp/sse opens one SseSession. JSON-RPC responses produced by the
paired POST endpoint are pushed onto the session's queue and written to the
stream by the SSE generator; the session is unregistered when the client
disconnects, after which nothing is queued for it.
"""

from __future__ import annotations

__all__ = [
    "SseSession",
    "SseSessionRegistry",
    "new_session_id",
]

import asyncio
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ms365_gateway.constants import APP_NAME

if TYPE_CHECKING:
    from ms365_gateway.api.identity import RequestIdentity

_logger = logging.getLogger(f"{APP_NAME}.mcp")

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_session_id() -> str:
    """Opaque session id: mcp-<epoch millis>-<9 random base36 chars>."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"mcp-{int(time.time() * 1000)}-{suffix}"


@dataclass(slots=True)
class SseSession:
    """One open event stream.

    Attributes:
        session_id: Value clients pass as ?sessionId= on the message endpoint.
        identity: Caller that opened the stream.
        created_at: Monotonic open time.
        queue: Outbound JSON-RPC messages awaiting the stream writer.
    """

    session_id: str
    identity: "RequestIdentity"
    created_at: float = field(default_factory=time.monotonic)
    queue: asyncio.Queue[dict[str, Any]] = field(default_factory=asyncio.Queue)


class SseSessionRegistry:
    """Map of session id to open SseSession.

    Only the SSE route handler opens and closes sessions; the message route
    only publishes to them.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SseSession] = {}

    def open(self, identity: "RequestIdentity") -> SseSession:
        session = SseSession(session_id=new_session_id(), identity=identity)
        self._sessions[session.session_id] = session
        _logger.info(
            {
                "event": "sse_session_opened",
                "message": "SSE session opened",
                "session_id": session.session_id,
                "active_sessions": len(self._sessions),
            }
        )
        return session

    def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        _logger.info(
            {
                "event": "sse_session_closed",
                "message": "SSE session closed",
                "session_id": session_id,
                "duration_seconds": round(time.monotonic() - session.created_at, 1),
                "active_sessions": len(self._sessions),
            }
        )

    def get(self, session_id: str | None) -> SseSession | None:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def publish(self, session_id: str | None, message: dict[str, Any]) -> bool:
        """Queue a message for an open stream. False if the session is gone."""
        session = self.get(session_id)
        if session is None:
            return False
        session.queue.put_nowait(message)
        return True

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
