"""Server-side browser sessions.

The browser holds only an opaque, cryptographically random session id in an
HttpOnly cookie. Everything else (the signed-in user, the PKCE verifier of
an in-flight login, a device user code awaiting approval) lives here, keyed
by that id. Sessions are memory-only and expire after SESSION_TTL_SECONDS.
"""

from __future__ import annotations

__all__ = [
    "BrowserSession",
    "BrowserSessionStore",
    "SessionUser",
]

import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from ms365_gateway.constants import SESSION_TTL_SECONDS


@dataclass(frozen=True, slots=True)
class SessionUser:
    """Signed-in user of a browser session (the session's msUser record).

    Attributes:
        canonical_user_id: "<provider>:<email>".
        email: Sign-in name.
        name: Display name, if known.
        source: Token source the session was established with.
    """

    canonical_user_id: str
    email: str
    name: str | None = None
    source: str = "interactive"


@dataclass(slots=True)
class BrowserSession:
    """Mutable per-browser state.

    Attributes:
        session_id: Cookie value.
        created_at: Creation time (UTC).
        expires_at: Expiry time (UTC).
        ms_user: Signed-in user, None until a login completes.
        pkce_verifier: Verifier of the login in flight.
        pkce_state: OAuth state value of the login in flight.
        pending_user_code: Device user code to approve after login.
    """

    session_id: str
    created_at: datetime
    expires_at: datetime
    ms_user: SessionUser | None = None
    pkce_verifier: str | None = field(default=None, repr=False)
    pkce_state: str | None = None
    pending_user_code: str | None = None

    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) > self.expires_at

    def clear_pkce(self) -> None:
        self.pkce_verifier = None
        self.pkce_state = None


class BrowserSessionStore:
    """In-memory browser session registry.

    Usage:
        store = BrowserSessionStore()
        session = store.create()
        response.set_cookie(SESSION_COOKIE_NAME, session.session_id, httponly=True)
        ...
        session = store.get(request.cookies.get(SESSION_COOKIE_NAME))
    """

    # Session ID entropy (256 bits via secrets.token_urlsafe)
    SESSION_ID_BYTES = 32

    def __init__(self, ttl_seconds: int = SESSION_TTL_SECONDS) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._sessions: dict[str, BrowserSession] = {}
        self._lock = threading.Lock()

    def create(self) -> BrowserSession:
        now = datetime.now(timezone.utc)
        session = BrowserSession(
            session_id=secrets.token_urlsafe(self.SESSION_ID_BYTES),
            created_at=now,
            expires_at=now + self._ttl,
        )
        with self._lock:
            self._cleanup_expired_locked()
            self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str | None) -> BrowserSession | None:
        """Live session for a cookie value, or None."""
        if not session_id:
            return None
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.is_expired():
                del self._sessions[session_id]
                return None
        return session

    def get_or_create(self, session_id: str | None) -> tuple[BrowserSession, bool]:
        """Existing live session, or a new one. Second item is True if created."""
        existing = self.get(session_id)
        if existing is not None:
            return existing, False
        return self.create(), True

    def destroy(self, session_id: str | None) -> BrowserSession | None:
        if not session_id:
            return None
        with self._lock:
            return self._sessions.pop(session_id, None)

    def destroy_user(self, canonical_user_id: str) -> int:
        """Destroy every session signed in as the user. Returns the count."""
        with self._lock:
            doomed = [
                sid
                for sid, s in self._sessions.items()
                if s.ms_user is not None and s.ms_user.canonical_user_id == canonical_user_id
            ]
            for sid in doomed:
                del self._sessions[sid]
        return len(doomed)

    def cleanup_expired(self) -> int:
        with self._lock:
            return self._cleanup_expired_locked()

    def _cleanup_expired_locked(self) -> int:
        expired = [sid for sid, s in self._sessions.items() if s.is_expired()]
        for sid in expired:
            del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
