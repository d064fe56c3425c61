"""PKCE (RFC 7636) helpers and the verifier store for in-flight logins.

A verifier is created on /login and consumed by the matching /callback.
The primary lookup is the caller's browser session; when the callback
arrives without the session cookie (third-party cookie blocking, a
different browser profile), the OAuth `state` value is the fallback key.
Entries are single-use and expire after PKCE_STATE_TTL_SECONDS.
"""

from __future__ import annotations

__all__ = [
    "PkceChallenge",
    "PkceState",
    "PkceStateStore",
    "create_pkce_challenge",
]

import base64
import hashlib
import secrets
import threading
import time
from dataclasses import dataclass

from ms365_gateway.constants import PKCE_STATE_TTL_SECONDS, PKCE_VERIFIER_BYTES


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


@dataclass(frozen=True, slots=True)
class PkceChallenge:
    """A verifier and its S256 challenge."""

    code_verifier: str
    code_challenge: str
    method: str = "S256"


def create_pkce_challenge() -> PkceChallenge:
    """Generate a 32-byte verifier and its S256 challenge."""
    verifier = _base64url(secrets.token_bytes(PKCE_VERIFIER_BYTES))
    challenge = _base64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return PkceChallenge(code_verifier=verifier, code_challenge=challenge)


@dataclass(frozen=True, slots=True)
class PkceState:
    """Pending login state.

    Attributes:
        code_verifier: PKCE verifier for the code exchange.
        created_at: monotonic() at creation.
        session_id: Browser session that started the login, if any.
        user_code: Device user code to approve once login completes.
    """

    code_verifier: str
    created_at: float
    session_id: str | None = None
    user_code: str | None = None


class PkceStateStore:
    """In-memory map of OAuth state value -> PkceState.

    Mutated only by the /login and /callback handlers.
    """

    def __init__(self, ttl_seconds: float = PKCE_STATE_TTL_SECONDS) -> None:
        self._ttl = ttl_seconds
        self._states: dict[str, PkceState] = {}
        self._lock = threading.Lock()

    def put(self, state: str, entry: PkceState) -> None:
        with self._lock:
            self._purge_expired()
            self._states[state] = entry

    def pop(self, state: str | None) -> PkceState | None:
        """Remove and return the entry for state, if present and not expired."""
        if not state:
            return None
        with self._lock:
            entry = self._states.pop(state, None)
        if entry is None or time.monotonic() - entry.created_at > self._ttl:
            return None
        return entry

    def discard_session(self, session_id: str) -> None:
        with self._lock:
            for key in [k for k, v in self._states.items() if v.session_id == session_id]:
                del self._states[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def _purge_expired(self) -> None:
        now = time.monotonic()
        for key in [k for k, v in self._states.items() if now - v.created_at > self._ttl]:
            del self._states[key]
