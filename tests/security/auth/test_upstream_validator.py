"""Unit tests for upstream token validation.

Tests use the AAA pattern (Arrange-Act-Assert) for clarity.

Tests cover:
- strip_bearer / decode_token: format checks
- quick_validate: required claims, audience, expiry boundary
- extract_metadata: claim projection and profile precedence
- UpstreamTokenValidator.full_validate: GET /me check outcomes
"""

from __future__ import annotations

import base64
import json
import time
from typing import Any

import httpx
import jwt
import pytest

from ms365_gateway.security.auth.upstream_validator import (
    UpstreamTokenErrorCode,
    UpstreamTokenValidator,
    UpstreamValidationError,
    decode_token,
    extract_metadata,
    quick_validate,
    strip_bearer,
)

GRAPH = "https://graph.microsoft.com/v1.0"
KEY = "validator-test-signing-key-0123456789abcdef"
NOW = 1_700_000_000


def _token(**claims: Any) -> str:
    base: dict[str, Any] = {
        "aud": "https://graph.microsoft.com",
        "iat": NOW - 60,
        "exp": NOW + 3600,
        "oid": "user-oid",
        "name": "Ann Example",
        "upn": "Ann@Contoso.com",
        "tid": "tenant-1",
        "scp": "User.Read Mail.Read Mail.Read",
        "appid": "app-1",
        "app_displayname": "Graph Explorer",
    }
    base.update(claims)
    return jwt.encode({k: v for k, v in base.items() if v is not None}, KEY, algorithm="HS256")


def _b64(obj: Any) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode()


# =============================================================================
# decode_token
# =============================================================================


class TestStripBearer:
    """Tests for strip_bearer."""

    @pytest.mark.parametrize("value", ["Bearer abc", "bearer abc", "BEARER   abc", "  abc  "])
    def test_strips_prefix_case_insensitively(self, value: str) -> None:
        assert strip_bearer(value) == "abc"


class TestDecodeToken:
    """Tests for decode_token format checks."""

    @pytest.mark.parametrize("value", ["", None, "..", "a.b", "a.b.c.d", "not-a-jwt"])
    def test_rejects_malformed(self, value: Any) -> None:
        """Given an empty value or the wrong segment count, raises INVALID_FORMAT."""
        with pytest.raises(UpstreamValidationError) as exc_info:
            decode_token(value)

        assert exc_info.value.code == UpstreamTokenErrorCode.INVALID_FORMAT

    def test_rejects_non_json_segments(self) -> None:
        """Three segments that are not base64url JSON are INVALID_FORMAT."""
        with pytest.raises(UpstreamValidationError) as exc_info:
            decode_token("abc.def.ghi")

        assert exc_info.value.code == UpstreamTokenErrorCode.INVALID_FORMAT

    def test_decodes_unsigned_payload(self) -> None:
        """Signature is not checked; header and payload are returned."""
        # Arrange
        raw = f"{_b64({'alg': 'RS256', 'typ': 'JWT'})}.{_b64({'aud': 'x'})}.c2ln"

        # Act
        decoded = decode_token(f"Bearer {raw}")

        # Assert
        assert decoded.header["alg"] == "RS256"
        assert decoded.payload == {"aud": "x"}
        assert decoded.raw == raw


# =============================================================================
# quick_validate
# =============================================================================


class TestQuickValidate:
    """Tests for quick_validate."""

    def test_valid_token(self) -> None:
        """Given a well-formed Graph token, returns valid with metadata."""
        # Act
        result = quick_validate(_token(), now=NOW)

        # Assert
        assert result.valid is True
        assert result.error_code is None
        assert result.metadata is not None
        assert result.metadata.email == "Ann@Contoso.com"

    def test_accepts_bearer_prefix(self) -> None:
        token = _token()

        result = quick_validate(f"Bearer {token}", now=NOW)

        assert result.valid is True
        assert result.token == token

    def test_double_dot_is_invalid_format(self) -> None:
        """Given "..", returns INVALID_FORMAT."""
        result = quick_validate("..", now=NOW)

        assert result.valid is False
        assert result.error_code == UpstreamTokenErrorCode.INVALID_FORMAT

    @pytest.mark.parametrize("missing", ["aud", "exp", "iat"])
    def test_missing_required_claim(self, missing: str) -> None:
        """Given a token without aud, exp or iat, returns MISSING_CLAIMS."""
        result = quick_validate(_token(**{missing: None}), now=NOW)

        assert result.error_code == UpstreamTokenErrorCode.MISSING_CLAIMS
        assert missing in (result.message or "")

    def test_wrong_audience(self) -> None:
        result = quick_validate(_token(aud="api://other"), now=NOW)

        assert result.error_code == UpstreamTokenErrorCode.INVALID_AUDIENCE

    def test_audience_list_containing_graph(self) -> None:
        result = quick_validate(_token(aud=["api://other", "https://graph.microsoft.com"]), now=NOW)

        assert result.valid is True

    def test_expired_at_exactly_now(self) -> None:
        """exp == now counts as expired."""
        result = quick_validate(_token(exp=NOW), now=NOW)

        assert result.valid is False
        assert result.error_code == UpstreamTokenErrorCode.TOKEN_EXPIRED

    def test_valid_one_second_before_expiry(self) -> None:
        result = quick_validate(_token(exp=NOW + 1), now=NOW)

        assert result.valid is True

    def test_audience_checked_before_expiry(self) -> None:
        """Checks run in order: an expired token for another audience reports the audience."""
        result = quick_validate(_token(aud="api://other", exp=NOW - 10), now=NOW)

        assert result.error_code == UpstreamTokenErrorCode.INVALID_AUDIENCE


# =============================================================================
# extract_metadata
# =============================================================================


class TestExtractMetadata:
    """Tests for extract_metadata."""

    def test_projects_claims(self) -> None:
        """Claims map onto user, app, scopes and timing fields."""
        # Act
        metadata = extract_metadata(decode_token(_token()), now=NOW)

        # Assert
        assert metadata.user == {
            "id": "user-oid",
            "name": "Ann Example",
            "email": "Ann@Contoso.com",
            "tenant": "tenant-1",
        }
        assert metadata.app == {"id": "app-1", "name": "Graph Explorer"}
        assert metadata.scopes == ["Mail.Read", "User.Read"]
        assert metadata.expires_in_seconds == 3600
        assert metadata.is_expiring_soon is False
        assert metadata.expires_at == "2023-11-14T23:13:20.000Z"

    def test_expiring_soon_under_ten_minutes(self) -> None:
        metadata = extract_metadata(decode_token(_token(exp=NOW + 599)), now=NOW)

        assert metadata.is_expiring_soon is True

    def test_expires_in_never_negative(self) -> None:
        metadata = extract_metadata(decode_token(_token(exp=NOW - 100)), now=NOW)

        assert metadata.expires_in_seconds == 0

    def test_email_fallback_order(self) -> None:
        """Without upn, unique_name then preferred_username supply the email."""
        token = _token(upn=None, unique_name=None, preferred_username="ann@contoso.com")

        metadata = extract_metadata(decode_token(token), now=NOW)

        assert metadata.email == "ann@contoso.com"

    def test_user_id_falls_back_to_sub(self) -> None:
        metadata = extract_metadata(decode_token(_token(oid=None, sub="subject-1")), now=NOW)

        assert metadata.user_id == "subject-1"

    def test_profile_takes_precedence(self) -> None:
        """Given a /me profile, its mail and displayName win over claims."""
        profile = {"mail": "ann.example@contoso.com", "displayName": "Ann E."}

        metadata = extract_metadata(decode_token(_token()), profile, now=NOW)

        assert metadata.email == "ann.example@contoso.com"
        assert metadata.name == "Ann E."

    def test_to_dict_has_no_internal_exp(self) -> None:
        data = extract_metadata(decode_token(_token()), now=NOW).to_dict()

        assert "exp" not in data
        assert set(data) == {
            "user",
            "app",
            "scopes",
            "expires_at",
            "expires_in_seconds",
            "is_expiring_soon",
            "issued_at",
        }


# =============================================================================
# full_validate
# =============================================================================


def _validator(handler: Any) -> UpstreamTokenValidator:
    return UpstreamTokenValidator(httpx.AsyncClient(transport=httpx.MockTransport(handler)), GRAPH)


def _live_token() -> str:
    now = int(time.time())
    return _token(iat=now - 60, exp=now + 3600)


class TestFullValidate:
    """Tests for UpstreamTokenValidator.full_validate."""

    async def test_me_check_success_merges_profile(self) -> None:
        """Given a 200 from /me, the profile is merged into metadata."""
        # Arrange
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"mail": "ann@contoso.com", "displayName": "Ann"})

        token = _live_token()

        # Act
        result = await _validator(handler).full_validate(token)

        # Assert
        assert result.valid is True
        assert result.metadata is not None
        assert result.metadata.email == "ann@contoso.com"
        assert str(seen[0].url) == f"{GRAPH}/me"
        assert seen[0].headers["authorization"] == f"Bearer {token}"

    async def test_user_principal_name_when_no_mail(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"mail": None, "userPrincipalName": "ann@contoso.onmicrosoft.com"})

        result = await _validator(handler).full_validate(_live_token())

        assert result.metadata is not None
        assert result.metadata.email == "ann@contoso.onmicrosoft.com"

    async def test_me_check_rejection(self) -> None:
        """Given a 401 from /me, returns VALIDATION_FAILED with Graph's message."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "Lifetime validation failed"}})

        result = await _validator(handler).full_validate(_live_token())

        assert result.valid is False
        assert result.error_code == UpstreamTokenErrorCode.VALIDATION_FAILED
        assert "Lifetime validation failed" in (result.message or "")

    async def test_me_check_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        result = await _validator(handler).full_validate(_live_token())

        assert result.error_code == UpstreamTokenErrorCode.VALIDATION_FAILED
        assert "timed out" in (result.message or "")

    async def test_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        result = await _validator(handler).full_validate(_live_token())

        assert result.error_code == UpstreamTokenErrorCode.VALIDATION_FAILED

    async def test_quick_failure_skips_me_check(self) -> None:
        """A structurally invalid token never reaches Graph."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        result = await _validator(handler).full_validate("..")

        assert result.error_code == UpstreamTokenErrorCode.INVALID_FORMAT
        assert calls == []
