"""Security module for identity, credentials, and request budgets.

This module provides:
- Authentication: upstream and gateway tokens, auth flows (security/auth/)
- Secret-aware storage (OS keychain or encrypted file fallback)
- Per-IP sliding-window rate limiting

Note: Security exceptions are defined in ms365_gateway.exceptions
"""

from ms365_gateway.security.rate_limiter import (
    API_BUCKET,
    AUTH_BUCKET,
    RateLimitDecision,
    SlidingWindowRateLimiter,
    create_rate_limiter,
)
from ms365_gateway.security.secret_store import (
    EncryptedFileSecretStore,
    KeychainSecretStore,
    MemorySecretStore,
    SecretStore,
    create_secret_store,
    get_secret_store_info,
)

__all__ = [
    "API_BUCKET",
    "AUTH_BUCKET",
    "EncryptedFileSecretStore",
    "KeychainSecretStore",
    "MemorySecretStore",
    "RateLimitDecision",
    "SecretStore",
    "SlidingWindowRateLimiter",
    "create_rate_limiter",
    "create_secret_store",
    "get_secret_store_info",
]
