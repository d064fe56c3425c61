"""Application configuration for ms365-gateway.

Defines configuration models for the upstream Microsoft identity platform,
gateway token signing, rate limits, CORS, storage, logging and the HTTP
server. Configuration comes from environment variables, optionally layered
on top of a JSON config file stored in the protected config directory.

Example usage:
    # From the process environment
    config = AppConfig.from_env()

    # From a saved file, with environment overrides applied on top
    config = AppConfig.from_env(base=AppConfig.load_from_file(config_path))

    # Persist for later runs
    config.save_to_file(config_path)
"""

from __future__ import annotations

__all__ = [
    "AppConfig",
    "CorsConfig",
    "GatewayTokenConfig",
    "LoggingConfig",
    "RateLimitSettings",
    "ServerConfig",
    "StorageConfig",
    "UpstreamConfig",
    "get_config_path",
    "load_config",
]

import json
import os
import secrets
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, ValidationError

from ms365_gateway.constants import (
    AUTHORITY_HOST,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_RATE_LIMIT_AUTH_MAX,
    DEFAULT_RATE_LIMIT_MAX,
    DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
    DEFAULT_REDIRECT_URI,
    DEFAULT_SCOPES,
    DEFAULT_TENANT_ID,
    GRAPH_BASE_URL,
    LONG_LIVED_TOKEN_SECONDS,
    PROTECTED_CONFIG_DIR,
    SHORT_LIVED_TOKEN_SECONDS,
    SSE_KEEPALIVE_SECONDS,
)
from ms365_gateway.exceptions import ConfigurationError
from ms365_gateway.telemetry.system.system_logger import get_system_logger

CONFIG_FILE_NAME = "config.json"


def get_config_path() -> Path:
    """Default location of the saved configuration file."""
    return Path(PROTECTED_CONFIG_DIR) / CONFIG_FILE_NAME


# =============================================================================
# Upstream Authority
# =============================================================================


class UpstreamConfig(BaseModel):
    """Microsoft identity platform application registration.

    Attributes:
        client_id: Application (client) id. Required for the interactive
            and refresh flows; token exchange works without it.
        client_secret: Optional confidential-client secret.
        tenant_id: Directory tenant, or "common" for multi-tenant apps.
        redirect_uri: Callback URL registered for the authorization-code flow.
        scopes: Delegated scopes requested at login.
        graph_base_url: Graph API root used for /me checks and tool calls.
        authority_host: Login host the authority URL is built from.
    """

    client_id: str | None = None
    client_secret: str | None = None
    tenant_id: str = Field(default=DEFAULT_TENANT_ID, min_length=1)
    redirect_uri: str = Field(default=DEFAULT_REDIRECT_URI, min_length=1)
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    graph_base_url: str = Field(default=GRAPH_BASE_URL, min_length=1)
    authority_host: str = Field(default=AUTHORITY_HOST, min_length=1)

    @property
    def authority(self) -> str:
        """Authority URL for this tenant."""
        return f"{self.authority_host.rstrip('/')}/{self.tenant_id}"

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/token"


# =============================================================================
# Gateway Tokens
# =============================================================================


class GatewayTokenConfig(BaseModel):
    """Signing settings for first-party gateway tokens.

    Attributes:
        secret: Symmetric signing secret. Never logged.
        algorithm: JWS algorithm, fixed at service init.
        short_lived_seconds: Lifetime of short-lived tokens.
        long_lived_seconds: Lifetime of long-lived tokens.
    """

    secret: str = Field(min_length=1, repr=False)
    algorithm: Literal["HS256", "HS384", "HS512"] = "HS256"
    short_lived_seconds: int = Field(default=SHORT_LIVED_TOKEN_SECONDS, gt=0)
    long_lived_seconds: int = Field(default=LONG_LIVED_TOKEN_SECONDS, gt=0)


# =============================================================================
# Rate Limits and CORS
# =============================================================================


class RateLimitSettings(BaseModel):
    """Per-IP request budgets.

    Attributes:
        window_seconds: Sliding window length.
        max_requests: Budget for general API traffic.
        auth_max_requests: Smaller budget for authentication endpoints.
    """

    window_seconds: int = Field(default=DEFAULT_RATE_LIMIT_WINDOW_SECONDS, gt=0)
    max_requests: int = Field(default=DEFAULT_RATE_LIMIT_MAX, gt=0)
    auth_max_requests: int = Field(default=DEFAULT_RATE_LIMIT_AUTH_MAX, gt=0)


class CorsConfig(BaseModel):
    """CORS allowlist.

    An empty allowlist in development mode allows every origin.
    An empty allowlist in production allows none.
    """

    allowed_origins: list[str] = Field(default_factory=list)


# =============================================================================
# Storage, Logging, Server
# =============================================================================


class StorageConfig(BaseModel):
    """Secret store selection.

    Attributes:
        backend: "auto" prefers the OS keychain and falls back to an
            encrypted file; "memory" keeps everything in-process.
        directory: Location of the settings file and encrypted store.
    """

    backend: Literal["auto", "keychain", "file", "memory"] = "auto"
    directory: str = Field(default=PROTECTED_CONFIG_DIR, min_length=1)


class LoggingConfig(BaseModel):
    """Logging configuration settings.

    Attributes:
        log_dir: Directory for system.jsonl (WARNING and above). None keeps
            logging on stderr only.
        log_level: Console level.
    """

    log_dir: str | None = None
    log_level: Literal["DEBUG", "INFO", "WARNING"] = "INFO"

    @property
    def system_log_path(self) -> Path | None:
        if not self.log_dir:
            return None
        return Path(self.log_dir) / "system.jsonl"


class ServerConfig(BaseModel):
    """HTTP listener settings.

    Attributes:
        host: Bind address.
        port: Listening port.
        public_base_url: Externally visible origin, used in discovery
            documents and verification URIs. Derived from host/port if unset.
        sse_keepalive_seconds: Interval between SSE keepalive comments.
    """

    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    public_base_url: str | None = None
    sse_keepalive_seconds: float = Field(default=SSE_KEEPALIVE_SECONDS, gt=0)

    @property
    def base_url(self) -> str:
        if self.public_base_url:
            return self.public_base_url.rstrip("/")
        return f"http://localhost:{self.port}"


# =============================================================================
# Application Config
# =============================================================================


class AppConfig(BaseModel):
    """Main application configuration for ms365-gateway.

    Attributes:
        mode: Deployment mode. "development" allows all CORS origins when no
            allowlist is set, tolerates a missing signing secret and logs
            at DEBUG.
        upstream: Microsoft identity platform registration.
        gateway_tokens: Gateway token signing settings.
        rate_limit: Per-IP budgets.
        cors: CORS allowlist.
        storage: Secret store selection.
        logging: Logging settings.
        server: HTTP listener settings.
    """

    mode: Literal["development", "production"] = "production"
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    gateway_tokens: GatewayTokenConfig
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    cors: CorsConfig = Field(default_factory=CorsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def is_development(self) -> bool:
        return self.mode == "development"

    @property
    def allow_all_origins(self) -> bool:
        """True when CORS should admit any origin."""
        return self.is_development and not self.cors.allowed_origins

    def save_to_file(self, config_path: Path) -> None:
        """Save configuration to JSON file.

        Creates parent directories if they don't exist.
        Sets secure permissions (0o700) on the config directory and
        0o600 on the file, since it holds the signing secret.

        Args:
            config_path: Path where the config JSON file should be saved.
        """
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.parent.chmod(0o700)

        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(self.model_dump(), f, indent=2)

        config_path.chmod(0o600)

    @classmethod
    def load_from_file(cls, config_path: Path) -> "AppConfig":
        """Load configuration from JSON file.

        Args:
            config_path: Path to the config JSON file.

        Returns:
            AppConfig instance with loaded configuration.

        Raises:
            ConfigurationError: If the file is missing, not JSON, or invalid.
        """
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        try:
            with open(config_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Could not read configuration file {config_path}: {e}") from e
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        base: "AppConfig | None" = None,
    ) -> "AppConfig":
        """Build configuration from environment variables.

        Recognized variables:
            MICROSOFT_CLIENT_ID, MICROSOFT_CLIENT_SECRET, MICROSOFT_TENANT_ID,
            MICROSOFT_REDIRECT_URI, MICROSOFT_SCOPES (space or comma separated),
            MCP_TOKEN_SECRET, RATE_LIMIT_WINDOW_MS, RATE_LIMIT_MAX,
            RATE_LIMIT_AUTH_MAX, CORS_ALLOWED_ORIGINS, NODE_ENV or
            GATEWAY_MODE, HOST, PORT, PUBLIC_BASE_URL, GATEWAY_STORAGE,
            GATEWAY_DATA_DIR, GATEWAY_LOG_DIR, GATEWAY_LOG_LEVEL.

        Args:
            environ: Variables to read. Defaults to os.environ.
            base: Values to start from (typically a loaded config file).
                Environment values win over base values.

        Returns:
            Validated AppConfig.

        Raises:
            ConfigurationError: If a value is malformed, or no signing
                secret is available in production mode.
        """
        env = os.environ if environ is None else environ
        data: dict[str, Any] = base.model_dump() if base is not None else {}

        def section(name: str) -> dict[str, Any]:
            value: dict[str, Any] = data.setdefault(name, {})
            return value

        mode = env.get("GATEWAY_MODE") or env.get("NODE_ENV")
        if mode:
            data["mode"] = "development" if mode.strip().lower() == "development" else "production"
        data.setdefault("mode", "production")

        upstream = section("upstream")
        _copy(env, "MICROSOFT_CLIENT_ID", upstream, "client_id")
        _copy(env, "MICROSOFT_CLIENT_SECRET", upstream, "client_secret")
        _copy(env, "MICROSOFT_TENANT_ID", upstream, "tenant_id")
        _copy(env, "MICROSOFT_REDIRECT_URI", upstream, "redirect_uri")
        if env.get("MICROSOFT_SCOPES"):
            upstream["scopes"] = _split_list(env["MICROSOFT_SCOPES"].replace(" ", ","))

        tokens = section("gateway_tokens")
        _copy(env, "MCP_TOKEN_SECRET", tokens, "secret")
        if not tokens.get("secret"):
            if data["mode"] != "development":
                raise ConfigurationError(
                    "MCP_TOKEN_SECRET is required in production mode to sign gateway tokens"
                )
            tokens["secret"] = secrets.token_urlsafe(48)
            get_system_logger().warning(
                {
                    "event": "ephemeral_signing_secret",
                    "message": "MCP_TOKEN_SECRET not set; using a per-process secret. "
                    "Gateway tokens will not survive a restart.",
                }
            )

        limits = section("rate_limit")
        if env.get("RATE_LIMIT_WINDOW_MS"):
            limits["window_seconds"] = max(1, _int(env, "RATE_LIMIT_WINDOW_MS") // 1000)
        if env.get("RATE_LIMIT_MAX"):
            limits["max_requests"] = _int(env, "RATE_LIMIT_MAX")
        if env.get("RATE_LIMIT_AUTH_MAX"):
            limits["auth_max_requests"] = _int(env, "RATE_LIMIT_AUTH_MAX")

        if "CORS_ALLOWED_ORIGINS" in env:
            section("cors")["allowed_origins"] = _split_list(env["CORS_ALLOWED_ORIGINS"])

        storage = section("storage")
        _copy(env, "GATEWAY_STORAGE", storage, "backend")
        _copy(env, "GATEWAY_DATA_DIR", storage, "directory")

        logging_section = section("logging")
        _copy(env, "GATEWAY_LOG_DIR", logging_section, "log_dir")
        if env.get("GATEWAY_LOG_LEVEL"):
            logging_section["log_level"] = env["GATEWAY_LOG_LEVEL"].upper()
        elif data["mode"] == "development" and base is None:
            logging_section["log_level"] = "DEBUG"

        server = section("server")
        _copy(env, "HOST", server, "host")
        _copy(env, "PUBLIC_BASE_URL", server, "public_base_url")
        if env.get("PORT"):
            server["port"] = _int(env, "PORT")

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


def _copy(env: Mapping[str, str], var: str, target: dict[str, Any], key: str) -> None:
    value = env.get(var)
    if value:
        target[key] = value.strip()


def _int(env: Mapping[str, str], var: str) -> int:
    try:
        return int(env[var])
    except ValueError as e:
        raise ConfigurationError(f"{var} must be an integer, got {env[var]!r}") from e


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config(config_path: Path | None = None) -> AppConfig:
    """Environment configuration, layered on the saved file when one exists.

    Args:
        config_path: Config file location. Defaults to get_config_path().

    Raises:
        ConfigurationError: The file or an environment value is invalid.
    """
    path = config_path or get_config_path()
    base = AppConfig.load_from_file(path) if path.exists() else None
    return AppConfig.from_env(base=base)
