"""Tests for configuration models, environment loading and load/save behavior."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from ms365_gateway.config import (
    AppConfig,
    GatewayTokenConfig,
    LoggingConfig,
    ServerConfig,
    UpstreamConfig,
    load_config,
)
from ms365_gateway.exceptions import ConfigurationError

SECRET = "config-test-secret-value-with-enough-bytes"


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def production_env() -> dict[str, str]:
    """Minimal production environment."""
    return {"MCP_TOKEN_SECRET": SECRET}


@pytest.fixture
def valid_config_dict() -> dict:
    """Minimal valid configuration document."""
    return {
        "mode": "production",
        "gateway_tokens": {"secret": SECRET},
        "upstream": {"client_id": "file-client-id"},
        "cors": {"allowed_origins": ["https://app.example.com"]},
    }


# ============================================================================
# Model Tests
# ============================================================================


class TestUpstreamConfig:
    """Tests for UpstreamConfig defaults and derived endpoints."""

    def test_defaults(self) -> None:
        """Given no values, targets the common tenant and Graph v1.0."""
        config = UpstreamConfig()

        assert config.client_id is None
        assert config.tenant_id == "common"
        assert config.redirect_uri == "http://localhost:3000/api/auth/callback"
        assert config.graph_base_url == "https://graph.microsoft.com/v1.0"

    def test_endpoints_use_tenant(self) -> None:
        """Authority endpoints are built from host and tenant."""
        config = UpstreamConfig(tenant_id="contoso.onmicrosoft.com")

        assert config.authority == "https://login.microsoftonline.com/contoso.onmicrosoft.com"
        assert config.token_endpoint.endswith("/contoso.onmicrosoft.com/oauth2/v2.0/token")
        assert config.authorize_endpoint.endswith("/oauth2/v2.0/authorize")


class TestGatewayTokenConfig:
    """Tests for GatewayTokenConfig validation."""

    def test_lifetimes_default(self) -> None:
        config = GatewayTokenConfig(secret=SECRET)

        assert config.algorithm == "HS256"
        assert config.short_lived_seconds == 3600
        assert config.long_lived_seconds == 86400

    def test_empty_secret_rejected(self) -> None:
        """Given an empty secret, raises ValidationError."""
        with pytest.raises(ValidationError):
            GatewayTokenConfig(secret="")

    def test_secret_not_in_repr(self) -> None:
        assert SECRET not in repr(GatewayTokenConfig(secret=SECRET))


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_base_url_from_port(self) -> None:
        assert ServerConfig(port=8080).base_url == "http://localhost:8080"

    def test_public_base_url_wins(self) -> None:
        """Given a public base URL, it is used without a trailing slash."""
        config = ServerConfig(public_base_url="https://gw.example.com/")

        assert config.base_url == "https://gw.example.com"

    def test_port_range(self) -> None:
        with pytest.raises(ValidationError):
            ServerConfig(port=70000)


class TestLoggingConfig:
    """Tests for LoggingConfig."""

    def test_no_log_dir_means_no_file(self) -> None:
        assert LoggingConfig().system_log_path is None

    def test_log_dir_gives_system_log_path(self, tmp_path: Path) -> None:
        config = LoggingConfig(log_dir=str(tmp_path))

        assert config.system_log_path == tmp_path / "system.jsonl"


class TestAppConfigModes:
    """Tests for deployment-mode derived properties."""

    def test_allow_all_origins_only_in_development_without_allowlist(self) -> None:
        dev = AppConfig(mode="development", gateway_tokens=GatewayTokenConfig(secret=SECRET))
        prod = AppConfig(mode="production", gateway_tokens=GatewayTokenConfig(secret=SECRET))
        dev_listed = AppConfig.model_validate(
            {
                "mode": "development",
                "gateway_tokens": {"secret": SECRET},
                "cors": {"allowed_origins": ["https://app.example.com"]},
            }
        )

        assert dev.allow_all_origins is True
        assert prod.allow_all_origins is False
        assert dev_listed.allow_all_origins is False


# ============================================================================
# Environment Tests
# ============================================================================


class TestFromEnv:
    """Tests for AppConfig.from_env."""

    def test_production_requires_secret(self) -> None:
        """Given production mode and no MCP_TOKEN_SECRET, raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="MCP_TOKEN_SECRET"):
            AppConfig.from_env({})

    def test_development_generates_secret(self) -> None:
        """Given development mode and no secret, a random secret is generated."""
        # Act
        first = AppConfig.from_env({"NODE_ENV": "development"})
        second = AppConfig.from_env({"NODE_ENV": "development"})

        # Assert
        assert first.is_development is True
        assert first.gateway_tokens.secret
        assert first.gateway_tokens.secret != second.gateway_tokens.secret
        assert first.logging.log_level == "DEBUG"

    def test_gateway_mode_overrides_node_env(self) -> None:
        config = AppConfig.from_env({"GATEWAY_MODE": "production", "NODE_ENV": "development", "MCP_TOKEN_SECRET": SECRET})

        assert config.mode == "production"

    def test_reads_upstream_registration(self, production_env: dict[str, str]) -> None:
        """MICROSOFT_* variables populate the upstream section."""
        # Arrange
        env = {
            **production_env,
            "MICROSOFT_CLIENT_ID": "client-123",
            "MICROSOFT_CLIENT_SECRET": "shh",
            "MICROSOFT_TENANT_ID": "contoso",
            "MICROSOFT_REDIRECT_URI": "https://gw.example.com/api/auth/callback",
            "MICROSOFT_SCOPES": "User.Read Mail.Read,offline_access",
        }

        # Act
        config = AppConfig.from_env(env)

        # Assert
        assert config.upstream.client_id == "client-123"
        assert config.upstream.client_secret == "shh"
        assert config.upstream.tenant_id == "contoso"
        assert config.upstream.redirect_uri == "https://gw.example.com/api/auth/callback"
        assert config.upstream.scopes == ["User.Read", "Mail.Read", "offline_access"]

    def test_rate_limit_window_in_milliseconds(self, production_env: dict[str, str]) -> None:
        """RATE_LIMIT_WINDOW_MS is converted to whole seconds."""
        env = {**production_env, "RATE_LIMIT_WINDOW_MS": "60000", "RATE_LIMIT_MAX": "10", "RATE_LIMIT_AUTH_MAX": "2"}

        config = AppConfig.from_env(env)

        assert config.rate_limit.window_seconds == 60
        assert config.rate_limit.max_requests == 10
        assert config.rate_limit.auth_max_requests == 2

    def test_cors_origins_comma_separated(self, production_env: dict[str, str]) -> None:
        env = {**production_env, "CORS_ALLOWED_ORIGINS": "https://a.example.com, https://b.example.com,"}

        config = AppConfig.from_env(env)

        assert config.cors.allowed_origins == ["https://a.example.com", "https://b.example.com"]

    def test_non_integer_port_rejected(self, production_env: dict[str, str]) -> None:
        """Given PORT=abc, raises ConfigurationError naming the variable."""
        with pytest.raises(ConfigurationError, match="PORT"):
            AppConfig.from_env({**production_env, "PORT": "abc"})

    def test_invalid_storage_backend_rejected(self, production_env: dict[str, str]) -> None:
        with pytest.raises(ConfigurationError):
            AppConfig.from_env({**production_env, "GATEWAY_STORAGE": "floppy"})

    def test_env_overrides_base(self, valid_config_dict: dict) -> None:
        """Environment values win over a loaded base config."""
        # Arrange
        base = AppConfig.model_validate(valid_config_dict)

        # Act
        config = AppConfig.from_env({"MICROSOFT_CLIENT_ID": "env-client-id", "PORT": "4000"}, base=base)

        # Assert
        assert config.upstream.client_id == "env-client-id"
        assert config.server.port == 4000
        assert config.gateway_tokens.secret == SECRET
        assert config.cors.allowed_origins == ["https://app.example.com"]


# ============================================================================
# File Tests
# ============================================================================


class TestFilePersistence:
    """Tests for save_to_file / load_from_file / load_config."""

    def test_save_and_load(self, tmp_path: Path, valid_config_dict: dict) -> None:
        """A saved config loads back unchanged."""
        # Arrange
        config = AppConfig.model_validate(valid_config_dict)
        path = tmp_path / "gateway" / "config.json"

        # Act
        config.save_to_file(path)
        loaded = AppConfig.load_from_file(path)

        # Assert
        assert loaded == config
        assert path.stat().st_mode & 0o777 == 0o600

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            AppConfig.load_from_file(tmp_path / "absent.json")

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError, match="Could not read"):
            AppConfig.load_from_file(path)

    def test_invalid_document(self, tmp_path: Path) -> None:
        """Given a document without a signing secret, raises ConfigurationError."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"mode": "production"}))

        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            AppConfig.load_from_file(path)

    def test_load_config_layers_env_on_file(
        self,
        tmp_path: Path,
        valid_config_dict: dict,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """load_config reads the file, then applies the environment."""
        # Arrange
        path = tmp_path / "config.json"
        path.write_text(json.dumps(valid_config_dict))
        monkeypatch.delenv("MCP_TOKEN_SECRET", raising=False)
        monkeypatch.delenv("MICROSOFT_CLIENT_ID", raising=False)
        monkeypatch.delenv("GATEWAY_MODE", raising=False)
        monkeypatch.delenv("NODE_ENV", raising=False)
        monkeypatch.setenv("MICROSOFT_TENANT_ID", "contoso")

        # Act
        config = load_config(path)

        # Assert
        assert config.upstream.client_id == "file-client-id"
        assert config.upstream.tenant_id == "contoso"
