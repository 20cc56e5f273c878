"""Tests for environment configuration loading."""

import os
from unittest.mock import patch

import pytest

from oauth_broker.config import DEFAULT_IP_ALLOWLIST, load_settings, validate_protected_path


class TestLoadSettings:
    def test_defaults(self, mock_env_vars):
        settings = load_settings()

        assert settings.idp_client_id == "env-client-id"
        assert settings.idp_client_secret == "env-client-secret"
        assert settings.identity_provider == "github"
        assert settings.session_store_url is None
        assert settings.rate_limit_enabled is False
        assert settings.rate_limit_max_requests == 100
        assert settings.rate_limit_window_seconds == 60
        assert settings.enable_ip_allowlist is False
        assert settings.ip_allowlist == DEFAULT_IP_ALLOWLIST
        assert settings.protected_resource_path == "/sse"
        assert settings.force_https_domains == []

    def test_overrides(self, mock_env_vars):
        env = {
            "IDENTITY_PROVIDER": "Google",
            "SESSION_STORE_URL": "redis://cache:6379/0",
            "RATE_LIMIT_STORE_URL": "redis://cache:6379/1",
            "RATE_LIMIT_MAX_REQUESTS": "20",
            "RATE_LIMIT_WINDOW_SECONDS": "10",
            "ENABLE_IP_ALLOWLIST": "true",
            "IP_ALLOWLIST": "10.0.0.1, 10.0.0.2",
            "ISSUER_URL": "https://broker.example.com/",
            "FORCE_HTTPS_DOMAINS": "example.com,example.org",
            "PROTECTED_RESOURCE_PATH": "mcp/",
            "RESOURCE_UPSTREAM_URL": "http://mcp-server:8080",
        }
        with patch.dict(os.environ, env):
            settings = load_settings()

        assert settings.identity_provider == "google"
        assert settings.session_store_url == "redis://cache:6379/0"
        assert settings.rate_limit_enabled is True
        assert settings.rate_limit_max_requests == 20
        assert settings.rate_limit_window_seconds == 10
        assert settings.enable_ip_allowlist is True
        assert settings.ip_allowlist == ["10.0.0.1", "10.0.0.2"]
        assert settings.issuer_url == "https://broker.example.com"
        assert settings.force_https_domains == ["example.com", "example.org"]
        assert settings.protected_resource_path == "/mcp"
        assert settings.resource_upstream_url == "http://mcp-server:8080"

    def test_missing_client_id(self, mock_env_vars):
        with patch.dict(os.environ, {"IDP_CLIENT_ID": ""}):
            with pytest.raises(ValueError, match="IDP_CLIENT_ID"):
                load_settings()

    def test_missing_secret_is_allowed(self, mock_env_vars):
        with patch.dict(os.environ, {"IDP_CLIENT_SECRET": ""}):
            assert load_settings().idp_client_secret is None

    def test_unknown_provider(self, mock_env_vars):
        with patch.dict(os.environ, {"IDENTITY_PROVIDER": "gitlab"}):
            with pytest.raises(ValueError, match="Unsupported IDENTITY_PROVIDER"):
                load_settings()

    def test_invalid_rate_limit(self, mock_env_vars):
        with patch.dict(os.environ, {"RATE_LIMIT_MAX_REQUESTS": "lots"}):
            with pytest.raises(ValueError, match="rate limit"):
                load_settings()

    @pytest.mark.parametrize(
        "path", ["/", "", "/authorize", "/token/", "/oauth", "/.well-known", "/register"]
    )
    def test_protected_path_cannot_cover_broker_routes(self, mock_env_vars, path):
        with patch.dict(os.environ, {"PROTECTED_RESOURCE_PATH": path}):
            with pytest.raises(ValueError, match="PROTECTED_RESOURCE_PATH"):
                load_settings()


class TestValidateProtectedPath:
    @pytest.mark.parametrize(
        "path,expected",
        [("/sse", "/sse"), ("mcp/", "/mcp"), ("/api/mcp", "/api/mcp"), ("/oauth-mcp", "/oauth-mcp")],
    )
    def test_accepted_paths(self, path, expected):
        assert validate_protected_path(path) == expected
