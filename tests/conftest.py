"""Test configuration and fixtures for the OAuth broker tests."""

import os
from typing import Generator
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from oauth_broker.config import BrokerSettings
from oauth_broker.errors import IdentityProviderError
from oauth_broker.identity import IdentityVerifier
from oauth_broker.models import IdentityReference
from oauth_broker.server import create_app
from oauth_broker.storage import MemorySessionStore

ALLOWED_IP = "34.162.46.92"
CLIENT_REDIRECT = "https://claude.ai/api/mcp/auth_callback"

# RFC 7636 appendix B
PKCE_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
PKCE_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


class FakeIdentityVerifier(IdentityVerifier):
    """Identity provider stand-in that accepts any code except ``bad-code``."""

    name = "github"
    authorization_url = "https://github.com/login/oauth/authorize"
    scope = "user:email"

    def __init__(self) -> None:
        super().__init__("test-idp-client", "test-idp-secret")
        self.exchanged: list[tuple[str, str]] = []

    async def exchange_code(self, code: str, redirect_uri: str) -> IdentityReference:
        self.exchanged.append((code, redirect_uri))
        if code == "bad-code":
            raise IdentityProviderError("github code exchange failed: bad_verification_code")
        return IdentityReference(
            user_id="github:12345", provider="github", login="octocat"
        )


def query_params(url: str) -> dict[str, str]:
    """Flatten the query string of ``url`` into a dict."""
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


@pytest.fixture
def settings() -> BrokerSettings:
    """Broker settings with rate limiting and the allow-list disabled."""
    return BrokerSettings(
        idp_client_id="test-idp-client",
        idp_client_secret="test-idp-secret",
    )


@pytest.fixture
def store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture
def verifier() -> FakeIdentityVerifier:
    return FakeIdentityVerifier()


@pytest.fixture
def app(settings, store, verifier):
    return create_app(settings, store=store, verifier=verifier)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Test client that does not follow redirects."""
    with TestClient(app, follow_redirects=False) as test_client:
        yield test_client


@pytest.fixture
def authorization_params() -> dict[str, str]:
    return {
        "response_type": "code",
        "client_id": "mcp-client",
        "redirect_uri": CLIENT_REDIRECT,
        "code_challenge": PKCE_CHALLENGE,
        "code_challenge_method": "S256",
        "state": "client-state",
        "scope": "mcp",
    }


@pytest.fixture
def issue_code(client, authorization_params):
    """Run /authorize and the provider callback, returning the client's code."""

    def _issue(**overrides: str) -> str:
        params = {**authorization_params, **overrides}
        response = client.get("/authorize", params=params)
        assert response.status_code == 302
        session_id = query_params(response.headers["location"])["state"]

        callback = client.get(
            "/oauth/callback", params={"code": "idp-code", "state": session_id}
        )
        assert callback.status_code == 302
        return query_params(callback.headers["location"])["code"]

    return _issue


@pytest.fixture
def issue_token(client, issue_code):
    """Run the full flow and return a bearer token."""

    def _issue() -> str:
        code = issue_code()
        response = client.post(
            "/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": PKCE_VERIFIER,
                "client_id": "mcp-client",
                "redirect_uri": CLIENT_REDIRECT,
            },
        )
        assert response.status_code == 200
        return response.json()["access_token"]

    return _issue


@pytest.fixture
def mock_env_vars():
    """Minimal environment for load_settings."""
    env_vars = {
        "IDP_CLIENT_ID": "env-client-id",
        "IDP_CLIENT_SECRET": "env-client-secret",
    }
    with patch.dict(os.environ, env_vars, clear=True):
        yield env_vars
