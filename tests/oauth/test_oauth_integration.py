"""Integration tests for the broker with realistic client scenarios."""

import pytest
from fastapi.testclient import TestClient

from conftest import ALLOWED_IP, CLIENT_REDIRECT, PKCE_CHALLENGE, PKCE_VERIFIER, query_params
from oauth_broker.server import create_app
from oauth_broker.storage import MemorySessionStore


class TestOAuthIntegration:
    """Full client journey: discovery, registration, authorization, token, resource."""

    @pytest.fixture
    def client(self, settings, store, verifier):
        settings.enable_ip_allowlist = True
        settings.rate_limit_max_requests = 50
        app = create_app(
            settings, store=store, verifier=verifier, rate_limit_store=MemorySessionStore()
        )
        with TestClient(app, follow_redirects=False) as test_client:
            yield test_client

    def test_full_oauth_flow_success(self, client, store):
        # Step 1: discovery
        metadata = client.get("/.well-known/oauth-authorization-server").json()
        assert metadata["code_challenge_methods_supported"] == ["S256"]

        # Step 2: dynamic client registration
        registration = client.post(
            "/register",
            json={"client_name": "Claude", "redirect_uris": [CLIENT_REDIRECT]},
        )
        assert registration.status_code == 201
        client_id = registration.json()["client_id"]

        # Step 3: authorization request
        auth_response = client.get(
            "/authorize",
            params={
                "response_type": "code",
                "client_id": client_id,
                "redirect_uri": CLIENT_REDIRECT,
                "code_challenge": PKCE_CHALLENGE,
                "code_challenge_method": "S256",
                "state": "xyz",
            },
        )
        assert auth_response.status_code == 302
        session_id = query_params(auth_response.headers["location"])["state"]

        # Step 4: identity provider redirects back
        callback = client.get(
            "/oauth/callback", params={"code": "idp-code", "state": session_id}
        )
        assert callback.status_code == 302
        client_params = query_params(callback.headers["location"])
        assert client_params["state"] == "xyz"

        # Step 5: token exchange
        token_response = client.post(
            "/token",
            data={
                "grant_type": "authorization_code",
                "code": client_params["code"],
                "code_verifier": PKCE_VERIFIER,
                "client_id": client_id,
                "redirect_uri": CLIENT_REDIRECT,
            },
        )
        assert token_response.status_code == 200
        access_token = token_response.json()["access_token"]

        # Step 6: protected resource from an allowed address
        headers = {"Authorization": f"Bearer {access_token}", "CF-Connecting-IP": ALLOWED_IP}
        resource = client.get("/sse", headers=headers)
        assert resource.status_code == 200
        assert resource.json()["client_id"] == client_id

        # The same token from an unlisted address is refused
        headers["CF-Connecting-IP"] = "203.0.113.50"
        assert client.get("/sse", headers=headers).status_code == 403

        # Only the client registration and the access token remain
        assert len(store) == 2

    def test_replayed_callback_and_code(self, client):
        auth_response = client.get(
            "/authorize",
            params={
                "response_type": "code",
                "client_id": "c1",
                "redirect_uri": CLIENT_REDIRECT,
                "code_challenge": PKCE_CHALLENGE,
                "code_challenge_method": "S256",
            },
        )
        session_id = query_params(auth_response.headers["location"])["state"]

        callback = client.get("/oauth/callback", params={"code": "a", "state": session_id})
        code = query_params(callback.headers["location"])["code"]
        assert "state" not in query_params(callback.headers["location"])

        replay = client.get("/oauth/callback", params={"code": "a", "state": session_id})
        assert replay.status_code == 400

        form = {"grant_type": "authorization_code", "code": code, "code_verifier": PKCE_VERIFIER}
        assert client.post("/token", data=form).status_code == 200
        assert client.post("/token", data=form).status_code == 400

    @pytest.mark.parametrize(
        "endpoint,method",
        [
            ("/health", "GET"),
            ("/.well-known/oauth-protected-resource", "GET"),
            ("/.well-known/oauth-authorization-server", "GET"),
            ("/register", "POST"),
            ("/authorize", "GET"),
            ("/oauth/callback", "GET"),
            ("/token", "POST"),
        ],
    )
    def test_endpoint_availability(self, client, endpoint, method):
        """Public endpoints are routed and never gated."""
        if method == "GET":
            response = client.get(endpoint)
        else:
            response = client.post(endpoint, json={})

        assert response.status_code not in (401, 403, 404)
