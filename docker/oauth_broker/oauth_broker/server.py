"""FastAPI application for the OAuth authorization broker."""

import secrets
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.middleware.cors import CORSMiddleware

from .authorization import begin_authorization, complete_authorization
from .config import BrokerSettings, validate_protected_path
from .errors import InvalidRequestError, OAuthError, ServerError, oauth_error_handler
from .gate import BearerValidationMiddleware
from .identity import IdentityVerifier, create_identity_verifier
from .models import CLIENT_PREFIX, CLIENT_REGISTRATION_TTL, ClientRegistration
from .resource import IdentityEchoProvider, ResourceProvider, UpstreamResourceProvider
from .security import OriginGuard, RateLimiter
from .storage import SessionStore, create_session_store
from .tokens import exchange_authorization_code
from .utils.logger import logger

SERVICE_NAME = "oauth-broker"
SERVICE_VERSION = "0.1.0"

IDENTITY_CALLBACK_PATH = "/oauth/callback"
SCOPES_SUPPORTED = ["mcp"]

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def get_request_scheme(request: Request, settings: BrokerSettings) -> str:
    """
    Determine the scheme for URLs built from the request.

    Hosts listed in FORCE_HTTPS_DOMAINS sit behind a TLS-terminating load
    balancer and always get https.
    """
    hostname = urlparse(str(request.url)).hostname
    if not hostname:
        return str(request.url.scheme)

    should_force_https = any(
        hostname.endswith(domain) for domain in settings.force_https_domains
    )
    return "https" if should_force_https else str(request.url.scheme)


def get_base_url(request: Request) -> str:
    """Public base URL of this broker."""
    settings: BrokerSettings = request.app.state.settings
    if settings.issuer_url:
        return settings.issuer_url
    scheme = get_request_scheme(request, settings)
    return f"{scheme}://{request.url.netloc}"


def create_app(
    settings: BrokerSettings,
    *,
    store: SessionStore | None = None,
    verifier: IdentityVerifier | None = None,
    resource_provider: ResourceProvider | None = None,
    rate_limit_store: SessionStore | None = None,
) -> FastAPI:
    """Build the broker application.

    Collaborators not passed in are built from ``settings``.

    Raises:
        ValueError: if the protected path would gate a broker route.
    """
    settings.protected_resource_path = validate_protected_path(
        settings.protected_resource_path
    )
    if store is None:
        store = create_session_store(settings.session_store_url)
    if verifier is None:
        verifier = create_identity_verifier(
            settings.identity_provider,
            settings.idp_client_id,
            settings.idp_client_secret,
        )
    if resource_provider is None:
        if settings.resource_upstream_url:
            resource_provider = UpstreamResourceProvider(
                settings.resource_upstream_url, settings.protected_resource_path
            )
        else:
            resource_provider = IdentityEchoProvider()

    rate_limiter = None
    if rate_limit_store is None and settings.rate_limit_enabled:
        if settings.rate_limit_store_url == settings.session_store_url:
            rate_limit_store = store
        else:
            rate_limit_store = create_session_store(settings.rate_limit_store_url)
    if rate_limit_store is not None:
        rate_limiter = RateLimiter(
            rate_limit_store,
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )

    origin_guard = (
        OriginGuard(settings.ip_allowlist) if settings.enable_ip_allowlist else None
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "Broker startup - identity provider: %s, protected path: %s",
            verifier.name,
            settings.protected_resource_path,
        )
        yield
        logger.info("Broker shutdown requested...")
        await store.close()
        if rate_limit_store is not None and rate_limit_store is not store:
            await rate_limit_store.close()

    app = FastAPI(
        title="MCP OAuth Broker",
        description="Delegated OAuth 2.1 authorization broker for MCP clients",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.verifier = verifier
    app.state.resource_provider = resource_provider

    app.add_exception_handler(OAuthError, oauth_error_handler)

    app.add_middleware(
        BearerValidationMiddleware,
        store=store,
        protected_path=settings.protected_resource_path,
        origin_guard=origin_guard,
        rate_limiter=rate_limiter,
    )
    # Added last so it wraps the gate and answers CORS preflights first
    app.add_middleware(
        CORSMiddleware,
        allow_origins=(
            ["https://claude.ai"] if settings.enable_ip_allowlist else ["*"]
        ),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Accept",
            "MCP-Protocol-Version",
            "Authorization",
        ],
    )

    _register_routes(app, settings)
    return app


def _register_routes(app: FastAPI, settings: BrokerSettings) -> None:
    protected_path = settings.protected_resource_path

    @app.get("/")
    async def home() -> PlainTextResponse:
        return PlainTextResponse("MCP OAuth Broker")

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "service": SERVICE_NAME, "version": SERVICE_VERSION}

    @app.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server(request: Request) -> JSONResponse:
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
        base_url = get_base_url(request)
        metadata = {
            "issuer": base_url,
            "authorization_endpoint": f"{base_url}/authorize",
            "token_endpoint": f"{base_url}/token",
            "registration_endpoint": f"{base_url}/register",
            "scopes_supported": SCOPES_SUPPORTED,
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": ["S256"],
            # Public clients: PKCE replaces the client secret
            "token_endpoint_auth_methods_supported": ["none"],
        }
        return JSONResponse(metadata, headers={"Cache-Control": "public, max-age=3600"})

    @app.get("/.well-known/oauth-protected-resource")
    async def oauth_protected_resource(request: Request) -> JSONResponse:
        """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
        base_url = get_base_url(request)
        metadata = {
            "resource": f"{base_url}{protected_path}",
            "authorization_servers": [base_url],
            "scopes_supported": SCOPES_SUPPORTED,
            "bearer_methods_supported": ["header"],
        }
        return JSONResponse(metadata, headers={"Cache-Control": "public, max-age=3600"})

    @app.post("/register")
    async def dynamic_client_registration(request: Request) -> JSONResponse:
        """OAuth 2.0 Dynamic Client Registration (RFC 7591)."""
        try:
            metadata = await request.json()
        except ValueError as e:
            logger.warning("Failed to parse registration request body: %s", e)
            raise InvalidRequestError("Request body must be valid JSON") from e

        if not isinstance(metadata, dict):
            raise InvalidRequestError("Client metadata must be a JSON object")

        registration = ClientRegistration(
            client_id=secrets.token_urlsafe(16),
            metadata=metadata,
        )
        await request.app.state.store.put(
            f"{CLIENT_PREFIX}{registration.client_id}",
            registration.model_dump_json(),
            CLIENT_REGISTRATION_TTL,
        )

        logger.info(
            "Registered client %s (%s)",
            registration.client_id,
            metadata.get("client_name", "unnamed"),
        )

        body: dict[str, Any] = {
            **metadata,
            "client_id": registration.client_id,
            "client_id_issued_at": int(registration.created_at),
        }
        return JSONResponse(status_code=201, content=body, headers=NO_STORE_HEADERS)

    @app.get("/authorize")
    async def authorize(request: Request) -> Response:
        """Start the flow: park the request and send the user to the provider."""
        location = await begin_authorization(
            request.query_params,
            request.app.state.store,
            request.app.state.verifier,
            f"{get_base_url(request)}{IDENTITY_CALLBACK_PATH}",
        )
        return RedirectResponse(url=location, status_code=302)

    @app.get(IDENTITY_CALLBACK_PATH)
    async def identity_callback(request: Request) -> Response:
        """Identity provider redirect target."""
        location = await complete_authorization(
            request.query_params,
            request.app.state.store,
            request.app.state.verifier,
            f"{get_base_url(request)}{IDENTITY_CALLBACK_PATH}",
        )
        return RedirectResponse(url=location, status_code=302)

    @app.post("/token")
    async def token(request: Request) -> JSONResponse:
        """Exchange an authorization code and PKCE verifier for a bearer token."""
        started = time.monotonic()
        try:
            form = await request.form()
            params = {k: v for k, v in form.items() if isinstance(v, str)}
            token_response = await exchange_authorization_code(
                params, request.app.state.store
            )
        except OAuthError:
            raise
        except Exception as e:
            logger.exception("Token exchange failed unexpectedly: %s", e)
            raise ServerError() from e

        logger.debug("Token exchange completed in %.3fs", time.monotonic() - started)
        return JSONResponse(token_response.model_dump(), headers=NO_STORE_HEADERS)

    @app.api_route(
        protected_path,
        methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    )
    @app.api_route(
        f"{protected_path}/{{resource_path:path}}",
        methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    )
    async def protected_resource(request: Request) -> Response:
        """Forward gated requests to the resource provider."""
        identity = getattr(request.state, "identity", None)
        if identity is None:
            # The gate always sets identity on this path
            raise ServerError()
        return await request.app.state.resource_provider.handle(request, identity)
