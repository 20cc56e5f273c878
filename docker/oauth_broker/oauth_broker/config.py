"""Broker configuration loaded from environment variables."""

import os
from dataclasses import dataclass, field

from .utils.logger import logger

# Anthropic egress addresses used by Claude when calling remote MCP servers
DEFAULT_IP_ALLOWLIST = [
    "34.162.46.92",
    "34.162.102.82",
    "34.162.136.91",
    "34.162.142.92",
    "34.162.183.95",
]

SUPPORTED_IDENTITY_PROVIDERS = ("github", "google")

# Broker routes that must stay reachable without a bearer token
PUBLIC_PATHS = (
    "/authorize",
    "/oauth/callback",
    "/token",
    "/register",
    "/health",
    "/.well-known/oauth-authorization-server",
    "/.well-known/oauth-protected-resource",
)


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def validate_protected_path(path: str) -> str:
    """Normalize the gated path and refuse one that would cover a broker route.

    Raises:
        ValueError: if the path is ``/`` or equals or contains a public route.
    """
    path = path.rstrip("/")
    if path and not path.startswith("/"):
        path = f"/{path}"
    if not path:
        raise ValueError("PROTECTED_RESOURCE_PATH cannot be '/'")

    for public_path in PUBLIC_PATHS:
        if public_path == path or public_path.startswith(f"{path}/"):
            raise ValueError(
                f"PROTECTED_RESOURCE_PATH '{path}' would gate the broker route {public_path}"
            )
    return path


@dataclass
class BrokerSettings:
    """Settings for the authorization broker."""

    idp_client_id: str
    idp_client_secret: str | None = None
    identity_provider: str = "github"
    session_store_url: str | None = None
    rate_limit_store_url: str | None = None
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: int = 60
    enable_ip_allowlist: bool = False
    ip_allowlist: list[str] = field(
        default_factory=lambda: list(DEFAULT_IP_ALLOWLIST)
    )
    issuer_url: str | None = None
    force_https_domains: list[str] = field(default_factory=list)
    protected_resource_path: str = "/sse"
    resource_upstream_url: str | None = None

    @property
    def rate_limit_enabled(self) -> bool:
        return bool(self.rate_limit_store_url)


def load_settings() -> BrokerSettings:
    """Read BrokerSettings from the environment.

    Raises:
        ValueError: if the identity provider is unknown, the client id is
            missing, a numeric setting cannot be parsed, or the protected path
            would gate a broker route.
    """
    identity_provider = os.getenv("IDENTITY_PROVIDER", "github").strip().lower()
    if identity_provider not in SUPPORTED_IDENTITY_PROVIDERS:
        raise ValueError(
            f"Unsupported IDENTITY_PROVIDER '{identity_provider}', "
            f"expected one of {', '.join(SUPPORTED_IDENTITY_PROVIDERS)}"
        )

    idp_client_id = os.getenv("IDP_CLIENT_ID", "").strip()
    if not idp_client_id:
        raise ValueError("IDP_CLIENT_ID environment variable is empty or not set")

    idp_client_secret = os.getenv("IDP_CLIENT_SECRET", "").strip() or None
    if not idp_client_secret:
        logger.warning(
            "IDP_CLIENT_SECRET is not set - identity provider code exchange will fail"
        )

    try:
        rate_limit_max_requests = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
        rate_limit_window_seconds = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    except ValueError as e:
        raise ValueError(f"Invalid rate limit configuration: {e}") from e

    allowlist_env = os.getenv("IP_ALLOWLIST")
    ip_allowlist = (
        _split_list(allowlist_env) if allowlist_env else list(DEFAULT_IP_ALLOWLIST)
    )

    protected_resource_path = validate_protected_path(
        os.getenv("PROTECTED_RESOURCE_PATH", "/sse")
    )

    settings = BrokerSettings(
        idp_client_id=idp_client_id,
        idp_client_secret=idp_client_secret,
        identity_provider=identity_provider,
        session_store_url=os.getenv("SESSION_STORE_URL") or None,
        rate_limit_store_url=os.getenv("RATE_LIMIT_STORE_URL") or None,
        rate_limit_max_requests=rate_limit_max_requests,
        rate_limit_window_seconds=rate_limit_window_seconds,
        enable_ip_allowlist=os.getenv("ENABLE_IP_ALLOWLIST", "").lower() == "true",
        ip_allowlist=ip_allowlist,
        issuer_url=(os.getenv("ISSUER_URL") or "").rstrip("/") or None,
        force_https_domains=_split_list(os.getenv("FORCE_HTTPS_DOMAINS", "")),
        protected_resource_path=protected_resource_path,
        resource_upstream_url=os.getenv("RESOURCE_UPSTREAM_URL") or None,
    )

    logger.info(
        "Loaded broker configuration: provider=%s, rate limiting=%s, IP allow-list=%s",
        settings.identity_provider,
        "enabled" if settings.rate_limit_enabled else "disabled",
        "enabled" if settings.enable_ip_allowlist else "disabled",
    )
    if not settings.session_store_url or settings.session_store_url == "memory":
        logger.warning(
            "SESSION_STORE_URL not set - using in-memory session store (single process only)"
        )

    return settings
