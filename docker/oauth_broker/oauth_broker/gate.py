"""Bearer validation gate for the protected resource path."""

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from .errors import ForbiddenError, OAuthError, RateLimitedError, UnauthorizedError
from .security import SECURITY_HEADERS, OriginGuard, RateLimiter, resolve_client_address
from .storage import SessionStore
from .tokens import lookup_access_token
from .utils.logger import logger, mask


def extract_bearer_token(request: Request) -> str | None:
    """Return the token of an ``Authorization: Bearer`` header, if any."""
    auth_header = request.headers.get("authorization")
    if not auth_header:
        return None

    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None

    return token.strip()


class BearerValidationMiddleware(BaseHTTPMiddleware):
    """Origin guard, then rate limiter, then bearer lookup.

    Only requests at or below ``protected_path`` are checked. On success the
    access token record is placed on ``request.state.identity``.
    """

    def __init__(
        self,
        app: ASGIApp,
        store: SessionStore,
        protected_path: str = "/sse",
        origin_guard: OriginGuard | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        super().__init__(app)
        self.store = store
        self.protected_path = protected_path.rstrip("/")
        self.origin_guard = origin_guard
        self.rate_limiter = rate_limiter

    def is_protected(self, path: str) -> bool:
        return path == self.protected_path or path.startswith(f"{self.protected_path}/")

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not self.is_protected(request.url.path):
            return await call_next(request)

        address = resolve_client_address(request)

        if self.origin_guard and not self.origin_guard.is_allowed(address):
            return self._reject(ForbiddenError("Origin not allowed"))

        if self.rate_limiter and not await self.rate_limiter.check(address):
            error = RateLimitedError("Too many requests")
            error.headers["Retry-After"] = str(self.rate_limiter.window_seconds)
            return self._reject(error)

        token = extract_bearer_token(request)
        if not token:
            logger.info("No bearer token for %s, returning 401", request.url.path)
            return UnauthorizedError("Bearer token required").to_response()

        record = await lookup_access_token(token, self.store)
        if record is None:
            logger.info("Unknown or expired bearer token %s", mask(token))
            return UnauthorizedError("Invalid or expired access token").to_response()

        request.state.identity = record
        logger.debug(
            "Token validated for %s (client %s)",
            record.identity.user_id,
            record.client_id,
        )
        return await call_next(request)

    def _reject(self, error: OAuthError) -> Response:
        response = error.to_response()
        response.headers.update(SECURITY_HEADERS)
        return response
