"""OAuth error types and their JSON rendering."""

from fastapi import Request
from fastapi.responses import JSONResponse


class OAuthError(Exception):
    """Base class for errors that terminate a broker request.

    Each subclass fixes the OAuth ``error`` code and HTTP status. The
    description is optional and is returned to the caller as
    ``error_description``.
    """

    error: str = "server_error"
    status_code: int = 500

    def __init__(
        self, description: str | None = None, headers: dict[str, str] | None = None
    ) -> None:
        super().__init__(description or self.error)
        self.description = description
        self.headers = headers or {}

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content=self.to_dict(),
            headers=self.headers,
        )


class InvalidRequestError(OAuthError):
    error = "invalid_request"
    status_code = 400


class InvalidGrantError(OAuthError):
    error = "invalid_grant"
    status_code = 400


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"
    status_code = 400


class UnauthorizedError(OAuthError):
    error = "unauthorized"
    status_code = 401

    def __init__(self, description: str | None = None) -> None:
        super().__init__(description, headers={"WWW-Authenticate": "Bearer"})


class ForbiddenError(OAuthError):
    error = "forbidden"
    status_code = 403


class RateLimitedError(OAuthError):
    error = "rate_limited"
    status_code = 429


class AuthorizationDeniedError(OAuthError):
    """Identity provider error relayed when no client redirect is known."""

    status_code = 400

    def __init__(self, error: str, description: str | None = None) -> None:
        super().__init__(description)
        self.error = error


class ServerError(OAuthError):
    """Opaque 500. The cause is logged server-side and never returned."""

    error = "server_error"
    status_code = 500

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error}


class IdentityProviderError(Exception):
    """Raised when the external identity provider exchange fails."""


async def oauth_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """FastAPI exception handler for OAuthError."""
    if not isinstance(exc, OAuthError):
        raise exc
    return exc.to_response()
