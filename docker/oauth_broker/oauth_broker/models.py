"""Pydantic models for broker entities kept in the session store.

Every entity is serialized to JSON before it is written and parsed back on
read. Store keys and lifetimes live next to the models they belong to.
"""

import time
from typing import Any

from pydantic import BaseModel, Field

PENDING_SESSION_PREFIX = "pending_session:"
AUTH_CODE_PREFIX = "auth_code:"
ACCESS_TOKEN_PREFIX = "access_token:"
CLIENT_PREFIX = "client:"
RATE_LIMIT_PREFIX = "rate_limit:"

PENDING_SESSION_TTL = 3600
AUTH_CODE_TTL = 600
ACCESS_TOKEN_TTL = 3600
CLIENT_REGISTRATION_TTL = 30 * 24 * 60 * 60


class AuthorizationRequest(BaseModel):
    """The client's original OAuth authorization request."""

    response_type: str
    client_id: str
    redirect_uri: str
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    state: str | None = None
    scope: str | None = None


class IdentityReference(BaseModel):
    """Identity resolved through the external identity provider."""

    user_id: str
    provider: str
    login: str | None = None
    email: str | None = None
    name: str | None = None


class PendingAuthorizationSession(BaseModel):
    session_id: str
    request: AuthorizationRequest
    created_at: float = Field(default_factory=time.time)


class AuthorizationCode(BaseModel):
    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    scope: str | None = None
    identity: IdentityReference
    issued_at: float = Field(default_factory=time.time)


class AccessTokenRecord(BaseModel):
    token: str
    client_id: str
    identity: IdentityReference
    scope: str | None = None
    issued_at: float = Field(default_factory=time.time)


class ClientRegistration(BaseModel):
    client_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)


class RateLimitCounter(BaseModel):
    count: int = 0
    window_start: float


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = ACCESS_TOKEN_TTL
    refresh_token: str
