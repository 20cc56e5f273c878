"""Token endpoint: authorization code + PKCE verifier -> bearer token."""

import base64
import hashlib
import hmac
import secrets
from collections.abc import Mapping

from .errors import InvalidGrantError, InvalidRequestError, UnsupportedGrantTypeError
from .models import (
    ACCESS_TOKEN_PREFIX,
    ACCESS_TOKEN_TTL,
    AUTH_CODE_PREFIX,
    AccessTokenRecord,
    AuthorizationCode,
    TokenResponse,
)
from .storage import SessionStore
from .utils.logger import logger, mask

SUPPORTED_CODE_CHALLENGE_METHOD = "S256"


def compute_code_challenge(code_verifier: str) -> str:
    """S256 challenge: unpadded base64url of the verifier's SHA-256 digest."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_code_verifier(
    code_verifier: str, code_challenge: str | None, method: str | None
) -> bool:
    """Check a PKCE verifier against the stored challenge.

    Only S256 is accepted. A missing method means ``plain`` (RFC 7636
    section 4.3) and is rejected like any other method.
    """
    if not code_challenge or method != SUPPORTED_CODE_CHALLENGE_METHOD:
        return False
    try:
        computed = compute_code_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed, code_challenge)


async def exchange_authorization_code(
    form: Mapping[str, str], store: SessionStore
) -> TokenResponse:
    """Redeem an authorization code for an access token.

    The code is deleted as soon as it is looked up, before the verifier is
    checked, so a code can never be redeemed twice. A wrong verifier
    therefore burns the code and the client must restart the flow.

    Raises:
        UnsupportedGrantTypeError: grant type other than authorization_code.
        InvalidRequestError: code or code_verifier missing.
        InvalidGrantError: unknown, expired or used code; client or redirect
            mismatch; PKCE failure.
    """
    grant_type = form.get("grant_type")
    if grant_type != "authorization_code":
        logger.warning("Token request with unsupported grant_type: %s", grant_type)
        raise UnsupportedGrantTypeError()

    code = form.get("code")
    code_verifier = form.get("code_verifier")
    if not code or not code_verifier:
        raise InvalidRequestError("Missing code or code_verifier")

    stored = await store.take(f"{AUTH_CODE_PREFIX}{code}")
    if stored is None:
        logger.warning("Authorization code %s not found, used or expired", mask(code))
        raise InvalidGrantError("Invalid or expired authorization code")

    auth_code = AuthorizationCode.model_validate_json(stored)

    client_id = form.get("client_id")
    if client_id and client_id != auth_code.client_id:
        logger.warning(
            "Authorization code %s presented by client %s, issued to %s",
            mask(code),
            client_id,
            auth_code.client_id,
        )
        raise InvalidGrantError("Authorization code was issued to another client")

    redirect_uri = form.get("redirect_uri")
    if redirect_uri and redirect_uri != auth_code.redirect_uri:
        raise InvalidGrantError("redirect_uri does not match the authorization request")

    if not verify_code_verifier(
        code_verifier, auth_code.code_challenge, auth_code.code_challenge_method
    ):
        logger.warning("PKCE verification failed for code %s", mask(code))
        raise InvalidGrantError("Invalid code verifier")

    record = AccessTokenRecord(
        token=secrets.token_urlsafe(32),
        client_id=auth_code.client_id,
        identity=auth_code.identity,
        scope=auth_code.scope,
    )
    await store.put(
        f"{ACCESS_TOKEN_PREFIX}{record.token}",
        record.model_dump_json(),
        ACCESS_TOKEN_TTL,
    )

    logger.info(
        "Issued access token %s to client %s for %s",
        mask(record.token),
        record.client_id,
        record.identity.user_id,
    )

    # TODO: persist refresh tokens once refresh_token grant redemption is supported
    return TokenResponse(
        access_token=record.token,
        expires_in=ACCESS_TOKEN_TTL,
        refresh_token=secrets.token_urlsafe(32),
    )


async def lookup_access_token(token: str, store: SessionStore) -> AccessTokenRecord | None:
    """Resolve a bearer token; None when never issued or expired."""
    stored = await store.get(f"{ACCESS_TOKEN_PREFIX}{token}")
    if stored is None:
        return None
    return AccessTokenRecord.model_validate_json(stored)
