"""Authorization endpoint and identity provider callback.

``begin_authorization`` parks the client's request as a pending session and
sends the browser to the identity provider. ``complete_authorization``
redeems that session when the provider redirects back and hands the client
its own authorization code.
"""

import secrets
from collections.abc import Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import (
    AuthorizationDeniedError,
    IdentityProviderError,
    InvalidRequestError,
    ServerError,
)
from .identity import IdentityVerifier
from .models import (
    AUTH_CODE_PREFIX,
    AUTH_CODE_TTL,
    PENDING_SESSION_PREFIX,
    PENDING_SESSION_TTL,
    AuthorizationCode,
    AuthorizationRequest,
    PendingAuthorizationSession,
)
from .storage import SessionStore
from .utils.logger import logger, mask

REQUIRED_AUTHORIZATION_PARAMS = ("response_type", "client_id", "redirect_uri")


def append_query(url: str, params: Mapping[str, str | None]) -> str:
    """Add ``params`` to ``url``, keeping any query it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


async def begin_authorization(
    params: Mapping[str, str],
    store: SessionStore,
    verifier: IdentityVerifier,
    callback_url: str,
) -> str:
    """Validate the client request, persist it and build the provider URL.

    Returns:
        URL of the identity provider's authorization page.

    Raises:
        InvalidRequestError: if a required parameter is missing. Nothing is
            written to the store in that case.
    """
    missing = [name for name in REQUIRED_AUTHORIZATION_PARAMS if not params.get(name)]
    if missing:
        logger.warning("Authorization request missing parameters: %s", missing)
        raise InvalidRequestError(f"Missing required parameter: {', '.join(missing)}")

    auth_request = AuthorizationRequest(
        response_type=params["response_type"],
        client_id=params["client_id"],
        redirect_uri=params["redirect_uri"],
        code_challenge=params.get("code_challenge") or None,
        code_challenge_method=params.get("code_challenge_method") or None,
        state=params.get("state") or None,
        scope=params.get("scope") or None,
    )

    session = PendingAuthorizationSession(
        session_id=secrets.token_urlsafe(32),
        request=auth_request,
    )
    await store.put(
        f"{PENDING_SESSION_PREFIX}{session.session_id}",
        session.model_dump_json(),
        PENDING_SESSION_TTL,
    )

    logger.info(
        "Created pending session %s for client %s -> %s",
        mask(session.session_id),
        auth_request.client_id,
        auth_request.redirect_uri,
    )

    return append_query(
        verifier.authorization_url,
        verifier.authorization_params(callback_url, session.session_id),
    )


async def complete_authorization(
    params: Mapping[str, str],
    store: SessionStore,
    verifier: IdentityVerifier,
    callback_url: str,
) -> str:
    """Redeem the pending session named by ``state`` and mint a code.

    Returns:
        The client's original redirect URI carrying the new code and the
        client's own state.

    Raises:
        InvalidRequestError: on missing parameters or an unknown, expired
            or already redeemed session.
        ServerError: if the identity provider exchange fails.
    """
    provider_error = params.get("error")
    state = params.get("state")
    code = params.get("code")

    if provider_error:
        return await _reject_authorization(params, store, provider_error)

    if not code or not state:
        logger.warning("Identity callback missing code or state")
        raise InvalidRequestError("Missing code or state")

    session = await _take_session(store, state)
    auth_request = session.request

    try:
        identity = await verifier.exchange_code(code, callback_url)
    except IdentityProviderError as e:
        logger.error(
            "Identity provider exchange failed for session %s: %s", mask(state), e
        )
        raise ServerError() from e

    auth_code = AuthorizationCode(
        code=secrets.token_urlsafe(32),
        client_id=auth_request.client_id,
        redirect_uri=auth_request.redirect_uri,
        code_challenge=auth_request.code_challenge,
        code_challenge_method=auth_request.code_challenge_method,
        scope=auth_request.scope,
        identity=identity,
    )
    await store.put(
        f"{AUTH_CODE_PREFIX}{auth_code.code}",
        auth_code.model_dump_json(),
        AUTH_CODE_TTL,
    )

    logger.info(
        "Issued authorization code %s to client %s for %s",
        mask(auth_code.code),
        auth_code.client_id,
        identity.user_id,
    )

    return append_query(
        auth_request.redirect_uri,
        {"code": auth_code.code, "state": auth_request.state},
    )


async def _take_session(store: SessionStore, state: str) -> PendingAuthorizationSession:
    stored = await store.take(f"{PENDING_SESSION_PREFIX}{state}")
    if stored is None:
        logger.warning("Pending session %s not found or expired", mask(state))
        raise InvalidRequestError("Invalid or expired session")
    return PendingAuthorizationSession.model_validate_json(stored)


async def _reject_authorization(
    params: Mapping[str, str], store: SessionStore, provider_error: str
) -> str:
    """Relay an identity provider error back to the client."""
    description = params.get("error_description")
    logger.warning(
        "Identity provider returned error: %s - %s",
        provider_error,
        description or "No description",
    )

    state = params.get("state")
    stored = await store.take(f"{PENDING_SESSION_PREFIX}{state}") if state else None
    if stored is None:
        raise AuthorizationDeniedError(
            provider_error, description or "Authorization failed at identity provider"
        )

    auth_request = PendingAuthorizationSession.model_validate_json(stored).request
    return append_query(
        auth_request.redirect_uri,
        {
            "error": provider_error,
            "error_description": description,
            "state": auth_request.state,
        },
    )
