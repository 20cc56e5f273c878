"""Identity verification strategies for the external identity provider.

The authorization flow is the same for every provider; only the provider's
authorization URL, scope and code exchange differ. A strategy is selected
once from configuration.
"""

from abc import ABC, abstractmethod
from typing import Any

import httpx

from .errors import IdentityProviderError
from .models import IdentityReference
from .utils.logger import logger


class IdentityVerifier(ABC):
    """Exchanges an identity provider code for an identity reference."""

    name: str
    authorization_url: str
    scope: str

    def __init__(
        self,
        client_id: str,
        client_secret: str | None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport

    def authorization_params(self, redirect_uri: str, state: str) -> dict[str, str]:
        """Query parameters for the redirect to the provider."""
        return {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": self.scope,
            "state": state,
        }

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> IdentityReference:
        """Redeem ``code`` with the provider and resolve the user.

        Raises:
            IdentityProviderError: if the provider rejects the code or is
                unreachable.
        """

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _post_json(
        self, client: httpx.AsyncClient, url: str, data: dict[str, str]
    ) -> dict[str, Any]:
        try:
            response = await client.post(
                url, data=data, headers={"Accept": "application/json"}
            )
        except httpx.RequestError as e:
            raise IdentityProviderError(
                f"{self.name} token endpoint unreachable: {e}"
            ) from e

        payload = self._decode(response)
        if response.status_code != 200 or "error" in payload:
            raise IdentityProviderError(
                f"{self.name} code exchange failed: status={response.status_code}, "
                f"error={payload.get('error', 'unknown')}"
            )
        if not payload.get("access_token"):
            raise IdentityProviderError(f"{self.name} response has no access_token")
        return payload

    async def _get_json(
        self, client: httpx.AsyncClient, url: str, access_token: str
    ) -> dict[str, Any]:
        try:
            response = await client.get(
                url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.RequestError as e:
            raise IdentityProviderError(
                f"{self.name} user endpoint unreachable: {e}"
            ) from e

        if response.status_code != 200:
            raise IdentityProviderError(
                f"{self.name} user lookup failed: HTTP {response.status_code}"
            )
        return self._decode(response)

    def _decode(self, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise IdentityProviderError(
                f"{self.name} returned a non-JSON response (HTTP {response.status_code})"
            ) from e
        if not isinstance(payload, dict):
            raise IdentityProviderError(f"{self.name} returned an unexpected payload")
        return payload


class GitHubIdentityVerifier(IdentityVerifier):
    name = "github"
    authorization_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    user_url = "https://api.github.com/user"
    scope = "user:email"

    async def exchange_code(self, code: str, redirect_uri: str) -> IdentityReference:
        async with self._client() as client:
            token = await self._post_json(
                client,
                self.token_url,
                {
                    "client_id": self.client_id,
                    "client_secret": self.client_secret or "",
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
            )
            user = await self._get_json(client, self.user_url, token["access_token"])

        if user.get("id") is None:
            raise IdentityProviderError("github user response has no id")

        identity = IdentityReference(
            user_id=f"github:{user['id']}",
            provider=self.name,
            login=user.get("login"),
            email=user.get("email"),
            name=user.get("name"),
        )
        logger.info("Resolved GitHub identity %s", identity.user_id)
        return identity


class GoogleIdentityVerifier(IdentityVerifier):
    name = "google"
    authorization_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    user_url = "https://openidconnect.googleapis.com/v1/userinfo"
    scope = "openid email profile"

    def authorization_params(self, redirect_uri: str, state: str) -> dict[str, str]:
        params = super().authorization_params(redirect_uri, state)
        # Google rejects authorization requests without response_type
        params["response_type"] = "code"
        return params

    async def exchange_code(self, code: str, redirect_uri: str) -> IdentityReference:
        async with self._client() as client:
            token = await self._post_json(
                client,
                self.token_url,
                {
                    "grant_type": "authorization_code",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret or "",
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
            )
            user = await self._get_json(client, self.user_url, token["access_token"])

        if not user.get("sub"):
            raise IdentityProviderError("google userinfo response has no sub")

        identity = IdentityReference(
            user_id=f"google:{user['sub']}",
            provider=self.name,
            login=user.get("email"),
            email=user.get("email"),
            name=user.get("name"),
        )
        logger.info("Resolved Google identity %s", identity.user_id)
        return identity


_VERIFIERS: dict[str, type[IdentityVerifier]] = {
    "github": GitHubIdentityVerifier,
    "google": GoogleIdentityVerifier,
}


def create_identity_verifier(
    name: str,
    client_id: str,
    client_secret: str | None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> IdentityVerifier:
    """Select the identity verification strategy named in configuration."""
    try:
        verifier_cls = _VERIFIERS[name]
    except KeyError:
        raise ValueError(f"Unsupported identity provider: {name}") from None
    return verifier_cls(client_id, client_secret, transport=transport)
