"""Resource providers called once a request has passed the bearer gate."""

from abc import ABC, abstractmethod

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .models import AccessTokenRecord
from .utils.logger import logger

# Headers that must not be forwarded between hops
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


class ResourceProvider(ABC):
    """Serves the protected resource for an authenticated caller."""

    @abstractmethod
    async def handle(self, request: Request, identity: AccessTokenRecord) -> Response:
        """Produce the response for ``request``."""


class IdentityEchoProvider(ResourceProvider):
    """Returns the resolved identity. Used when no upstream is configured."""

    async def handle(self, request: Request, identity: AccessTokenRecord) -> Response:
        return JSONResponse(
            {
                "authenticated": True,
                "user_id": identity.identity.user_id,
                "provider": identity.identity.provider,
                "client_id": identity.client_id,
            }
        )


class UpstreamResourceProvider(ResourceProvider):
    """Forwards authenticated requests to an upstream HTTP service."""

    def __init__(
        self,
        upstream_url: str,
        mount_path: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.upstream_url = upstream_url.rstrip("/")
        self.mount_path = mount_path.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _target_url(self, request: Request) -> str:
        suffix = request.url.path[len(self.mount_path) :]
        url = f"{self.upstream_url}{suffix}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        return url

    def _forward_headers(
        self, request: Request, identity: AccessTokenRecord
    ) -> dict[str, str]:
        headers = {
            k: v
            for k, v in request.headers.items()
            if k.lower() not in HOP_BY_HOP_HEADERS
            and k.lower() not in ("host", "authorization", "content-length")
        }
        headers["X-Authenticated-User"] = identity.identity.user_id
        headers["X-Authenticated-Provider"] = identity.identity.provider
        headers["X-OAuth-Client-Id"] = identity.client_id
        return headers

    async def handle(self, request: Request, identity: AccessTokenRecord) -> Response:
        target = self._target_url(request)
        body = await request.body()

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                upstream = await client.request(
                    request.method,
                    target,
                    content=body,
                    headers=self._forward_headers(request, identity),
                )
        except httpx.RequestError as e:
            logger.error("Upstream resource request failed: %s", e)
            return JSONResponse(
                status_code=502,
                content={
                    "error": "upstream_unavailable",
                    "error_description": "Unable to reach the resource provider",
                },
            )

        # httpx has already decoded the body, drop headers describing the wire form
        response_headers = {
            k: v
            for k, v in upstream.headers.items()
            if k.lower() not in HOP_BY_HOP_HEADERS
            and k.lower() not in ("content-encoding", "content-length")
        }

        logger.debug(
            "Upstream %s %s -> %d for %s",
            request.method,
            target,
            upstream.status_code,
            identity.identity.user_id,
        )

        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            headers=response_headers,
        )
