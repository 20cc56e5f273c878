"""Origin guard and rate limiter for the protected resource path."""

import time
from collections.abc import Callable, Iterable

from starlette.requests import Request

from .models import RATE_LIMIT_PREFIX, RateLimitCounter
from .storage import SessionStore
from .utils.logger import logger

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'none'; script-src 'self'; connect-src 'self'",
}


def resolve_client_address(request: Request) -> str | None:
    """Resolve the caller's address from trusted proxy headers.

    Order: ``CF-Connecting-IP``, the first ``X-Forwarded-For`` hop, then
    ``X-Real-IP``.
    """
    address = request.headers.get("cf-connecting-ip")
    if address:
        return address.strip()

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return None


class OriginGuard:
    """Static allow-list check on the resolved caller address."""

    def __init__(self, allowed_addresses: Iterable[str]) -> None:
        self.allowed_addresses = frozenset(allowed_addresses)

    def is_allowed(self, address: str | None) -> bool:
        if not address:
            logger.warning("No client IP found in request headers")
            return False

        if address not in self.allowed_addresses:
            logger.warning("Rejected request from unauthorized IP: %s", address)
            return False

        return True


class RateLimiter:
    """Fixed-window request counter keyed by caller address.

    The default path reads the counter, increments it and writes it back.
    Those three steps are not atomic across the store, so concurrent
    requests from one address can read the same count and be admitted past
    the ceiling. When the store offers ``increment`` (Redis) the count is
    taken atomically instead.
    """

    def __init__(
        self,
        store: SessionStore,
        max_requests: int = 100,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

    async def check(self, address: str | None) -> bool:
        """Count one request from ``address``; False when over the ceiling."""
        key = f"{RATE_LIMIT_PREFIX}{address or 'unknown'}"

        increment = getattr(self.store, "increment", None)
        if increment is not None:
            count = await increment(key, self.window_seconds)
            return self._admit(address, count)

        now = self._clock()
        counter = RateLimitCounter(count=0, window_start=now)

        stored = await self.store.get(key)
        if stored:
            previous = RateLimitCounter.model_validate_json(stored)
            if now - previous.window_start < self.window_seconds:
                counter = previous

        counter.count += 1

        if not self._admit(address, counter.count):
            return False

        await self.store.put(key, counter.model_dump_json(), self.window_seconds)
        return True

    def _admit(self, address: str | None, count: int) -> bool:
        if count > self.max_requests:
            logger.warning(
                "Rate limit exceeded for %s: %d requests in %ds window (limit %d)",
                address or "unknown",
                count,
                self.window_seconds,
                self.max_requests,
            )
            return False
        return True
