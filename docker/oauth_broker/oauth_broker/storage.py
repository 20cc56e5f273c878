"""Key-value session store used for all broker state.

Handlers never keep entity state between requests; they read and write it
here. Two backends are provided: an in-process dictionary for development
and tests, and Redis for deployments with more than one worker.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from urllib.parse import urlparse

from redis.asyncio import Redis

from .utils.logger import logger


class SessionStore(ABC):
    """Key-value store with per-entry time-to-live."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl: int) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value, or None when absent or expired."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``. Deleting a missing key is not an error."""

    async def take(self, key: str) -> str | None:
        """Look up ``key`` and delete it in the same step.

        Used for every single-use redemption. Backends with a native
        get-and-delete override this.
        """
        value = await self.get(key)
        if value is not None:
            await self.delete(key)
        return value

    async def close(self) -> None:
        """Release backend resources."""


class MemorySessionStore(SessionStore):
    """Process-local store.

    Expired entries are dropped when read, and writes sweep the whole table
    at most once every ``sweep_interval`` seconds so keys that are never read
    again do not accumulate.
    """

    def __init__(
        self, clock: Callable[[], float] = time.time, sweep_interval: float = 60.0
    ) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self.sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    async def put(self, key: str, value: str, ttl: int) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)
        self._entries[key] = (value, now + ttl)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self.sweep_interval
        if expired:
            logger.debug("Swept %d expired session store entries", len(expired))

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


class RedisSessionStore(SessionStore):
    """Redis-backed store."""

    def __init__(
        self, *, client: Redis | None = None, url: str | None = None
    ) -> None:
        if client is not None:
            self._client = client
            self._owns_client = False
        elif url:
            self._client = Redis.from_url(url, decode_responses=True)
            self._owns_client = True
        else:
            raise ValueError("RedisSessionStore requires a client or a url")

    async def put(self, key: str, value: str, ttl: int) -> None:
        await self._client.set(name=key, value=value, ex=ttl)

    async def get(self, key: str) -> str | None:
        value = await self._client.get(name=key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def take(self, key: str) -> str | None:
        value = await self._client.getdel(name=key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def increment(self, key: str, ttl: int) -> int:
        """Atomically count a hit in a window that starts on the first hit."""
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(name=key, value=0, ex=ttl, nx=True)
            pipe.incr(name=key)
            _, count = await pipe.execute()
        return int(count)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def create_session_store(url: str | None) -> SessionStore:
    """Build a store from a binding URL (``memory`` or ``redis://...``)."""
    if not url or url == "memory":
        return MemorySessionStore()

    scheme = urlparse(url).scheme
    if scheme in ("redis", "rediss"):
        logger.info("Using Redis session store at %s", urlparse(url).hostname)
        return RedisSessionStore(url=url)

    raise ValueError(f"Unsupported session store URL scheme: {scheme or url}")
