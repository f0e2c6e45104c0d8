from __future__ import annotations

from typing import Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis import Redis

DEFAULT_PREFIX = "token:revoked:"


class RedisCache:
    """Revocation markers in Redis, one key per revoked refresh token.

    A present key means revoked. An absent key means nothing is known and the
    caller must consult the durable store.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = DEFAULT_PREFIX,
        socket_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self._socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, refresh_id: str) -> str:
        return f"{self.prefix}{refresh_id}"

    @staticmethod
    def _clamp_ttl(ttl_seconds: int) -> int:
        # Redis rejects zero or negative expiries
        return max(1, int(ttl_seconds))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def is_marked_revoked(self, refresh_id: str) -> bool:
        return bool(await self.client.exists(self._key(refresh_id)))

    async def mark_revoked(self, refresh_id: str, ttl_seconds: int) -> None:
        await self.client.set(
            self._key(refresh_id), "1", ex=self._clamp_ttl(ttl_seconds)
        )

    async def mark_revoked_bulk(self, pairs: Sequence[Tuple[str, int]]) -> None:
        """Write many markers in a single round trip."""
        if not pairs:
            return
        pipe = self.client.pipeline(transaction=False)
        for refresh_id, ttl_seconds in pairs:
            pipe.set(self._key(refresh_id), "1", ex=self._clamp_ttl(ttl_seconds))
        await pipe.execute()

    async def ttl(self, refresh_id: str) -> Optional[int]:
        remaining = await self.client.ttl(self._key(refresh_id))
        return remaining if remaining is not None and remaining >= 0 else None

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Count one hit against a fixed window.

        Returns ``(allowed, remaining, reset_seconds)``. ``key`` is used as
        given; callers namespace it.
        """
        window = self._clamp_ttl(window_seconds)
        pipe = self.client.pipeline(transaction=True)
        # SET NX starts the window; later hits only increment
        pipe.set(key, 0, ex=window, nx=True)
        pipe.incr(key)
        pipe.ttl(key)
        _, count, ttl = await pipe.execute()
        count = int(count)
        reset = int(ttl) if ttl is not None and int(ttl) > 0 else window
        return count <= limit, max(0, limit - count), reset

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
