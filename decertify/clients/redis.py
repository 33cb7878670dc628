"""
deCertify — Redis Client

Async Redis for durable request records, document blobs, secondary
indexes, and the per-request issuance lease.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

import orjson
import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from decertify.config import RedisConfig

logger = structlog.get_logger()

# Delete the lock only if it is still held by the caller
_RELEASE_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisClient:
    """
    Async Redis client with key prefixing for multi-instance support.
    """

    def __init__(self, config: RedisConfig) -> None:
        self._config = config
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        self._client = Redis.from_url(
            self._config.full_url,
            decode_responses=True,
        )
        # Verify connectivity
        await self._client.ping()
        logger.info("redis_connected", prefix=self._config.prefix)

    async def close(self) -> None:
        """Close the connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    def _key(self, key: str) -> str:
        """Prefix a key with the instance prefix."""
        return f"{self._config.prefix}:{key}"

    async def health_check(self) -> dict[str, Any]:
        """Check connectivity."""
        try:
            await self.client.ping()
            return {"status": "connected"}
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            return {"status": "disconnected", "error": str(e)}

    # ─── JSON Helpers ─────────────────────────────────────────────

    async def get_json(self, key: str) -> Any | None:
        """Retrieve a JSON value."""
        raw = await self.client.get(self._key(key))
        if raw is None:
            return None
        return orjson.loads(raw)

    async def set_text(self, key: str, value: str, only_if_absent: bool = False) -> bool:
        """Store a plain string. Returns False if only_if_absent and the key exists."""
        result = await self.client.set(self._key(key), value, nx=only_if_absent)
        return bool(result)

    async def get_text(self, key: str) -> str | None:
        return await self.client.get(self._key(key))

    # ─── Set Operations (Secondary Indexes) ───────────────────────

    async def set_members(self, key: str) -> set[str]:
        return set(await self.client.smembers(self._key(key)))

    # ─── Locks (Issuance Lease) ───────────────────────────────────

    async def acquire_lock(self, key: str, holder: str, ttl_s: int) -> bool:
        """Take an exclusive, expiring lock. Returns False if already held."""
        acquired = await self.client.set(self._key(key), holder, nx=True, ex=ttl_s)
        return bool(acquired)

    async def release_lock(self, key: str, holder: str) -> bool:
        """Release a lock only if `holder` still owns it."""
        released = await self.client.eval(_RELEASE_LOCK_SCRIPT, 1, self._key(key), holder)
        return bool(released)

    async def lock_holder(self, key: str) -> str | None:
        return await self.client.get(self._key(key))

    # ─── Compare-and-Set ──────────────────────────────────────────

    async def compare_and_set_json(
        self,
        key: str,
        value: Any,
        expect: Callable[[Any | None], bool],
        member: str = "",
        add_to_sets: Iterable[str] = (),
        remove_from_sets: Iterable[str] = (),
    ) -> bool:
        """
        Atomically replace a JSON value if `expect(current)` holds.

        Uses WATCH/MULTI optimistic locking; index set updates for `member`
        are applied in the same transaction. Returns False when the
        expectation fails or the key changed underneath us.
        """
        k = self._key(key)
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(k)
                raw = await pipe.get(k)
                current = orjson.loads(raw) if raw is not None else None
                if not expect(current):
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(k, orjson.dumps(value).decode())
                for s in add_to_sets:
                    pipe.sadd(self._key(s), member)
                for s in remove_from_sets:
                    pipe.srem(self._key(s), member)
                await pipe.execute()
            except WatchError:
                logger.debug("redis_cas_conflict", key=key)
                return False
        return True
