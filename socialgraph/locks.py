"""
Token-guarded distributed lock on Redis.

acquire  — SET key token NX PX ttl: one round-trip, expires on its own.
release  — Lua compare-and-delete, so a holder whose lock already expired
           (and was re-acquired by someone else) cannot delete the new
           owner's key.
"""
import logging
import uuid

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "lock:like:post"

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
else
  return 0
end
"""


def new_token() -> str:
    return uuid.uuid4().hex


class DistributedLock:
    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_ms: int = 300,
        key_prefix: str = LOCK_KEY_PREFIX,
    ) -> None:
        self._redis = redis
        self.ttl_ms = ttl_ms
        self._key_prefix = key_prefix
        self._release_script = redis.register_script(RELEASE_SCRIPT)

    def key(self, resource_id: int) -> str:
        return f"{self._key_prefix}:{resource_id}"

    async def acquire(self, resource_id: int, token: str) -> bool:
        """Try once; True if `token` now owns the lock."""
        ok = await self._redis.set(self.key(resource_id), token, nx=True, px=self.ttl_ms)
        return bool(ok)

    async def release(self, resource_id: int, token: str) -> bool:
        """Delete the lock only if `token` still owns it. True if deleted."""
        deleted = await self._release_script(keys=[self.key(resource_id)], args=[token])
        if not deleted:
            logger.debug("Lock %s no longer held by %s", self.key(resource_id), token)
        return bool(deleted)
