"""
Redis client + like cache.

Keys (all TTL-bounded, never authoritative):
  • like:set:post:{post_id}  — SET of user ids who liked the post, plus a
                               sentinel member "0" so an empty set can exist.
                               Only ever created complete (populate_members);
                               single-member updates touch existing sets only.
  • like:ver:post:{post_id}  — STRING membership version, INCR'd by every
                               effective like/unlike after its commit.
  • like:cnt:post:{post_id}  — STRING like counter, repopulated from MySQL.

Membership writes are guarded by the version. A caller reads it before
touching MySQL and passes it back; a mismatch means an effective write
committed in between, so the caller's view may be stale:
  • populate   — skipped
  • no-op warm — skipped
  • effective  — the set is deleted instead of updated

Every method raises redis.exceptions.RedisError on failure; the like engine
treats those as a miss / skipped update.
"""
import asyncio
import logging
from typing import Iterable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from socialgraph.config import Settings

logger = logging.getLogger(__name__)

LIKE_SET_KEY_PREFIX = "like:set:post"
LIKE_VER_KEY_PREFIX = "like:ver:post"
LIKE_CNT_KEY_PREFIX = "like:cnt:post"
SET_SENTINEL = "0"  # user ids are never 0
NO_VERSION = ""  # version key absent
UNKNOWN_VERSION = "?"  # version could not be read; never matches

# KEYS: set, version. ARGV: user, liked, ttl, expected version, effective.
# Touches only an existing set; an effective write always bumps the version.
WARM_MEMBER_SCRIPT = """
local current = redis.call("get", KEYS[2]) or ""
local applied = 0
if current == ARGV[4] then
  if redis.call("exists", KEYS[1]) == 1 then
    if ARGV[2] == "1" then
      redis.call("sadd", KEYS[1], ARGV[1])
    else
      redis.call("srem", KEYS[1], ARGV[1])
    end
    redis.call("expire", KEYS[1], ARGV[3])
    applied = 1
  end
elseif ARGV[5] == "1" then
  redis.call("del", KEYS[1])
end
if ARGV[5] == "1" then
  redis.call("incr", KEYS[2])
  redis.call("expire", KEYS[2], ARGV[3])
end
return applied
"""

# KEYS: set, version. ARGV: ttl, expected version, members...
# Create the full set only if it is still absent and no effective write
# committed since the members were read.
POPULATE_SET_SCRIPT = """
if redis.call("exists", KEYS[1]) == 1 then
  return 0
end
local current = redis.call("get", KEYS[2]) or ""
if current ~= ARGV[2] then
  return 0
end
for i = 3, #ARGV do
  redis.call("sadd", KEYS[1], ARGV[i])
end
redis.call("expire", KEYS[1], ARGV[1])
return 1
"""


async def create_redis(settings: Settings) -> aioredis.Redis:
    client = aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        decode_responses=True,
    )
    await client.ping()
    logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)
    return client


class LikeCache:
    def __init__(
        self,
        redis: aioredis.Redis,
        set_ttl: int = 86400,
        count_ttl: int = 86400,
    ) -> None:
        self._redis = redis
        self.set_ttl = set_ttl
        self.count_ttl = count_ttl
        self._warm_script = redis.register_script(WARM_MEMBER_SCRIPT)
        self._populate_script = redis.register_script(POPULATE_SET_SCRIPT)
        self._pending_deletes: set[asyncio.Task] = set()

    @staticmethod
    def set_key(post_id: int) -> str:
        return f"{LIKE_SET_KEY_PREFIX}:{post_id}"

    @staticmethod
    def version_key(post_id: int) -> str:
        return f"{LIKE_VER_KEY_PREFIX}:{post_id}"

    @staticmethod
    def count_key(post_id: int) -> str:
        return f"{LIKE_CNT_KEY_PREFIX}:{post_id}"

    # ─────────────────────── Membership set ──────────────────────────────

    async def is_member(self, post_id: int, user_id: int) -> Optional[bool]:
        """True/False when the set exists, None when it is absent."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.exists(self.set_key(post_id))
            pipe.sismember(self.set_key(post_id), str(user_id))
            exists, member = await pipe.execute()
        if not exists:
            return None
        return bool(member)

    async def get_version(self, post_id: int) -> str:
        """Current membership version; read it before the MySQL read/write."""
        version = await self._redis.get(self.version_key(post_id))
        return NO_VERSION if version is None else version

    async def warm_member(
        self,
        post_id: int,
        user_id: int,
        liked: bool,
        expected_version: str,
        effective: bool,
    ) -> bool:
        """
        Add/remove one user in an existing set if the version still matches.

        An effective write bumps the version, and deletes the set instead
        when the version moved. Returns True if the set was updated.
        """
        applied = await self._warm_script(
            keys=[self.set_key(post_id), self.version_key(post_id)],
            args=[
                str(user_id),
                "1" if liked else "0",
                self.set_ttl,
                expected_version,
                "1" if effective else "0",
            ],
        )
        return bool(applied)

    async def populate_members(
        self, post_id: int, user_ids: Iterable[int], expected_version: str
    ) -> bool:
        """Create the complete set for a post; no-op if it exists or the version moved."""
        members = [SET_SENTINEL] + [str(uid) for uid in user_ids]
        created = await self._populate_script(
            keys=[self.set_key(post_id), self.version_key(post_id)],
            args=[self.set_ttl, expected_version, *members],
        )
        return bool(created)

    # ─────────────────────── Counter ─────────────────────────────────────

    async def get_count(self, post_id: int) -> Optional[int]:
        """Cached like count, or None on a miss."""
        raw = await self._redis.get(self.count_key(post_id))
        if raw is None:
            return None
        value = int(raw)
        if value < 0:
            # Never serve a negative count; let the caller rebuild it
            return None
        return value

    async def set_count(self, post_id: int, count: int) -> None:
        await self._redis.set(self.count_key(post_id), max(0, count), ex=self.count_ttl)

    async def delete_count(self, post_id: int, delay: float = 0.0) -> None:
        """
        Delete the counter now and, if `delay` > 0, once more after `delay`
        seconds, so a stale value written back by a concurrent reader in
        between does not survive.
        """
        key = self.count_key(post_id)
        await self._redis.delete(key)
        if delay > 0:
            task = asyncio.create_task(self._delete_later(key, delay))
            self._pending_deletes.add(task)
            task.add_done_callback(self._pending_deletes.discard)

    async def _delete_later(self, key: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self._redis.delete(key)
        except RedisError as exc:
            logger.warning("Delayed delete of %s failed: %s", key, exc)

    async def wait_pending(self) -> None:
        """Let scheduled second deletes finish (shutdown / tests)."""
        if self._pending_deletes:
            await asyncio.gather(*self._pending_deletes, return_exceptions=True)
