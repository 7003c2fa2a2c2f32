from __future__ import annotations

import asyncio

from socialgraph.locks import DistributedLock, new_token


async def test_acquire_is_exclusive(redis):
    lock = DistributedLock(redis, ttl_ms=1000)

    assert await lock.acquire(1, "a") is True
    assert await lock.acquire(1, "b") is False
    # Different resource, independent lock
    assert await lock.acquire(2, "b") is True
    assert await redis.get("lock:like:post:1") == "a"


async def test_release_only_by_owner(redis):
    lock = DistributedLock(redis, ttl_ms=1000)
    await lock.acquire(1, "owner")

    assert await lock.release(1, "intruder") is False
    assert await redis.get(lock.key(1)) == "owner"

    assert await lock.release(1, "owner") is True
    assert await redis.get(lock.key(1)) is None
    assert await lock.acquire(1, "next") is True


async def test_expired_holder_cannot_release_new_owner(redis):
    lock = DistributedLock(redis, ttl_ms=50)
    await lock.acquire(7, "first")
    await asyncio.sleep(0.1)

    assert await lock.acquire(7, "second") is True
    assert await lock.release(7, "first") is False
    assert await redis.get(lock.key(7)) == "second"


async def test_lock_key_carries_ttl(redis):
    lock = DistributedLock(redis, ttl_ms=300)
    await lock.acquire(3, new_token())

    ttl = await redis.pttl(lock.key(3))
    assert 0 < ttl <= 300


def test_tokens_are_unique():
    assert len({new_token() for _ in range(100)}) == 100
