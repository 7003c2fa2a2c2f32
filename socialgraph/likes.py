"""
Post likes: the relational store plus the cache-aside engine in front of it.

Write path (like / unlike)
  0. Read the membership version.
  1. Commit the post_likes row and posts.like_count in MySQL.
  2. Effective change only:
       • membership set — updated if the version still matches, else deleted;
                          the version is bumped either way (best-effort)
       • counter        — under the per-post lock, re-read from MySQL and SET;
                          lock contended → delete the key (plus a delayed
                          second delete) so the next reader rebuilds it.
  3. No-op write: warm the membership set only if it already exists and
     the version still matches.

Read path
  • is_liked  — trust the set if present; otherwise read the version, read
                MySQL and create the complete set from the post's likers
                (bounded size) unless an effective write bumped the version.
  • get_count — cache hit, or lock + double-check + rebuild; on contention
                back off once, re-check, then read MySQL without populating.

Cache failures never fail a call. MySQL failures always propagate.
"""
import asyncio
import logging

from opentelemetry import trace
from redis.exceptions import RedisError
from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialgraph.clients.redis_client import UNKNOWN_VERSION, LikeCache
from socialgraph.errors import InvalidArgumentError, NotFoundError, StorageError
from socialgraph.locks import DistributedLock, new_token
from socialgraph.models import Post, PostLike
from socialgraph.telemetry import LIKE_CACHE_REQUESTS_TOTAL, LIKE_COUNT_LOCK_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def _validate(user_id: int, post_id: int) -> None:
    if not user_id or not post_id or user_id < 0 or post_id < 0:
        raise InvalidArgumentError("invalid id")


# ─────────────────────────── Relational store ────────────────────────────

class PostLikeStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def like(self, user_id: int, post_id: int) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._lock_post(session, post_id)
                    existing = await session.scalar(
                        select(PostLike.id).where(
                            PostLike.user_id == user_id, PostLike.post_id == post_id
                        )
                    )
                    if existing is not None:
                        return False
                    session.add(PostLike(user_id=user_id, post_id=post_id))
                    await session.execute(
                        update(Post)
                        .where(Post.id == post_id)
                        .values(like_count=Post.like_count + 1)
                    )
                    return True
        except SQLAlchemyError as exc:
            raise StorageError(f"like {user_id}->{post_id} failed: {exc}") from exc

    async def unlike(self, user_id: int, post_id: int) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._lock_post(session, post_id)
                    result = await session.execute(
                        delete(PostLike).where(
                            PostLike.user_id == user_id, PostLike.post_id == post_id
                        )
                    )
                    if result.rowcount == 0:
                        return False
                    await session.execute(
                        update(Post)
                        .where(Post.id == post_id)
                        .values(
                            like_count=case(
                                (Post.like_count > 0, Post.like_count - 1), else_=0
                            )
                        )
                    )
                    return True
        except SQLAlchemyError as exc:
            raise StorageError(f"unlike {user_id}->{post_id} failed: {exc}") from exc

    @staticmethod
    async def _lock_post(session: AsyncSession, post_id: int) -> None:
        found = await session.scalar(
            select(Post.id).where(Post.id == post_id).with_for_update()
        )
        if found is None:
            raise NotFoundError(f"post {post_id} not found")

    async def is_liked(self, user_id: int, post_id: int) -> bool:
        try:
            async with self._session_factory() as session:
                found = await session.scalar(
                    select(PostLike.id).where(
                        PostLike.user_id == user_id, PostLike.post_id == post_id
                    )
                )
        except SQLAlchemyError as exc:
            raise StorageError(f"like lookup failed: {exc}") from exc
        return found is not None

    async def get_like_count(self, post_id: int) -> int:
        try:
            async with self._session_factory() as session:
                count = await session.scalar(select(Post.like_count).where(Post.id == post_id))
        except SQLAlchemyError as exc:
            raise StorageError(f"like count lookup failed: {exc}") from exc
        if count is None:
            raise NotFoundError(f"post {post_id} not found")
        return max(0, count)

    async def list_likers(self, post_id: int, limit: int) -> list[int]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(PostLike.user_id).where(PostLike.post_id == post_id).limit(limit)
                )
        except SQLAlchemyError as exc:
            raise StorageError(f"liker listing failed: {exc}") from exc
        return list(result.scalars().all())


# ─────────────────────────── Cache-aside engine ──────────────────────────

class LikeCacheEngine:
    def __init__(
        self,
        store: PostLikeStore,
        cache: LikeCache,
        lock: DistributedLock,
        backoff: float = 0.05,
        second_delete_delay: float = 0.5,
        max_set_members: int = 5000,
    ) -> None:
        self._store = store
        self._cache = cache
        self._lock = lock
        self._backoff = backoff
        self._second_delete_delay = second_delete_delay
        self._max_set_members = max_set_members

    # ─────────────────────── Writes ──────────────────────────────────────

    async def like(self, user_id: int, post_id: int) -> bool:
        return await self._write(user_id, post_id, liked=True)

    async def unlike(self, user_id: int, post_id: int) -> bool:
        return await self._write(user_id, post_id, liked=False)

    async def _write(self, user_id: int, post_id: int, liked: bool) -> bool:
        _validate(user_id, post_id)
        op = "like" if liked else "unlike"
        with tracer.start_as_current_span(op) as span:
            span.set_attribute("like.user_id", user_id)
            span.set_attribute("like.post_id", post_id)

            version = await self._member_version(post_id)
            if liked:
                changed = await self._store.like(user_id, post_id)
            else:
                changed = await self._store.unlike(user_id, post_id)
            span.set_attribute("like.changed", changed)

            await self._warm_member(post_id, user_id, liked, version, changed)
            if changed:
                await self._refresh_count(post_id)
                logger.info("user %s %sd post %s", user_id, op, post_id)
        return changed

    async def _member_version(self, post_id: int) -> str:
        try:
            return await self._cache.get_version(post_id)
        except RedisError as exc:
            logger.warning("Like set version lookup failed for post %s: %s", post_id, exc)
            return UNKNOWN_VERSION

    async def _warm_member(
        self, post_id: int, user_id: int, liked: bool, version: str, effective: bool
    ) -> None:
        try:
            await self._cache.warm_member(post_id, user_id, liked, version, effective)
        except RedisError as exc:
            logger.warning("Like set update failed for post %s: %s", post_id, exc)

    async def _refresh_count(self, post_id: int) -> None:
        token = new_token()
        if not await self._try_acquire(post_id, token):
            await self._invalidate_count(post_id)
            return
        try:
            count = await self._store.get_like_count(post_id)
            await self._cache.set_count(post_id, count)
        except (RedisError, StorageError, NotFoundError) as exc:
            logger.warning("Like count refresh failed for post %s: %s", post_id, exc)
            await self._invalidate_count(post_id)
        finally:
            await self._release(post_id, token)

    async def _invalidate_count(self, post_id: int) -> None:
        try:
            await self._cache.delete_count(post_id, delay=self._second_delete_delay)
        except RedisError as exc:
            logger.warning("Like count invalidation failed for post %s: %s", post_id, exc)

    # ─────────────────────── Reads ───────────────────────────────────────

    async def is_liked(self, user_id: int, post_id: int) -> bool:
        _validate(user_id, post_id)
        with tracer.start_as_current_span("is_liked"):
            try:
                member = await self._cache.is_member(post_id, user_id)
            except RedisError as exc:
                logger.warning("Like set lookup failed for post %s: %s", post_id, exc)
                member = None
            if member is not None:
                LIKE_CACHE_REQUESTS_TOTAL.labels(op="member", result="hit").inc()
                return member
            LIKE_CACHE_REQUESTS_TOTAL.labels(op="member", result="miss").inc()

            version = await self._member_version(post_id)
            liked = await self._store.is_liked(user_id, post_id)
            await self._populate_members(post_id, version)
            return liked

    async def _populate_members(self, post_id: int, version: str) -> None:
        if version == UNKNOWN_VERSION:
            return
        try:
            likers = await self._store.list_likers(post_id, self._max_set_members + 1)
        except StorageError as exc:
            logger.warning("Liker listing failed for post %s: %s", post_id, exc)
            return
        if len(likers) > self._max_set_members:
            # Too hot to mirror; reads for this post keep going to MySQL
            return
        try:
            await self._cache.populate_members(post_id, likers, version)
        except RedisError as exc:
            logger.warning("Like set populate failed for post %s: %s", post_id, exc)

    async def get_count(self, post_id: int) -> int:
        if not post_id or post_id < 0:
            raise InvalidArgumentError("invalid id")
        with tracer.start_as_current_span("get_like_count") as span:
            span.set_attribute("like.post_id", post_id)

            cached = await self._cached_count(post_id)
            if cached is not None:
                LIKE_CACHE_REQUESTS_TOTAL.labels(op="count", result="hit").inc()
                return cached
            LIKE_CACHE_REQUESTS_TOTAL.labels(op="count", result="miss").inc()

            token = new_token()
            if await self._try_acquire(post_id, token):
                try:
                    # Double-check: a previous holder may have just rebuilt it
                    cached = await self._cached_count(post_id)
                    if cached is not None:
                        return cached
                    count = await self._store.get_like_count(post_id)
                    try:
                        await self._cache.set_count(post_id, count)
                    except RedisError as exc:
                        logger.warning("Like count populate failed for post %s: %s", post_id, exc)
                    span.set_attribute("like.rebuilt", True)
                    return count
                finally:
                    await self._release(post_id, token)

            await asyncio.sleep(self._backoff)
            cached = await self._cached_count(post_id)
            if cached is not None:
                return cached
            # Still contended: answer from MySQL, leave population to the lock holder
            return await self._store.get_like_count(post_id)

    async def _cached_count(self, post_id: int):
        try:
            return await self._cache.get_count(post_id)
        except (RedisError, ValueError) as exc:
            logger.warning("Like count lookup failed for post %s: %s", post_id, exc)
            return None

    # ─────────────────────── Lock helpers ────────────────────────────────

    async def _try_acquire(self, post_id: int, token: str) -> bool:
        try:
            acquired = await self._lock.acquire(post_id, token)
        except RedisError as exc:
            logger.warning("Like lock acquire failed for post %s: %s", post_id, exc)
            acquired = False
        LIKE_COUNT_LOCK_TOTAL.labels(result="acquired" if acquired else "contended").inc()
        return acquired

    async def _release(self, post_id: int, token: str) -> None:
        try:
            await self._lock.release(post_id, token)
        except RedisError as exc:
            logger.warning("Like lock release failed for post %s: %s", post_id, exc)
