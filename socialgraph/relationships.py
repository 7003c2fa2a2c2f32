"""
Relationship store — the transactional core of the social graph.

Follow / Unfollow run as a single unit of work:

  1. SELECT the (follower, followee) edge FOR UPDATE — serialises every
     transition on the same pair.
  2. Insert or toggle the edge's status.
  3. Adjust follower.following_count and followee.follower_count,
     clamped at zero.
  4. Insert one social_outbox row describing the transition.

Steps 2-4 only happen when the status actually changes. No-op requests
(already in the target state) touch nothing and emit no event. Any failure
rolls the whole transaction back, so a counter change without its outbox
row (or vice versa) is never visible.

After commit, the VIP marker is run best-effort on the followee.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from opentelemetry import trace
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialgraph.errors import InvalidArgumentError, NotFoundError, StorageError
from socialgraph.models import (
    FOLLOWING,
    NOT_FOLLOWING,
    EventType,
    OutboxEvent,
    OutboxStatus,
    Relationship,
    User,
)
from socialgraph.promoter import StatusPromoter
from socialgraph.telemetry import FOLLOW_TRANSITIONS_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100


def validate_pair(follower_id: int, followee_id: int) -> None:
    if not follower_id or not followee_id or follower_id < 0 or followee_id < 0:
        raise InvalidArgumentError("invalid user id")
    if follower_id == followee_id:
        raise InvalidArgumentError("cannot follow self")


def _clamped(column, delta: int):
    """column + delta, never below zero."""
    return case((column + delta < 0, 0), else_=column + delta)


class RelationshipStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        promoter: Optional[StatusPromoter] = None,
        default_limit: int = DEFAULT_LIST_LIMIT,
        max_limit: int = MAX_LIST_LIMIT,
    ) -> None:
        self._session_factory = session_factory
        self._promoter = promoter
        self._default_limit = default_limit
        self._max_limit = max_limit

    # ─────────────────────── State transitions ───────────────────────────

    async def follow(self, follower_id: int, followee_id: int) -> bool:
        """Make follower follow followee. Returns True if the edge changed."""
        return await self._transition(follower_id, followee_id, FOLLOWING)

    async def unfollow(self, follower_id: int, followee_id: int) -> bool:
        """Remove the edge. Missing or inactive edges are a no-op (False)."""
        return await self._transition(follower_id, followee_id, NOT_FOLLOWING)

    async def _transition(self, follower_id: int, followee_id: int, target: int) -> bool:
        validate_pair(follower_id, followee_id)
        event_type = EventType.FOLLOW if target == FOLLOWING else EventType.UNFOLLOW

        with tracer.start_as_current_span(event_type.value) as span:
            span.set_attribute("follow.follower_id", follower_id)
            span.set_attribute("follow.followee_id", followee_id)
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        changed = await self._apply(
                            session, follower_id, followee_id, target, event_type
                        )
            except SQLAlchemyError as exc:
                raise StorageError(
                    f"{event_type.value} {follower_id}->{followee_id} failed: {exc}"
                ) from exc
            span.set_attribute("follow.changed", changed)

        if changed:
            FOLLOW_TRANSITIONS_TOTAL.labels(event_type=event_type.value).inc()
            logger.info("%s %s %s", follower_id, event_type.value, followee_id)
            await self._promote(followee_id)
        return changed

    async def _apply(
        self,
        session: AsyncSession,
        follower_id: int,
        followee_id: int,
        target: int,
        event_type: EventType,
    ) -> bool:
        # Row lock first: everything below is serialised per pair
        rel = (
            await session.execute(
                select(Relationship)
                .where(
                    Relationship.follower_id == follower_id,
                    Relationship.followee_id == followee_id,
                )
                .with_for_update()
            )
        ).scalar_one_or_none()

        if rel is None:
            if target == NOT_FOLLOWING:
                return False
            await self._ensure_users_exist(session, follower_id, followee_id)
            session.add(
                Relationship(
                    follower_id=follower_id, followee_id=followee_id, status=target
                )
            )
        elif rel.status == target:
            return False
        else:
            rel.status = target

        delta = 1 if target == FOLLOWING else -1
        await session.execute(
            update(User)
            .where(User.id == follower_id)
            .values(following_count=_clamped(User.following_count, delta))
        )
        await session.execute(
            update(User)
            .where(User.id == followee_id)
            .values(follower_count=_clamped(User.follower_count, delta))
        )

        session.add(
            OutboxEvent(
                event_type=event_type.value,
                follower_id=follower_id,
                followee_id=followee_id,
                payload={
                    "event_time": datetime.now(timezone.utc).isoformat(),
                    "follower": follower_id,
                    "followee": followee_id,
                },
                status=OutboxStatus.PENDING.value,
                retry_count=0,
            )
        )
        return True

    @staticmethod
    async def _ensure_users_exist(
        session: AsyncSession, follower_id: int, followee_id: int
    ) -> None:
        found = (
            await session.execute(
                select(User.id).where(User.id.in_([follower_id, followee_id]))
            )
        ).scalars().all()
        for uid in (follower_id, followee_id):
            if uid not in found:
                raise NotFoundError(f"user {uid} not found")

    async def _promote(self, user_id: int) -> None:
        if self._promoter is None:
            return
        try:
            await self._promoter.check_and_mark(user_id)
        except Exception as exc:
            logger.warning("VIP marker failed for user %s: %s", user_id, exc)

    # ─────────────────────── Queries ─────────────────────────────────────

    async def is_following(self, follower_id: int, followee_id: int) -> bool:
        if not follower_id or not followee_id or follower_id < 0 or followee_id < 0:
            raise InvalidArgumentError("invalid user id")
        try:
            async with self._session_factory() as session:
                n = await session.scalar(
                    select(func.count())
                    .select_from(Relationship)
                    .where(
                        Relationship.follower_id == follower_id,
                        Relationship.followee_id == followee_id,
                        Relationship.status == FOLLOWING,
                    )
                )
        except SQLAlchemyError as exc:
            raise StorageError(f"relation lookup failed: {exc}") from exc
        return bool(n)

    async def list_followings(
        self, user_id: int, cursor: int = 0, limit: Optional[int] = None
    ) -> tuple[list[Relationship], int]:
        """Users that `user_id` follows, newest edge first."""
        return await self._list(Relationship.follower_id, user_id, cursor, limit)

    async def list_followers(
        self, user_id: int, cursor: int = 0, limit: Optional[int] = None
    ) -> tuple[list[Relationship], int]:
        """Users following `user_id`, newest edge first."""
        return await self._list(Relationship.followee_id, user_id, cursor, limit)

    def clamp_limit(self, limit: Optional[int]) -> int:
        if not limit or limit <= 0:
            return self._default_limit
        return min(limit, self._max_limit)

    async def _list(
        self, column, user_id: int, cursor: int, limit: Optional[int]
    ) -> tuple[list[Relationship], int]:
        """
        Reverse-id cursor pagination.

        `cursor` is the last id the caller has seen (0 = first page). One
        extra row is fetched to tell whether another page exists; the
        returned next cursor is 0 once the listing is exhausted.
        """
        if not user_id or user_id < 0:
            raise InvalidArgumentError("invalid user id")
        if cursor < 0:
            raise InvalidArgumentError("invalid cursor")
        limit = self.clamp_limit(limit)

        stmt = select(Relationship).where(column == user_id, Relationship.status == FOLLOWING)
        if cursor > 0:
            stmt = stmt.where(Relationship.id < cursor)
        stmt = stmt.order_by(Relationship.id.desc()).limit(limit + 1)

        try:
            async with self._session_factory() as session:
                rows = list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as exc:
            raise StorageError(f"follow listing failed: {exc}") from exc

        next_cursor = 0
        if len(rows) > limit:
            rows = rows[:limit]
            next_cursor = rows[-1].id
        return rows, next_cursor
