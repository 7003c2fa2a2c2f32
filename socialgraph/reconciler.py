"""
Follow-count reconciler.

Sweeps the users table in id order, `batch_size` users per tick, and
recomputes following_count / follower_count from active follows rows.
Drifted counters are overwritten with the true value.

The cursor (last processed user id) lives in this process only. An empty
batch means the sweep finished; the cursor resets to 0 and the next tick
starts over. Run a single instance: two reconcilers would double-sweep.
"""
import asyncio
import logging

from opentelemetry import trace
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialgraph.models import FOLLOWING, Relationship, User
from socialgraph.telemetry import RECONCILE_CORRECTIONS_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class CountReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int = 500,
        interval: float = 300.0,
    ) -> None:
        self._session_factory = session_factory
        self.batch_size = batch_size
        self.interval = interval
        self.cursor = 0

    async def run(self, stop: asyncio.Event) -> None:
        """Reconcile one batch per interval until `stop` is set."""
        logger.info(
            "Count reconciler started (batch=%d, interval=%.1fs)", self.batch_size, self.interval
        )
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self.reconcile_once()
        logger.info("Count reconciler stopped")

    async def reconcile_once(self) -> int:
        """Reconcile the next batch. Returns the number of counters corrected."""
        with tracer.start_as_current_span("reconcile_batch") as span:
            span.set_attribute("reconcile.cursor", self.cursor)
            try:
                users = await self._next_batch()
            except SQLAlchemyError as exc:
                logger.error("Reconcile list failed: %s", exc)
                return 0

            if not users:
                # Sweep complete; begin again from the start next tick
                self.cursor = 0
                return 0
            self.cursor = users[-1].id

            corrected = 0
            for user in users:
                try:
                    corrected += await self._reconcile_user(
                        user.id, user.following_count, user.follower_count
                    )
                except SQLAlchemyError as exc:
                    logger.warning("Reconcile failed for user %s: %s", user.id, exc)

            span.set_attribute("reconcile.users", len(users))
            span.set_attribute("reconcile.corrected", corrected)

        if corrected:
            logger.info(
                "Reconciled %d users up to id=%s, %d counters corrected",
                len(users), self.cursor, corrected,
            )
        return corrected

    async def _next_batch(self):
        async with self._session_factory() as session:
            result = await session.execute(
                select(User.id, User.following_count, User.follower_count)
                .where(User.id > self.cursor)
                .order_by(User.id.asc())
                .limit(self.batch_size)
            )
            return result.all()

    async def _reconcile_user(
        self, user_id: int, stored_following: int, stored_followers: int
    ) -> int:
        corrected = 0
        async with self._session_factory() as session:
            async with session.begin():
                real_following = await session.scalar(
                    select(func.count())
                    .select_from(Relationship)
                    .where(
                        Relationship.follower_id == user_id,
                        Relationship.status == FOLLOWING,
                    )
                )
                real_followers = await session.scalar(
                    select(func.count())
                    .select_from(Relationship)
                    .where(
                        Relationship.followee_id == user_id,
                        Relationship.status == FOLLOWING,
                    )
                )

                if real_following != stored_following:
                    await session.execute(
                        update(User)
                        .where(User.id == user_id)
                        .values(following_count=real_following)
                    )
                    RECONCILE_CORRECTIONS_TOTAL.labels(column="following_count").inc()
                    corrected += 1
                if real_followers != stored_followers:
                    await session.execute(
                        update(User)
                        .where(User.id == user_id)
                        .values(follower_count=real_followers)
                    )
                    RECONCILE_CORRECTIONS_TOTAL.labels(column="follower_count").inc()
                    corrected += 1

        if corrected:
            logger.debug(
                "user %s: following %d→%d, followers %d→%d",
                user_id, stored_following, real_following, stored_followers, real_followers,
            )
        return corrected
