"""
VIP marker — derives users.is_vip from users.follower_count.

Promotion is a convenience flag, not a correctness property: callers invoke
it best-effort after an effective follow/unfollow and log its failures.
"""
import logging

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialgraph.errors import NotFoundError, StorageError
from socialgraph.models import User
from socialgraph.telemetry import VIP_STATUS_CHANGES_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class StatusPromoter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        threshold: int,
    ) -> None:
        self._session_factory = session_factory
        self.threshold = threshold

    async def check_and_mark(self, user_id: int) -> bool:
        """
        Set is_vip = (follower_count >= threshold) for `user_id`.

        Returns True when the flag was flipped, False when it was already
        correct. Raises NotFoundError for an unknown user.
        """
        with tracer.start_as_current_span("vip_check_and_mark") as span:
            span.set_attribute("user.id", user_id)
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        row = (
                            await session.execute(
                                select(User.follower_count, User.is_vip).where(
                                    User.id == user_id
                                )
                            )
                        ).one_or_none()
                        if row is None:
                            raise NotFoundError(f"user {user_id} not found")

                        follower_count, is_vip = row
                        want = follower_count >= self.threshold
                        if want == is_vip:
                            return False

                        # Conditional so a concurrent marker cannot flip it twice
                        result = await session.execute(
                            update(User)
                            .where(User.id == user_id, User.is_vip != want)
                            .values(is_vip=want)
                        )
            except SQLAlchemyError as exc:
                raise StorageError(f"vip check for user {user_id} failed: {exc}") from exc

        if result.rowcount == 0:
            return False

        VIP_STATUS_CHANGES_TOTAL.labels(is_vip=str(want).lower()).inc()
        logger.info(
            "VIP marker: user=%s is_vip=%s (followers=%d, threshold=%d)",
            user_id, want, follower_count, self.threshold,
        )
        return True
