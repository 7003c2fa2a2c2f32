"""
Outbox relay — forwards social_outbox rows to a Sender.

Each tick drains up to `batch_size` pending rows, oldest id first:

  • sender succeeds → status = sent
  • sender raises   → status = failed, retry_count += 1

One failure never blocks the rest of the batch. A crash between a
successful send and the status update re-delivers the row on the next
pass (at-least-once).

Failed rows are NOT retried by the loop. `requeue_failed` is the explicit
operator action that moves them back to pending.
"""
import asyncio
import logging

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialgraph.clients.kafka_producer import Sender
from socialgraph.errors import InvalidArgumentError, StorageError
from socialgraph.models import OutboxEvent, OutboxStatus
from socialgraph.schemas import OutboxMessage
from socialgraph.telemetry import OUTBOX_RELAY_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class OutboxRelay:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sender: Sender,
        batch_size: int = 200,
        interval: float = 1.0,
    ) -> None:
        self._session_factory = session_factory
        self._sender = sender
        self.batch_size = batch_size
        self.interval = interval

    async def run(self, stop: asyncio.Event) -> None:
        """Drain once per interval until `stop` is set."""
        logger.info(
            "Outbox relay started (batch=%d, interval=%.1fs)", self.batch_size, self.interval
        )
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self.drain_once()
        logger.info("Outbox relay stopped")

    async def drain_once(self) -> tuple[int, int]:
        """Relay one batch. Returns (sent, failed)."""
        with tracer.start_as_current_span("outbox_drain") as span:
            try:
                rows = await self._pending()
            except SQLAlchemyError as exc:
                logger.error("Outbox query failed: %s", exc)
                return 0, 0

            sent = failed = 0
            for row in rows:
                message = OutboxMessage.from_row(row)
                try:
                    await self._sender(message)
                except Exception as exc:
                    logger.warning(
                        "Outbox send failed for event %s (%s): %s",
                        row.id, row.event_type, exc,
                    )
                    failed += 1
                    OUTBOX_RELAY_TOTAL.labels(result="failed").inc()
                    await self._mark(row.id, failed=True)
                    continue
                sent += 1
                OUTBOX_RELAY_TOTAL.labels(result="sent").inc()
                await self._mark(row.id, failed=False)

            span.set_attribute("outbox.sent", sent)
            span.set_attribute("outbox.failed", failed)

        if rows:
            logger.info("Outbox drain: %d sent, %d failed", sent, failed)
        return sent, failed

    async def _pending(self) -> list[OutboxEvent]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OutboxEvent)
                .where(OutboxEvent.status == OutboxStatus.PENDING.value)
                .order_by(OutboxEvent.id.asc())
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def _mark(self, event_id: int, failed: bool) -> None:
        if failed:
            values = {
                "status": OutboxStatus.FAILED.value,
                "retry_count": OutboxEvent.retry_count + 1,
            }
        else:
            values = {"status": OutboxStatus.SENT.value}
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(OutboxEvent).where(OutboxEvent.id == event_id).values(**values)
                    )
        except SQLAlchemyError as exc:
            # Row stays pending and is picked up again next tick
            logger.error("Outbox status update failed for event %s: %s", event_id, exc)

    async def requeue_failed(self, max_retries: int) -> int:
        """
        Move failed rows with retry_count < max_retries back to pending.

        Operator/backfill action; the relay loop never calls this itself.
        Returns the number of rows requeued.
        """
        if max_retries <= 0:
            raise InvalidArgumentError("max_retries must be positive")
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(OutboxEvent)
                        .where(
                            OutboxEvent.status == OutboxStatus.FAILED.value,
                            OutboxEvent.retry_count < max_retries,
                        )
                        .values(status=OutboxStatus.PENDING.value)
                    )
        except SQLAlchemyError as exc:
            raise StorageError(f"outbox requeue failed: {exc}") from exc
        logger.info("Requeued %d failed outbox events (max_retries=%d)", result.rowcount, max_retries)
        return result.rowcount
