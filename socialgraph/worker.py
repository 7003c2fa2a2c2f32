"""
Background worker — outbox relay + follow-count reconciler.

  python -m socialgraph.worker

Both loops share one stop event, set on SIGINT/SIGTERM; each finishes the
batch it is working on and exits at its next tick boundary.

Run exactly one worker: the reconciler cursor is process-local and the
relay has no claim/lease on rows, so a second instance would double-sweep
and double-send.
"""
import asyncio
import logging
import signal

from socialgraph.clients.kafka_producer import KafkaSender, create_producer, log_sender
from socialgraph.config import settings
from socialgraph.database import create_engine, create_session_factory, init_db
from socialgraph.outbox import OutboxRelay
from socialgraph.reconciler import CountReconciler
from socialgraph.telemetry import setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


async def main() -> None:
    setup_tracing("socialgraph-worker")

    engine = create_engine(settings.database_url)
    await init_db(engine)
    session_factory = create_session_factory(engine)

    producer = None
    sender = log_sender
    if settings.kafka_enabled:
        try:
            producer = await create_producer(settings.kafka_bootstrap_servers)
            sender = KafkaSender(producer, settings.kafka_topic_social_events)
        except Exception as exc:
            logger.warning("Kafka unavailable (%s), falling back to log sender", exc)

    relay = OutboxRelay(
        session_factory,
        sender,
        batch_size=settings.outbox_batch_size,
        interval=settings.outbox_interval_seconds,
    )
    reconciler = CountReconciler(
        session_factory,
        batch_size=settings.reconcile_batch_size,
        interval=settings.reconcile_interval_seconds,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await asyncio.gather(relay.run(stop), reconciler.run(stop))
    finally:
        if producer is not None:
            await producer.stop()
        await engine.dispose()
        logger.info("Worker stopped")


if __name__ == "__main__":
    asyncio.run(main())
