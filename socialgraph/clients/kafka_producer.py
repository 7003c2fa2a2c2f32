"""
Async Kafka producer + outbox senders.

The outbox relay hands every pending social_outbox row to a Sender:

  log_sender   — default; logs the event and reports success.
  KafkaSender  — publishes to the social-events topic, keyed by outbox id.

Message schema:
  { event_id, event_type, follower_id, followee_id, payload }

Delivery is at-least-once; consumers dedup on event_id.
"""
import json
import logging
from typing import Awaitable, Callable

from aiokafka import AIOKafkaProducer

from socialgraph.schemas import OutboxMessage

logger = logging.getLogger(__name__)

Sender = Callable[[OutboxMessage], Awaitable[None]]


async def create_producer(bootstrap_servers: str) -> AIOKafkaProducer:
    producer = AIOKafkaProducer(
        bootstrap_servers=bootstrap_servers,
        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        key_serializer=lambda k: k.encode("utf-8"),
        acks="all",          # wait for all in-sync replicas
        enable_idempotence=True,
    )
    await producer.start()
    logger.info("Kafka producer started → %s", bootstrap_servers)
    return producer


async def log_sender(message: OutboxMessage) -> None:
    logger.info(
        "OUTBOX SEND id=%s type=%s follower=%s followee=%s payload=%s",
        message.event_id,
        message.event_type,
        message.follower_id,
        message.followee_id,
        message.payload,
    )


class KafkaSender:
    """Sender that publishes outbox events and waits for the broker ack."""

    def __init__(self, producer: AIOKafkaProducer, topic: str) -> None:
        self._producer = producer
        self._topic = topic

    async def __call__(self, message: OutboxMessage) -> None:
        await self._producer.send_and_wait(
            self._topic,
            message.model_dump(),
            key=str(message.event_id),
        )
        logger.debug("Published %s event id=%s", message.event_type, message.event_id)
