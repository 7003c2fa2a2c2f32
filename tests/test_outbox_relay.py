from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from socialgraph.clients.kafka_producer import KafkaSender, log_sender
from socialgraph.errors import InvalidArgumentError
from socialgraph.models import OutboxEvent
from socialgraph.outbox import OutboxRelay
from socialgraph.relationships import RelationshipStore
from socialgraph.schemas import OutboxMessage


class RecordingSender:
    def __init__(self, fail_ids=()):
        self.fail_ids = set(fail_ids)
        self.seen: list[OutboxMessage] = []

    async def __call__(self, message: OutboxMessage) -> None:
        self.seen.append(message)
        if message.event_id in self.fail_ids:
            raise ConnectionError("broker down")


async def _emit(session_factory, make_users, n: int) -> None:
    store = RelationshipStore(session_factory)
    star, *fans = await make_users("star", *[f"fan{i}" for i in range(n)])
    for fan in fans:
        await store.follow(fan, star)


async def _events(session_factory) -> dict[int, OutboxEvent]:
    async with session_factory() as session:
        rows = (await session.execute(select(OutboxEvent))).scalars().all()
    return {row.id: row for row in rows}


async def test_failed_send_is_marked_and_batch_continues(session_factory, make_users):
    await _emit(session_factory, make_users, 9)
    sender = RecordingSender(fail_ids={7})
    relay = OutboxRelay(session_factory, sender, batch_size=50)

    sent, failed = await relay.drain_once()

    assert (sent, failed) == (8, 1)
    assert [m.event_id for m in sender.seen] == list(range(1, 10))
    events = await _events(session_factory)
    assert events[7].status == "failed"
    assert events[7].retry_count == 1
    assert events[6].status == "sent"
    assert events[8].status == "sent"
    assert all(e.retry_count == 0 for i, e in events.items() if i != 7)


async def test_failed_rows_are_not_retried_by_next_drain(session_factory, make_users):
    await _emit(session_factory, make_users, 3)
    relay = OutboxRelay(session_factory, RecordingSender(fail_ids={2}))
    await relay.drain_once()

    sender = RecordingSender()
    relay = OutboxRelay(session_factory, sender)
    assert await relay.drain_once() == (0, 0)
    assert sender.seen == []
    assert (await _events(session_factory))[2].status == "failed"


async def test_batch_size_limits_each_drain_oldest_first(session_factory, make_users):
    await _emit(session_factory, make_users, 5)
    sender = RecordingSender()
    relay = OutboxRelay(session_factory, sender, batch_size=2)

    await relay.drain_once()
    await relay.drain_once()

    assert [m.event_id for m in sender.seen] == [1, 2, 3, 4]
    assert (await _events(session_factory))[5].status == "pending"


async def test_message_carries_event_fields(session_factory, make_users):
    await _emit(session_factory, make_users, 1)
    sender = RecordingSender()

    await OutboxRelay(session_factory, sender).drain_once()

    (message,) = sender.seen
    assert message.event_id == 1
    assert message.event_type == "follow"
    assert message.follower_id == 2
    assert message.followee_id == 1
    assert message.payload["event_time"].endswith("+00:00")


async def test_requeue_failed_respects_max_retries(session_factory, make_users):
    await _emit(session_factory, make_users, 2)
    relay = OutboxRelay(session_factory, RecordingSender(fail_ids={1, 2}))
    await relay.drain_once()

    assert await relay.requeue_failed(max_retries=1) == 0
    assert await relay.requeue_failed(max_retries=2) == 2

    events = await _events(session_factory)
    assert {e.status for e in events.values()} == {"pending"}
    assert {e.retry_count for e in events.values()} == {1}

    with pytest.raises(InvalidArgumentError):
        await relay.requeue_failed(0)


async def test_run_stops_on_event(session_factory, make_users):
    await _emit(session_factory, make_users, 2)
    sender = RecordingSender()
    relay = OutboxRelay(session_factory, sender, interval=0.01)
    stop = asyncio.Event()

    task = asyncio.create_task(relay.run(stop))
    for _ in range(100):
        if len(sender.seen) == 2:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert len(sender.seen) == 2
    assert {e.status for e in (await _events(session_factory)).values()} == {"sent"}


async def test_log_sender_succeeds():
    await log_sender(
        OutboxMessage(event_id=1, event_type="follow", follower_id=1, followee_id=2, payload={})
    )


async def test_kafka_sender_keys_by_event_id():
    class FakeProducer:
        def __init__(self):
            self.calls = []

        async def send_and_wait(self, topic, value, key=None):
            self.calls.append((topic, value, key))

    producer = FakeProducer()
    sender = KafkaSender(producer, "social.events")

    await sender(
        OutboxMessage(event_id=42, event_type="unfollow", follower_id=3, followee_id=4, payload={"a": 1})
    )

    topic, value, key = producer.calls[0]
    assert topic == "social.events"
    assert key == "42"
    assert value == {
        "event_id": 42,
        "event_type": "unfollow",
        "follower_id": 3,
        "followee_id": 4,
        "payload": {"a": 1},
    }
