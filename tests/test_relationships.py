from __future__ import annotations

import asyncio
import random

import pytest
from sqlalchemy import select

from socialgraph.errors import InvalidArgumentError, NotFoundError, StorageError
from socialgraph.models import OutboxEvent, Relationship, User
from socialgraph.promoter import StatusPromoter
from socialgraph.reconciler import CountReconciler
from socialgraph.relationships import RelationshipStore


@pytest.fixture()
def store(session_factory):
    return RelationshipStore(session_factory, promoter=StatusPromoter(session_factory, threshold=2))


async def _outbox(session_factory) -> list[OutboxEvent]:
    async with session_factory() as session:
        return list((await session.execute(select(OutboxEvent).order_by(OutboxEvent.id))).scalars())


async def test_first_follow_changes_counters_and_emits_event(store, session_factory, make_users, load_user):
    a, b = await make_users("alice", "bob")

    assert await store.follow(a, b) is True

    assert (await load_user(a)).following_count == 1
    assert (await load_user(b)).follower_count == 1
    events = await _outbox(session_factory)
    assert len(events) == 1
    assert events[0].event_type == "follow"
    assert events[0].status == "pending"
    assert events[0].retry_count == 0
    assert events[0].payload["follower"] == a
    assert events[0].payload["followee"] == b
    assert "event_time" in events[0].payload


async def test_repeat_follow_is_noop(store, session_factory, make_users, load_user):
    a, b = await make_users("alice", "bob")

    assert await store.follow(a, b) is True
    assert await store.follow(a, b) is False

    assert (await load_user(a)).following_count == 1
    assert (await load_user(b)).follower_count == 1
    assert len(await _outbox(session_factory)) == 1


async def test_unfollow_toggles_row_without_deleting_it(store, session_factory, make_users, load_user):
    a, b = await make_users("alice", "bob")
    await store.follow(a, b)

    assert await store.unfollow(a, b) is True
    assert await store.unfollow(a, b) is False

    async with session_factory() as session:
        rows = (await session.execute(select(Relationship))).scalars().all()
    assert len(rows) == 1
    assert rows[0].status == 0
    assert (await load_user(a)).following_count == 0
    assert (await load_user(b)).follower_count == 0
    assert [e.event_type for e in await _outbox(session_factory)] == ["follow", "unfollow"]

    # Refollow reuses the same row
    assert await store.follow(a, b) is True
    async with session_factory() as session:
        rows = (await session.execute(select(Relationship))).scalars().all()
    assert len(rows) == 1
    assert rows[0].status == 1


async def test_unfollow_without_row_is_noop(store, session_factory, make_users):
    a, b = await make_users("alice", "bob")

    assert await store.unfollow(a, b) is False
    assert await _outbox(session_factory) == []


@pytest.mark.parametrize("follower, followee", [(0, 2), (2, 0), (-1, 2), (3, 3)])
async def test_invalid_pairs_rejected(store, session_factory, make_users, follower, followee):
    await make_users("alice", "bob", "carol")

    with pytest.raises(InvalidArgumentError):
        await store.follow(follower, followee)
    with pytest.raises(InvalidArgumentError):
        await store.unfollow(follower, followee)
    assert await _outbox(session_factory) == []


async def test_self_follow_changes_nothing(store, session_factory, make_users, load_user):
    (a,) = await make_users("alice")

    with pytest.raises(InvalidArgumentError):
        await store.follow(a, a)

    user = await load_user(a)
    assert user.follower_count == 0
    assert user.following_count == 0
    async with session_factory() as session:
        assert (await session.execute(select(Relationship))).first() is None


async def test_follow_unknown_user_rolls_back(store, session_factory, make_users, load_user):
    (a,) = await make_users("alice")

    with pytest.raises(NotFoundError):
        await store.follow(a, 999)

    assert (await load_user(a)).following_count == 0
    assert await _outbox(session_factory) == []


async def _relationships(session_factory) -> list[Relationship]:
    async with session_factory() as session:
        return list((await session.execute(select(Relationship))).scalars())


async def test_outbox_insert_failure_rolls_back_counters(
    store, session_factory, make_users, load_user, monkeypatch
):
    a, b = await make_users("alice", "bob")

    def unwritable_event(**kwargs):
        # NOT NULL violation at commit, after both counter updates ran
        kwargs["event_type"] = None
        return OutboxEvent(**kwargs)

    monkeypatch.setattr("socialgraph.relationships.OutboxEvent", unwritable_event)
    with pytest.raises(StorageError):
        await store.follow(a, b)

    assert await _relationships(session_factory) == []
    assert (await load_user(a)).following_count == 0
    assert (await load_user(b)).follower_count == 0
    assert await _outbox(session_factory) == []

    # Toggling an existing row rolls back the same way
    monkeypatch.undo()
    assert await store.follow(a, b) is True
    monkeypatch.setattr("socialgraph.relationships.OutboxEvent", unwritable_event)
    with pytest.raises(StorageError):
        await store.unfollow(a, b)

    (rel,) = await _relationships(session_factory)
    assert rel.status == 1
    assert (await load_user(a)).following_count == 1
    assert (await load_user(b)).follower_count == 1
    assert [e.event_type for e in await _outbox(session_factory)] == ["follow"]


async def test_concurrent_follow_storm_on_one_user(session_factory, make_users, load_user):
    store = RelationshipStore(session_factory)
    star, *fans = await make_users("star", "f1", "f2", "f3", "f4")
    rng = random.Random(7)
    ops = []
    for _ in range(40):
        fan = rng.choice(fans)
        ops.append(store.follow(fan, star) if rng.random() < 0.6 else store.unfollow(fan, star))

    results = await asyncio.gather(*ops, return_exceptions=True)

    # Lock conflicts surface as StorageError and leave no trace
    assert all(r is True or r is False or isinstance(r, StorageError) for r in results)
    changed = sum(1 for r in results if r is True)
    assert len(await _outbox(session_factory)) == changed
    for uid in (star, *fans):
        user = await load_user(uid)
        assert user.follower_count >= 0
        assert user.following_count >= 0

    await CountReconciler(session_factory).reconcile_once()

    active = [r for r in await _relationships(session_factory) if r.status == 1]
    assert (await load_user(star)).follower_count == len(active)
    for fan in fans:
        expected = sum(1 for r in active if r.follower_id == fan)
        assert (await load_user(fan)).following_count == expected


async def test_counters_never_go_negative(store, session_factory, make_users, load_user):
    a, b = await make_users("alice", "bob")
    await store.follow(a, b)

    # Simulate drift: counters already at zero while the edge is active
    async with session_factory() as session:
        async with session.begin():
            for uid in (a, b):
                user = await session.get(User, uid)
                user.follower_count = 0
                user.following_count = 0

    assert await store.unfollow(a, b) is True
    assert (await load_user(a)).following_count == 0
    assert (await load_user(b)).follower_count == 0


async def test_is_following(store, make_users):
    a, b = await make_users("alice", "bob")

    assert await store.is_following(a, b) is False
    await store.follow(a, b)
    assert await store.is_following(a, b) is True
    assert await store.is_following(b, a) is False
    await store.unfollow(a, b)
    assert await store.is_following(a, b) is False

    with pytest.raises(InvalidArgumentError):
        await store.is_following(0, b)
    with pytest.raises(InvalidArgumentError):
        await store.is_following(a, -b)


async def test_follow_promotes_followee_past_threshold(store, make_users, load_user):
    a, b, star = await make_users("alice", "bob", "star")

    await store.follow(a, star)
    assert (await load_user(star)).is_vip is False
    await store.follow(b, star)
    assert (await load_user(star)).is_vip is True

    await store.unfollow(a, star)
    assert (await load_user(star)).is_vip is False


async def test_promoter_failure_does_not_fail_follow(session_factory, make_users, load_user):
    class BrokenPromoter:
        async def check_and_mark(self, user_id):
            raise RuntimeError("boom")

    store = RelationshipStore(session_factory, promoter=BrokenPromoter())
    a, b = await make_users("alice", "bob")

    assert await store.follow(a, b) is True
    assert (await load_user(b)).follower_count == 1


async def test_list_followers_paginates_by_reverse_id(store, make_users):
    star, *fans = await make_users("star", "f1", "f2", "f3", "f4", "f5")
    for fan in fans:
        await store.follow(fan, star)
    await store.unfollow(fans[2], star)

    page1, cursor = await store.list_followers(star, 0, 2)
    assert [r.follower_id for r in page1] == [fans[4], fans[3]]
    assert cursor == page1[-1].id

    page2, cursor = await store.list_followers(star, cursor, 2)
    assert [r.follower_id for r in page2] == [fans[1], fans[0]]
    assert cursor == 0


async def test_list_followings(store, make_users):
    me, *others = await make_users("me", "o1", "o2", "o3")
    for other in others:
        await store.follow(me, other)

    rows, cursor = await store.list_followings(me)
    assert [r.followee_id for r in rows] == list(reversed(others))
    assert cursor == 0


def test_limit_defaults_and_cap(session_factory):
    store = RelationshipStore(session_factory)

    assert store.clamp_limit(None) == 20
    assert store.clamp_limit(0) == 20
    assert store.clamp_limit(-5) == 20
    assert store.clamp_limit(50) == 50
    assert store.clamp_limit(1000) == 100
