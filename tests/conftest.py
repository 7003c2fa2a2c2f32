from __future__ import annotations

import os

# Keep tests off the OTLP exporter; must be set before socialgraph.config loads
os.environ.setdefault("OTEL_ENABLED", "false")

import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy import select

from socialgraph.database import create_engine, create_session_factory, init_db
from socialgraph.models import Post, User


@pytest.fixture()
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'socialgraph.db'}")
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture()
async def redis():
    client = FakeAsyncRedis(decode_responses=True)
    try:
        yield client
    finally:
        await client.flushall()
        await client.aclose()


@pytest.fixture()
def make_users(session_factory):
    async def _make(*usernames: str) -> list[int]:
        async with session_factory() as session:
            async with session.begin():
                users = [User(username=name) for name in usernames]
                session.add_all(users)
            return [u.id for u in users]

    return _make


@pytest.fixture()
def make_post(session_factory):
    async def _make(author_id: int, content: str = "hello") -> int:
        async with session_factory() as session:
            async with session.begin():
                post = Post(author_id=author_id, content=content, like_count=0)
                session.add(post)
            return post.id

    return _make


@pytest.fixture()
def load_user(session_factory):
    async def _load(user_id: int) -> User:
        async with session_factory() as session:
            return (await session.execute(select(User).where(User.id == user_id))).scalar_one()

    return _load
