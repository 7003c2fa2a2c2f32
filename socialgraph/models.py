"""
SQLAlchemy ORM models for the relational store.

Tables:
  users         — profiles + denormalised follower/following counters, VIP flag
  follows       — directed follow edges; one row per ordered pair, toggled, never deleted
  social_outbox — follow/unfollow events written in the same transaction as the edge
  posts         — post metadata + denormalised like_count
  post_likes    — user × post likes; row exists ⇔ liked
"""
import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from socialgraph.database import Base

# BIGINT AUTO_INCREMENT on MySQL; SQLite only auto-increments INTEGER keys
BigIntId = BigInteger().with_variant(Integer, "sqlite")

NOT_FOLLOWING = 0
FOLLOWING = 1


class EventType(str, enum.Enum):
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"


class OutboxStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    follower_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    following_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    is_vip: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )


class Relationship(Base):
    __tablename__ = "follows"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    follower_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    followee_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # 1 = following, 0 = not following
    status: Mapped[int] = mapped_column(SmallInteger, default=FOLLOWING, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("follower_id", "followee_id", name="uk_follower_followee"),
        # Cursor pagination "who does X follow?" / "who follows X?"
        Index("idx_follows_follower", "follower_id", "status", "id"),
        Index("idx_follows_followee", "followee_id", "status", "id"),
    )


class OutboxEvent(Base):
    __tablename__ = "social_outbox"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(16), nullable=False)
    follower_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    followee_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=OutboxStatus.PENDING.value, nullable=False
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        # Relay polls "pending, oldest first"
        Index("idx_outbox_status_id", "status", "id"),
    )


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    author_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content: Mapped[Optional[str]] = mapped_column(Text)
    like_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_posts_author", "author_id"),
    )


class PostLike(Base):
    __tablename__ = "post_likes"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    post_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "post_id", name="uk_user_post"),
        Index("idx_post_likes_post", "post_id"),
    )
