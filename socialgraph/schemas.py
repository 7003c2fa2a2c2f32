"""
Pydantic request / response schemas for the API layer, plus the event
envelope handed to outbox senders.
Kept separate from ORM models to avoid coupling transport to storage.
"""
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field


# ──────────────────────────── Users ───────────────────────────────────────

class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=64)
    display_name: Optional[str] = None


class UserResponse(BaseModel):
    id: int
    username: str
    display_name: Optional[str]
    follower_count: int
    following_count: int
    is_vip: bool
    created_at: datetime

    class Config:
        from_attributes = True


# ──────────────────────────── Follows ─────────────────────────────────────

class FollowRequest(BaseModel):
    followee_id: int = Field(..., gt=0)
    action: Literal["follow", "unfollow"]


class ChangedResponse(BaseModel):
    changed: bool


class RelationshipResponse(BaseModel):
    id: int
    follower_id: int
    followee_id: int
    created_at: datetime

    class Config:
        from_attributes = True


class RelationshipPage(BaseModel):
    relationships: list[RelationshipResponse]
    next_cursor: int


class RelationResponse(BaseModel):
    following: bool


# ──────────────────────────── Posts / Likes ───────────────────────────────

class PostCreate(BaseModel):
    content: Optional[str] = None


class PostResponse(BaseModel):
    id: int
    author_id: int
    content: Optional[str]
    like_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class LikedResponse(BaseModel):
    liked: bool


class LikeCountResponse(BaseModel):
    count: int


# ──────────────────────────── Outbox ──────────────────────────────────────

class OutboxMessage(BaseModel):
    """
    What a Sender receives for one outbox row.

    event_id is the outbox primary key; downstream consumers dedup on it
    because relay delivery is at-least-once.
    """
    event_id: int
    event_type: str
    follower_id: int
    followee_id: int
    payload: dict

    @classmethod
    def from_row(cls, row) -> "OutboxMessage":  # noqa: ANN001
        return cls(
            event_id=row.id,
            event_type=row.event_type,
            follower_id=row.follower_id,
            followee_id=row.followee_id,
            payload=row.payload,
        )


class RequeueRequest(BaseModel):
    max_retries: int = Field(3, gt=0)


class RequeueResponse(BaseModel):
    requeued: int
