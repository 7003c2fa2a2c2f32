"""
Post endpoints:
  POST   /posts                 — create a post authored by the caller
  POST   /posts/{id}/like       — like (idempotent)
  DELETE /posts/{id}/like       — unlike (idempotent)
  GET    /posts/{id}/liked      — has the caller liked the post?
  GET    /posts/{id}/like-count — cached like count
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from socialgraph.deps import get_current_user_id, get_db, get_like_engine
from socialgraph.likes import LikeCacheEngine
from socialgraph.models import Post, User
from socialgraph.schemas import (
    ChangedResponse,
    LikeCountResponse,
    LikedResponse,
    PostCreate,
    PostResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.post("/", response_model=PostResponse, status_code=status.HTTP_201_CREATED)
async def create_post(
    body: PostCreate,
    caller_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    with tracer.start_as_current_span("create_post") as span:
        if not await db.get(User, caller_id):
            raise HTTPException(status_code=404, detail="Author not found")

        post = Post(author_id=caller_id, content=body.content, like_count=0)
        db.add(post)
        await db.flush()        # materialise id
        await db.refresh(post)  # load server-generated fields (created_at)

        span.set_attribute("post.id", post.id)
        logger.info("Post created: %s by user %s", post.id, caller_id)
        return post


@router.post("/{post_id}/like", response_model=ChangedResponse)
async def like_post(
    post_id: int,
    caller_id: int = Depends(get_current_user_id),
    engine: LikeCacheEngine = Depends(get_like_engine),
):
    return ChangedResponse(changed=await engine.like(caller_id, post_id))


@router.delete("/{post_id}/like", response_model=ChangedResponse)
async def unlike_post(
    post_id: int,
    caller_id: int = Depends(get_current_user_id),
    engine: LikeCacheEngine = Depends(get_like_engine),
):
    return ChangedResponse(changed=await engine.unlike(caller_id, post_id))


@router.get("/{post_id}/liked", response_model=LikedResponse)
async def is_liked(
    post_id: int,
    caller_id: int = Depends(get_current_user_id),
    engine: LikeCacheEngine = Depends(get_like_engine),
):
    return LikedResponse(liked=await engine.is_liked(caller_id, post_id))


@router.get("/{post_id}/like-count", response_model=LikeCountResponse)
async def like_count(
    post_id: int,
    engine: LikeCacheEngine = Depends(get_like_engine),
):
    return LikeCountResponse(count=await engine.get_count(post_id))
