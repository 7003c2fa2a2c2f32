"""
User endpoints:
  POST /users       — create a user profile
  GET  /users/{id}  — fetch a profile with its follower/following counters
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from socialgraph.deps import get_db
from socialgraph.models import User
from socialgraph.schemas import UserCreate, UserResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.post("/", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(body: UserCreate, db: AsyncSession = Depends(get_db)):
    with tracer.start_as_current_span("create_user"):
        existing = await db.execute(
            select(User).where(User.username == body.username)
        )
        if existing.scalar_one_or_none():
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Username '{body.username}' already taken",
            )

        user = User(username=body.username, display_name=body.display_name)
        db.add(user)
        await db.flush()        # get id before commit
        await db.refresh(user)  # load server-generated fields (created_at)

        logger.info("Created user %s (id=%s)", user.username, user.id)
        return user


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(user_id: int, db: AsyncSession = Depends(get_db)):
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user
