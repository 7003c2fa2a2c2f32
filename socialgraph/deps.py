"""
FastAPI dependencies.

Components are built once in the app lifespan and stored on app.state;
these accessors hand them to the routers. The caller's identity is an
opaque numeric id put on the request by the upstream auth layer.
"""
from fastapi import Header, HTTPException, Request, status

from socialgraph.likes import LikeCacheEngine
from socialgraph.outbox import OutboxRelay
from socialgraph.relationships import RelationshipStore


def get_relationship_store(request: Request) -> RelationshipStore:
    return request.app.state.relationships


def get_like_engine(request: Request) -> LikeCacheEngine:
    return request.app.state.likes


def get_outbox_relay(request: Request) -> OutboxRelay:
    return request.app.state.outbox_relay


async def get_db(request: Request):
    """Yields an async DB session for plain CRUD endpoints."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_current_user_id(x_user_id: int = Header(0)) -> int:
    if x_user_id <= 0:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="missing caller identity"
        )
    return x_user_id
