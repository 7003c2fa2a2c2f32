"""
Social graph endpoints:
  POST /follows             — follow or unfollow (action in body) as the caller
  GET  /follows/followings  — who a user follows, reverse-id cursor pages
  GET  /follows/followers   — who follows a user, reverse-id cursor pages
  GET  /follows/relation    — does `from_id` follow `to_id`?
"""
from fastapi import APIRouter, Depends, Query

from socialgraph.deps import get_current_user_id, get_relationship_store
from socialgraph.relationships import RelationshipStore
from socialgraph.schemas import (
    ChangedResponse,
    FollowRequest,
    RelationResponse,
    RelationshipPage,
)

router = APIRouter()


@router.post("/", response_model=ChangedResponse)
async def follow(
    body: FollowRequest,
    caller_id: int = Depends(get_current_user_id),
    store: RelationshipStore = Depends(get_relationship_store),
):
    if body.action == "follow":
        changed = await store.follow(caller_id, body.followee_id)
    else:
        changed = await store.unfollow(caller_id, body.followee_id)
    return ChangedResponse(changed=changed)


@router.get("/followings", response_model=RelationshipPage)
async def list_followings(
    user_id: int = Query(..., gt=0),
    cursor: int = Query(0, ge=0),
    limit: int = Query(0, ge=0),
    store: RelationshipStore = Depends(get_relationship_store),
):
    rows, next_cursor = await store.list_followings(user_id, cursor, limit)
    return RelationshipPage(relationships=rows, next_cursor=next_cursor)


@router.get("/followers", response_model=RelationshipPage)
async def list_followers(
    user_id: int = Query(..., gt=0),
    cursor: int = Query(0, ge=0),
    limit: int = Query(0, ge=0),
    store: RelationshipStore = Depends(get_relationship_store),
):
    rows, next_cursor = await store.list_followers(user_id, cursor, limit)
    return RelationshipPage(relationships=rows, next_cursor=next_cursor)


@router.get("/relation", response_model=RelationResponse)
async def relation(
    from_id: int = Query(..., gt=0),
    to_id: int = Query(..., gt=0),
    store: RelationshipStore = Depends(get_relationship_store),
):
    return RelationResponse(following=await store.is_following(from_id, to_id))
