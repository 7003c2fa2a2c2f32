"""
Operator endpoints:
  POST /admin/outbox/requeue — move failed outbox events back to pending
"""
from fastapi import APIRouter, Depends

from socialgraph.deps import get_outbox_relay
from socialgraph.outbox import OutboxRelay
from socialgraph.schemas import RequeueRequest, RequeueResponse

router = APIRouter()


@router.post("/outbox/requeue", response_model=RequeueResponse)
async def requeue_failed_outbox(
    body: RequeueRequest,
    relay: OutboxRelay = Depends(get_outbox_relay),
):
    requeued = await relay.requeue_failed(body.max_retries)
    return RequeueResponse(requeued=requeued)
