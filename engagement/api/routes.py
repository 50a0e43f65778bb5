from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from engagement.api.schemas import (
    ActivityRequest,
    ActivityResponse,
    OptOutRequest,
    TransactionActivityRequest,
)
from engagement.api.auth import require_api_key
from engagement.core.activity_tracker import ActivityTracker, record_transaction_activity
from engagement.outbox.templates import render
from engagement.store.state_repo import StateStore
from engagement.store.profile_repo import ProfileStore
from engagement.store.redis_conn import get_redis

router = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])


def redis_client():
    """Dependency seam: tests override this with an in-memory Redis."""
    return get_redis()


def _handle_activity(req: ActivityRequest, r) -> ActivityResponse:
    tracker = ActivityTracker(store=StateStore(r))
    out = tracker.record_activity(
        req.userId,
        timestamp=req.timestamp,
        raw_text=req.rawText,
        is_group=req.isGroup,
        jid=req.jid,
        group_jid=req.groupJid,
        locale=req.locale,
    )
    reply = render(out.replyKey, out.replyParams, req.locale) if out.replyKey else None
    return ActivityResponse(
        userId=out.userId,
        reactivated=out.reactivated,
        previousState=out.previousState,
        state=out.state,
        isFirstMessage=out.isFirstMessage,
        trigger=out.trigger,
        replyKey=out.replyKey,
        reply=reply,
        replyParams=out.replyParams,
    )


@router.post("/activity", response_model=ActivityResponse)
async def post_activity(req: ActivityRequest, r=Depends(redis_client)):
    return await run_in_threadpool(_handle_activity, req, r)


@router.post("/users/{user_id}/opt-out")
def post_opt_out(user_id: str, req: OptOutRequest, r=Depends(redis_client)):
    ProfileStore(r).set_opt_out(user_id, req.optOut)
    return {"status": "success", "userId": user_id, "optOut": req.optOut}


@router.post("/users/{user_id}/transaction-activity")
def post_transaction_activity(user_id: str, req: TransactionActivityRequest, r=Depends(redis_client)):
    record_transaction_activity(user_id, req.timestamp, r=r)
    return {"status": "success", "userId": user_id}
