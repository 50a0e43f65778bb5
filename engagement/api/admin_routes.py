from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query

from engagement.api.auth import require_admin
from engagement.api.routes import redis_client
from engagement.store.state_repo import StateStore
from engagement.store.transition_log import TransitionLog
from engagement.store.profile_repo import ProfileStore
from engagement.outbox.message_queue import MessageQueue
import engagement.observability.metrics as metrics

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/users/{user_id}")
def get_user_snapshot(user_id: str, r=Depends(redis_client)):
    """Current engagement record, routing profile and pending messages."""
    record = StateStore(r).read(user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Unknown user")
    profile = ProfileStore(r).get(user_id)
    pending = MessageQueue(r).pending_for_user(user_id)
    return {
        "engagement": asdict(record),
        "profile": asdict(profile) if profile else None,
        "pendingMessages": [asdict(m) for m in pending],
    }


@router.get("/users/{user_id}/transitions")
def get_user_transitions(user_id: str, limit: int = Query(50, ge=1, le=500), r=Depends(redis_client)):
    log = TransitionLog(r)
    return {
        "userId": user_id,
        "total": log.count(user_id),
        "transitions": [asdict(t) for t in log.history(user_id, limit)],
    }


@router.get("/transition-stats")
def get_transition_stats(r=Depends(redis_client)):
    return TransitionLog(r).stats()


@router.get("/metrics")
def get_metrics(r=Depends(redis_client)):
    """Dashboard snapshot backed by Redis counters."""
    return metrics.get_engagement_snapshot(
        population=StateStore(r).population(),
        queue_depth=MessageQueue(r).depth(),
    )


@router.get("/transitions/recent")
def get_recent_transitions(limit: int = Query(50, ge=1, le=500), r=Depends(redis_client)):
    return {"transitions": [asdict(t) for t in TransitionLog(r).recent(limit)]}
