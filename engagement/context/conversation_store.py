"""
Pending conversation context for multi-step flows.

One live context per (userId, flowKind). Entries expire two ways: Redis PX
expiry removes the key, and every read re-checks the stored createdAt so a
context is never served past its TTL even if the key outlived it. Deletes
are idempotent; `consume` is GETDEL so only one caller ever sees a payload.
"""
import json
from dataclasses import asdict
from typing import Any, Dict, Optional

from engagement.settings import settings
from engagement.store.redis_conn import get_redis
from engagement.store.models import PendingConversationContext, from_dict
from engagement.observability.logging import log
import engagement.observability.metrics as metrics
from engagement.utils.time import now_ms

CARD_SELECTION = "card_selection"
PAYOFF_SELECTION = "payoff_selection"
CORRECTION_CONFIRMATION = "correction_confirmation"
TRANSACTION_CONFIRMATION = "transaction_confirmation"
DELETE_CONFIRMATION = "delete_confirmation"

FLOW_KINDS = frozenset({
    CARD_SELECTION,
    PAYOFF_SELECTION,
    CORRECTION_CONFIRMATION,
    TRANSACTION_CONFIRMATION,
    DELETE_CONFIRMATION,
})

PREFIX = "ctx:"

# Delete only if the stored value is still the one the sweep inspected.
_COMPARE_DELETE_LUA = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def _key(user_id: str, flow_kind: str) -> str:
    if flow_kind not in FLOW_KINDS:
        raise ValueError(f"unknown flow kind: {flow_kind}")
    return f"{PREFIX}{user_id}:{flow_kind}"


def _decode(raw) -> Optional[PendingConversationContext]:
    try:
        return from_dict(PendingConversationContext, json.loads(raw))
    except (TypeError, ValueError):
        return None


class ConversationContextStore:
    def __init__(self, r=None, ttl_sec: Optional[int] = None):
        self.r = r if r is not None else get_redis()
        self.ttl_sec = int(ttl_sec if ttl_sec is not None else settings.CONTEXT_TTL_SEC)

    def store(self, user_id: str, flow_kind: str, payload: Dict[str, Any],
              now: Optional[int] = None) -> PendingConversationContext:
        """Upsert: a newer context replaces whatever was there, stale or not."""
        ctx = PendingConversationContext(
            userId=user_id,
            flowKind=flow_kind,
            payload=dict(payload or {}),
            createdAt=int(now if now is not None else now_ms()),
            ttlSec=self.ttl_sec,
        )
        self.r.set(_key(user_id, flow_kind), json.dumps(asdict(ctx), default=str), px=self.ttl_sec * 1000)
        log(event="context_stored", level="debug", userId=user_id, flowKind=flow_kind)
        return ctx

    def get(self, user_id: str, flow_kind: str, now: Optional[int] = None) -> Optional[Dict[str, Any]]:
        key = _key(user_id, flow_kind)
        raw = self.r.get(key)
        if not raw:
            return None
        ctx = _decode(raw)
        now = int(now if now is not None else now_ms())
        if ctx is None or ctx.is_expired(now):
            self.r.eval(_COMPARE_DELETE_LUA, 1, key, raw)
            return None
        return ctx.payload

    def consume(self, user_id: str, flow_kind: str, now: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Atomic get-then-delete. A second call for the same context returns None."""
        raw = self.r.getdel(_key(user_id, flow_kind))
        if not raw:
            return None
        ctx = _decode(raw)
        now = int(now if now is not None else now_ms())
        if ctx is None or ctx.is_expired(now):
            log(event="context_expired_on_consume", level="debug", userId=user_id, flowKind=flow_kind)
            return None
        metrics.incr(metrics.CONTEXT_CONSUMED)
        return ctx.payload

    def cancel(self, user_id: str, flow_kind: str) -> bool:
        """Drop the context. Cancelling an absent context is a no-op."""
        return bool(self.r.delete(_key(user_id, flow_kind)))

    def sweep_expired(self, now: Optional[int] = None) -> int:
        """
        Active expiry for contexts whose createdAt is past the TTL. Each
        delete is a compare-and-delete on the exact value inspected, so a
        context overwritten or consumed meanwhile is left alone.
        """
        now = int(now if now is not None else now_ms())
        removed = 0
        for key in self.r.scan_iter(match=f"{PREFIX}*"):
            raw = self.r.get(key)
            if not raw:
                continue
            ctx = _decode(raw)
            if ctx is not None and not ctx.is_expired(now):
                continue
            removed += int(self.r.eval(_COMPARE_DELETE_LUA, 1, key, raw) or 0)
        if removed:
            log(event="context_sweep_completed", removed=removed)
        return removed
