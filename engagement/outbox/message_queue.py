import json
import uuid
from dataclasses import asdict
from typing import Callable, List, Optional, Tuple

from redis.exceptions import WatchError

from engagement.store.redis_conn import get_redis
from engagement.store.models import (
    MessageDraft,
    QueuedMessage,
    from_dict,
    STATUS_PENDING,
    STATUS_SENT,
    STATUS_FAILED,
    STATUS_CANCELLED,
)
from engagement.observability.logging import log
import engagement.observability.metrics as metrics
from engagement.utils.time import now_ms, utc_date

MSG_PREFIX = "mq:msg:"
IDEM_PREFIX = "mq:idem:"
USER_PREFIX = "mq:user:"
K_PENDING = "mq:pending"

# The idempotency claim and the row are created together or not at all.
# Returns {1, id} on insert, {0, existing_id} on key conflict.
_ENQUEUE_LUA = """
local existing = redis.call("get", KEYS[1])
if existing then
    return {0, existing}
end
redis.call("set", KEYS[1], ARGV[1])
redis.call("set", KEYS[2], ARGV[2])
redis.call("zadd", KEYS[3], ARGV[3], ARGV[1])
redis.call("zadd", KEYS[4], ARGV[3], ARGV[1])
return {1, ARGV[1]}
"""


def _msg_key(message_id: str) -> str:
    return f"{MSG_PREFIX}{message_id}"


def _idem_key(idempotency_key: str) -> str:
    return f"{IDEM_PREFIX}{idempotency_key}"


def _user_key(user_id: str) -> str:
    return f"{USER_PREFIX}{user_id}"


def idempotency_key(user_id: str, message_type: str, event_identity: str) -> str:
    """Deterministic key for one logical send: (user, type, triggering event)."""
    return f"{user_id}:{message_type}:{event_identity}"


def daily_idempotency_key(user_id: str, message_type: str, at_ms: int) -> str:
    return idempotency_key(user_id, message_type, utc_date(at_ms))


class MessageQueue:
    """
    Idempotent outbound message ledger.

    `enqueue` never creates a second row for the same idempotency key, no
    matter how many retries or overlapping job runs call it.
    """

    def __init__(self, r=None):
        self.r = r if r is not None else get_redis()

    # ---- enqueue -------------------------------------------------------

    def _build(self, draft: MessageDraft, now: int) -> QueuedMessage:
        return QueuedMessage(
            id=uuid.uuid4().hex,
            userId=draft.userId,
            messageType=draft.messageType,
            messageKey=draft.messageKey,
            idempotencyKey=draft.idempotencyKey,
            messageParams=dict(draft.messageParams or {}),
            destination=draft.destination,
            destinationJid=draft.destinationJid,
            scheduledFor=int(draft.scheduledFor if draft.scheduledFor is not None else now),
            status=STATUS_PENDING,
            createdAt=int(now),
        )

    def _script_args(self, msg: QueuedMessage):
        keys = [_idem_key(msg.idempotencyKey), _msg_key(msg.id), K_PENDING, _user_key(msg.userId)]
        args = [msg.id, json.dumps(asdict(msg), default=str), int(msg.scheduledFor)]
        return keys, args

    def enqueue(self, draft: MessageDraft, now: Optional[int] = None) -> Tuple[bool, str]:
        """
        Insert-or-ignore on the idempotency key.
        Returns (created, message_id); on conflict the id is the existing row's.
        """
        now = int(now if now is not None else now_ms())
        msg = self._build(draft, now)
        keys, args = self._script_args(msg)
        created, message_id = self.r.eval(_ENQUEUE_LUA, len(keys), *keys, *args)
        created = bool(int(created))
        if created:
            metrics.incr(metrics.MESSAGE_ENQUEUED)
            log(event="message_enqueued", userId=msg.userId, messageType=msg.messageType,
                messageId=message_id, idempotencyKey=msg.idempotencyKey)
        else:
            metrics.incr(metrics.MESSAGE_DUPLICATE)
            log(event="message_enqueue_duplicate", level="debug", userId=msg.userId,
                messageType=msg.messageType, idempotencyKey=msg.idempotencyKey, existingId=message_id)
        return created, message_id

    def enqueue_op(self, draft: MessageDraft, now: Optional[int] = None) -> Callable[[object], None]:
        """
        Pipeline op for the transactional outbox: the enqueue script is queued
        into the caller's MULTI and commits with the state change.
        """
        now = int(now if now is not None else now_ms())
        msg = self._build(draft, now)
        keys, args = self._script_args(msg)

        def _op(pipe) -> None:
            pipe.eval(_ENQUEUE_LUA, len(keys), *keys, *args)

        return _op

    # ---- reads ---------------------------------------------------------

    def get(self, message_id: str) -> Optional[QueuedMessage]:
        raw = self.r.get(_msg_key(message_id))
        if not raw:
            return None
        return from_dict(QueuedMessage, json.loads(raw))

    def find_by_idempotency_key(self, key: str) -> Optional[QueuedMessage]:
        message_id = self.r.get(_idem_key(key))
        return self.get(message_id) if message_id else None

    def messages_for_user(self, user_id: str) -> List[QueuedMessage]:
        out = []
        for mid in self.r.zrange(_user_key(user_id), 0, -1) or []:
            m = self.get(mid)
            if m is not None:
                out.append(m)
        return out

    def pending_for_user(self, user_id: str) -> List[QueuedMessage]:
        return [m for m in self.messages_for_user(user_id) if m.status == STATUS_PENDING]

    def due_ids(self, now: Optional[int] = None, limit: int = 100) -> List[str]:
        now = int(now if now is not None else now_ms())
        return list(self.r.zrangebyscore(K_PENDING, "-inf", now, start=0, num=int(limit)))

    def depth(self) -> int:
        return int(self.r.zcard(K_PENDING) or 0)

    # ---- status changes ------------------------------------------------

    def _update(self, message_id: str, mutate: Callable[[QueuedMessage], bool]) -> Optional[QueuedMessage]:
        """
        Versionless compare-and-set on the row: WATCH, let `mutate` edit it
        (returning False to abort), write back and fix the pending index.
        """
        key = _msg_key(message_id)
        for _ in range(3):
            with self.r.pipeline() as pipe:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if not raw:
                        pipe.unwatch()
                        return None
                    msg = from_dict(QueuedMessage, json.loads(raw))
                    if not mutate(msg):
                        pipe.unwatch()
                        return None
                    pipe.multi()
                    pipe.set(key, json.dumps(asdict(msg), default=str))
                    if msg.status == STATUS_PENDING:
                        pipe.zadd(K_PENDING, {msg.id: int(msg.scheduledFor)})
                    else:
                        pipe.zrem(K_PENDING, msg.id)
                    pipe.execute()
                    return msg
                except WatchError:
                    continue
        log(event="message_update_contended", level="warning", messageId=message_id)
        return None

    def mark_sent(self, message_id: str, sent_at: int) -> Optional[QueuedMessage]:
        def _m(msg: QueuedMessage) -> bool:
            if msg.status != STATUS_PENDING:
                return False
            msg.status = STATUS_SENT
            msg.sentAt = int(sent_at)
            msg.errorMessage = None
            return True
        return self._update(message_id, _m)

    def mark_retry(self, message_id: str, error: str, next_attempt_at: int) -> Optional[QueuedMessage]:
        def _m(msg: QueuedMessage) -> bool:
            if msg.status != STATUS_PENDING:
                return False
            msg.retryCount = int(msg.retryCount or 0) + 1
            msg.errorMessage = error
            msg.scheduledFor = int(next_attempt_at)
            return True
        return self._update(message_id, _m)

    def mark_failed(self, message_id: str, error: str) -> Optional[QueuedMessage]:
        def _m(msg: QueuedMessage) -> bool:
            if msg.status != STATUS_PENDING:
                return False
            msg.retryCount = int(msg.retryCount or 0) + 1
            msg.status = STATUS_FAILED
            msg.errorMessage = error
            return True
        return self._update(message_id, _m)

    def cancel(self, message_id: str) -> bool:
        """
        Cancel a pending message. The idempotency key stays claimed, so the
        same logical event is never re-queued.
        """
        def _m(msg: QueuedMessage) -> bool:
            if msg.status != STATUS_PENDING:
                return False
            msg.status = STATUS_CANCELLED
            return True
        cancelled = self._update(message_id, _m) is not None
        if cancelled:
            log(event="message_cancelled", messageId=message_id)
        return cancelled
