import random
import time
from typing import Dict, List, Optional

from engagement.settings import settings
from engagement.core.errors import TransportError
from engagement.outbox.message_queue import MessageQueue
from engagement.outbox.templates import render
from engagement.outbox.transport import Transport
from engagement.store.models import STATUS_PENDING
from engagement.store.profile_repo import ProfileStore, resolve_destination
from engagement.observability.logging import log
import engagement.observability.metrics as metrics
from engagement.utils import lock
from engagement.utils.time import now_ms

SENT = "sent"
RETRY = "retry"
FAILED = "failed"
SKIPPED = "skipped"


def _calc_backoff(attempt: int) -> int:
    """Exponential backoff with jitter."""
    base = int(settings.DELIVERY_BASE_DELAY_MS or 1000)
    max_delay = int(settings.DELIVERY_MAX_DELAY_MS or 3600000)
    delay = base * (2 ** (attempt - 1))
    jitter = delay * 0.1 * random.uniform(-1, 1)
    return min(max_delay, int(delay + jitter))


def process_message(message_id: str, transport: Transport, mq: MessageQueue,
                    profiles: ProfileStore, now: Optional[int] = None) -> str:
    """
    One delivery attempt for one queued message.

    The per-message claim keeps two pollers from sending the same row; the
    row is re-read under the claim so a message sent or cancelled meanwhile
    is skipped.
    """
    now = int(now if now is not None else now_ms())
    claim_key = f"lock:mq:{message_id}"
    token = lock.acquire(mq.r, claim_key, settings.DELIVERY_CLAIM_TTL_MS)
    if not token:
        return SKIPPED
    try:
        msg = mq.get(message_id)
        if msg is None or msg.status != STATUS_PENDING or int(msg.scheduledFor) > now:
            return SKIPPED

        profile = profiles.get(msg.userId)
        _, routed_jid, _ = resolve_destination(profile)
        jid = routed_jid or msg.destinationJid
        locale = (profile.locale if profile else None) or (msg.messageParams or {}).get("locale")

        start = time.time()
        error = None
        if not jid:
            error = "no destination for user"
        else:
            text = render(msg.messageKey, msg.messageParams, locale)
            try:
                if not transport.send(jid, text):
                    error = "transport reported failure"
            except TransportError as e:
                error = str(e)[:500]
        elapsed_ms = int((time.time() - start) * 1000)

        if error is None:
            if mq.mark_sent(msg.id, now) is None:
                # Cancelled (or otherwise moved) while the send was in flight.
                log(event="message_sent_after_cancel", level="warning", messageId=msg.id,
                    userId=msg.userId, messageType=msg.messageType)
                return SENT
            metrics.incr(metrics.MESSAGE_SENT)
            metrics.record_delivery_latency(elapsed_ms)
            log(event="message_sent", messageId=msg.id, userId=msg.userId,
                messageType=msg.messageType, elapsedMs=elapsed_ms)
            return SENT

        attempt = int(msg.retryCount or 0) + 1
        if attempt >= int(settings.MAX_MESSAGE_RETRIES):
            mq.mark_failed(msg.id, error)
            metrics.incr(metrics.MESSAGE_FAILED)
            log(event="message_failed_terminal", level="error", messageId=msg.id,
                userId=msg.userId, attempts=attempt, error=error)
            return FAILED

        backoff = _calc_backoff(attempt)
        mq.mark_retry(msg.id, error, now + backoff)
        metrics.incr(metrics.MESSAGE_RETRY)
        log(event="message_retry_scheduled", level="warning", messageId=msg.id,
            userId=msg.userId, attempt=attempt, backoffMs=backoff, error=error)
        return RETRY
    finally:
        lock.release(mq.r, claim_key, token)


def deliver_pending(transport: Transport, limit: Optional[int] = None, mq: Optional[MessageQueue] = None,
                    profiles: Optional[ProfileStore] = None, now: Optional[int] = None) -> Dict:
    """
    Poll due `pending` rows and attempt each once.
    A failure on one message never stops the pass.
    """
    mq = mq if mq is not None else MessageQueue()
    profiles = profiles if profiles is not None else ProfileStore(mq.r)
    now = int(now if now is not None else now_ms())
    limit = int(limit if limit is not None else settings.DELIVERY_BATCH_LIMIT)

    result = {"processed": 0, "succeeded": 0, "retried": 0, "failed": 0, "skipped": 0, "errors": []}
    errors: List[Dict] = result["errors"]

    for message_id in mq.due_ids(now, limit):
        try:
            outcome = process_message(message_id, transport, mq, profiles, now=now)
        except Exception as e:
            # Store hiccup on one row; leave it pending for the next pass.
            errors.append({"messageId": message_id, "error": f"{type(e).__name__}: {e}"})
            log(event="delivery_exception", level="error", messageId=message_id, error=str(e))
            continue
        if outcome == SKIPPED:
            result["skipped"] += 1
            continue
        result["processed"] += 1
        if outcome == SENT:
            result["succeeded"] += 1
        elif outcome == RETRY:
            result["retried"] += 1
        else:
            result["failed"] += 1

    log(event="delivery_pass_completed", processed=result["processed"], succeeded=result["succeeded"],
        retried=result["retried"], failed=result["failed"], skipped=result["skipped"])
    return result
