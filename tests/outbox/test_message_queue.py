from engagement.outbox.message_queue import MessageQueue, idempotency_key, daily_idempotency_key
from engagement.store.models import (
    MessageDraft,
    MSG_GOODBYE,
    STATUS_PENDING,
    STATUS_SENT,
    STATUS_FAILED,
    STATUS_CANCELLED,
)
from engagement.outbox.templates import GOODBYE_KEY
from engagement.utils.time import parse_timestamp_ms

NOW = parse_timestamp_ms("2026-03-10T12:00:00Z")


def _draft(user_id="u1", key=None):
    return MessageDraft(
        userId=user_id,
        messageType=MSG_GOODBYE,
        messageKey=GOODBYE_KEY,
        idempotencyKey=key or daily_idempotency_key(user_id, MSG_GOODBYE, NOW),
    )


def test_idempotency_keys_are_deterministic():
    assert daily_idempotency_key("u1", "goodbye", NOW) == "u1:goodbye:2026-03-10"
    assert idempotency_key("u1", "weekly_review", "2026-W11") == "u1:weekly_review:2026-W11"


def test_duplicate_enqueue_yields_one_row(mq):
    created, first_id = mq.enqueue(_draft(), now=NOW)
    again, second_id = mq.enqueue(_draft(), now=NOW + 5)

    assert created is True
    assert again is False
    assert second_id == first_id
    [row] = mq.messages_for_user("u1")
    assert row.status == STATUS_PENDING
    assert row.scheduledFor == NOW
    assert mq.depth() == 1


def test_enqueue_op_commits_inside_caller_transaction(mq, r):
    op = mq.enqueue_op(_draft(), now=NOW)
    with r.pipeline() as pipe:
        pipe.multi()
        op(pipe)
        pipe.execute()
    op_again = mq.enqueue_op(_draft(), now=NOW)
    with r.pipeline() as pipe:
        pipe.multi()
        op_again(pipe)
        pipe.execute()

    assert len(mq.messages_for_user("u1")) == 1
    assert mq.find_by_idempotency_key("u1:goodbye:2026-03-10") is not None


def test_cancel_keeps_key_claimed(mq):
    _, mid = mq.enqueue(_draft(), now=NOW)
    assert mq.cancel(mid) is True
    assert mq.cancel(mid) is False

    created, same = mq.enqueue(_draft(), now=NOW)
    assert created is False and same == mid
    assert mq.get(mid).status == STATUS_CANCELLED
    assert mq.pending_for_user("u1") == []
    assert mq.due_ids(NOW) == []


def test_status_changes(mq):
    _, mid = mq.enqueue(_draft(), now=NOW)

    retried = mq.mark_retry(mid, "timeout", NOW + 60000)
    assert retried.retryCount == 1
    assert mq.due_ids(NOW) == []
    assert mq.due_ids(NOW + 60000) == [mid]

    sent = mq.mark_sent(mid, NOW + 60001)
    assert sent.status == STATUS_SENT
    assert sent.sentAt == NOW + 60001
    # Terminal rows do not change again.
    assert mq.mark_failed(mid, "late") is None
    assert mq.get(mid).status == STATUS_SENT


def test_mark_failed_is_terminal(mq):
    _, mid = mq.enqueue(_draft(), now=NOW)
    failed = mq.mark_failed(mid, "bad destination")
    assert failed.status == STATUS_FAILED
    assert failed.retryCount == 1
    assert mq.depth() == 0
