import pytest

from engagement.jobs.weekly import WeeklyReviewJob
from engagement.store.models import ACTIVE, DORMANT, MSG_WEEKLY_REVIEW
from engagement.store.profile_repo import TransactionActivity
from engagement.utils.time import parse_timestamp_ms, iso_week, MS_PER_DAY

NOW = parse_timestamp_ms("2026-03-10T12:00:00Z")


@pytest.fixture
def job(store, mq, profiles, r):
    return WeeklyReviewJob(store=store, mq=mq, profiles=profiles, txn_activity=TransactionActivity(r))


def test_iso_week_uses_iso_year():
    assert iso_week(NOW) == "2026-W11"
    assert iso_week(parse_timestamp_ms("2027-01-01T09:00:00Z")) == "2026-W53"


def test_weekly_review_targets_recently_active_users(job, mq, r, seed):
    seed("chatty", ACTIVE, idle_days=2)
    seed("spender", ACTIVE, idle_days=10)
    seed("idle", ACTIVE, idle_days=10)
    seed("gone", DORMANT, idle_days=30, entered_at=NOW - 10 * MS_PER_DAY)
    TransactionActivity(r).record("spender", NOW - MS_PER_DAY)
    TransactionActivity(r).record("gone", NOW - MS_PER_DAY)

    result = job.run(now=NOW, deliver=False)

    assert result.succeeded == 2
    assert result.skipped == 1
    [msg] = mq.messages_for_user("chatty")
    assert msg.messageType == MSG_WEEKLY_REVIEW
    assert msg.idempotencyKey == "chatty:weekly_review:2026-W11"
    assert len(mq.messages_for_user("spender")) == 1
    assert mq.messages_for_user("idle") == []
    assert mq.messages_for_user("gone") == []


def test_rerun_in_same_week_sends_nothing_new(job, mq, seed):
    seed("u1", ACTIVE, idle_days=1)
    job.run(now=NOW, deliver=False)
    again = job.run(now=NOW + 2 * MS_PER_DAY, deliver=False)

    assert again.succeeded == 0
    assert again.skipped == 1
    assert len(mq.messages_for_user("u1")) == 1


def test_weekly_review_does_not_transition(job, store, transitions, seed):
    seed("u1", ACTIVE, idle_days=1)
    job.run(now=NOW, deliver=False)
    assert store.read("u1").state == ACTIVE
    assert transitions.count("u1") == 0


def test_opted_out_user_is_skipped(job, mq, profiles, seed):
    seed("u1", ACTIVE, idle_days=1)
    profiles.set_opt_out("u1", True)
    result = job.run(now=NOW, deliver=False)
    assert result.skipped == 1
    assert mq.messages_for_user("u1") == []
