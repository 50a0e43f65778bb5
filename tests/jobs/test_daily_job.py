import threading

import pytest
from unittest.mock import MagicMock, patch
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from engagement.core.errors import FatalError
from engagement.core.state_machine import StateMachine
from engagement.jobs.daily import DailyEngagementJob
from engagement.store.models import (
    ACTIVE,
    GOODBYE_SENT,
    REMIND_LATER,
    DORMANT,
    HELP_FLOW,
    MSG_GOODBYE,
    STATUS_PENDING,
)
import engagement.observability.metrics as metrics
from engagement.utils.time import parse_timestamp_ms, MS_PER_DAY, MS_PER_HOUR

NOW = parse_timestamp_ms("2026-03-10T12:00:00Z")


@pytest.fixture
def job(store, machine, mq, profiles):
    return DailyEngagementJob(store=store, machine=machine, mq=mq, profiles=profiles)


def test_inactive_user_gets_goodbye(job, store, mq, profiles, seed):
    profiles.upsert("u1", jid="551199@s.whatsapp.net", locale="pt-BR")
    seed("u1", ACTIVE, idle_days=15)

    result = job.run(now=NOW, deliver=False)

    assert (result.processed, result.succeeded, result.failed, result.skipped) == (1, 1, 0, 0)
    rec = store.read("u1")
    assert rec.state == GOODBYE_SENT
    assert rec.goodbyeExpiresAt == NOW + 48 * MS_PER_HOUR
    [msg] = mq.messages_for_user("u1")
    assert msg.messageType == MSG_GOODBYE
    assert msg.status == STATUS_PENDING
    assert msg.idempotencyKey == "u1:goodbye:2026-03-10"
    assert msg.destinationJid == "551199@s.whatsapp.net"
    assert msg.messageParams == {"locale": "pt-BR"}


def test_recently_active_and_boundary_users(job, store, seed):
    seed("fresh", ACTIVE, idle_days=13)
    seed("edge", ACTIVE, idle_days=14)

    job.run(now=NOW, deliver=False)

    assert store.read("fresh").state == ACTIVE
    assert store.read("edge").state == GOODBYE_SENT


def test_second_run_adds_no_transitions(job, transitions, mq, seed):
    seed("a", ACTIVE, idle_days=20)
    seed("b", GOODBYE_SENT, idle_days=20, entered_at=NOW - 50 * MS_PER_HOUR)
    seed("c", REMIND_LATER, idle_days=40, entered_at=NOW - 15 * MS_PER_DAY)

    first = job.run(now=NOW, deliver=False)
    assert first.succeeded == 3
    counts = {u: transitions.count(u) for u in ("a", "b", "c")}

    second = job.run(now=NOW, deliver=False)

    assert second.processed == 0
    assert {u: transitions.count(u) for u in ("a", "b", "c")} == counts
    assert len(mq.messages_for_user("a")) == 1


def test_timeouts_and_reminders_go_dormant_silently(job, store, mq, seed):
    seed("b", GOODBYE_SENT, idle_days=20, entered_at=NOW - 48 * MS_PER_HOUR)
    seed("b2", GOODBYE_SENT, idle_days=20, entered_at=NOW - 47 * MS_PER_HOUR)
    seed("c", REMIND_LATER, idle_days=40, entered_at=NOW - 14 * MS_PER_DAY)
    seed("h", HELP_FLOW, idle_days=40, entered_at=NOW - 30 * MS_PER_DAY)

    job.run(now=NOW, deliver=False)

    assert store.read("b").state == DORMANT
    assert store.read("b2").state == GOODBYE_SENT
    assert store.read("c").state == DORMANT
    assert store.read("h").state == HELP_FLOW
    assert mq.messages_for_user("b") == [] and mq.messages_for_user("c") == []


def test_opted_out_users_are_skipped(job, store, profiles, seed):
    seed("u1", ACTIVE, idle_days=15)
    seed("u2", ACTIVE, idle_days=15)
    profiles.set_opt_out("u2", True)

    result = job.run(now=NOW, deliver=False)

    assert (result.succeeded, result.skipped) == (1, 1)
    assert store.read("u2").state == ACTIVE


class FlakyMachine(StateMachine):
    def apply_transition(self, user_id, trigger, **kwargs):
        if user_id == "bad":
            raise RedisTimeoutError("Timeout reading from socket")
        return super().apply_transition(user_id, trigger, **kwargs)


def test_one_failing_user_does_not_stop_the_sweep(store, transitions, mq, profiles, seed):
    for uid in ("a", "bad", "c"):
        seed(uid, ACTIVE, idle_days=15)
    job = DailyEngagementJob(store=store, machine=FlakyMachine(store, transitions), mq=mq, profiles=profiles)

    result = job.run(now=NOW, deliver=False)

    assert (result.processed, result.succeeded, result.failed) == (3, 2, 1)
    [err] = result.errors
    assert err["userId"] == "bad"
    assert "TimeoutError" in err["error"]
    assert store.read("a").state == GOODBYE_SENT
    assert store.read("bad").state == ACTIVE
    assert store.read("c").state == GOODBYE_SENT


def test_unreachable_store_is_fatal():
    store = MagicMock()
    store.ping.side_effect = RedisConnectionError("Connection refused")
    job = DailyEngagementJob(store=store, machine=MagicMock(), mq=MagicMock(), profiles=MagicMock())

    with pytest.raises(FatalError):
        job.run(now=NOW)
    assert not store.user_ids_in_state.called


def test_held_job_lock_short_circuits(job, store, r, seed):
    seed("u1", ACTIVE, idle_days=15)
    r.set("lock:job:daily", "other-run", px=60000)

    result = job.run(now=NOW, deliver=False)

    assert result.lockContended is True
    assert result.processed == 0
    assert store.read("u1").state == ACTIVE


def test_cancelled_run_leaves_users_untouched(job, store, seed):
    seed("u1", ACTIVE, idle_days=15)
    stop = threading.Event()
    stop.set()

    result = job.run(now=NOW, cancel_event=stop, deliver=False)

    assert result.cancelled is True
    assert result.processed == 0
    assert store.read("u1").state == ACTIVE


def test_result_is_recorded_for_dashboard(job, seed):
    seed("u1", ACTIVE, idle_days=15)
    job.run(now=NOW, deliver=False)
    last = metrics.last_job_result("daily")
    assert last["succeeded"] == 1
    assert "durationMs" in last


def test_inline_delivery_mode_runs_a_pass(job, seed, monkeypatch):
    from engagement.settings import settings
    monkeypatch.setattr(settings, "DELIVERY_MODE", "inline")
    seed("u1", ACTIVE, idle_days=15)
    with patch("engagement.outbox.delivery.deliver_pending",
               return_value={"processed": 1, "succeeded": 1, "retried": 0, "failed": 0,
                             "skipped": 0, "errors": []}) as mock_deliver:
        result = job.run(now=NOW)

    assert mock_deliver.called
    assert result.delivery["succeeded"] == 1
