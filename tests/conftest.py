import fakeredis
import pytest

from engagement.settings import settings
from engagement.core.state_machine import StateMachine, build_next_record
from engagement.store.models import UserEngagementState, ACTIVE
from engagement.store.state_repo import StateStore
from engagement.store.transition_log import TransitionLog
from engagement.store.profile_repo import ProfileStore
from engagement.outbox.message_queue import MessageQueue
import engagement.observability.metrics as metrics
from engagement.utils.time import parse_timestamp_ms, MS_PER_DAY

NOW = parse_timestamp_ms("2026-03-10T12:00:00Z")


@pytest.fixture
def r():
    client = fakeredis.FakeRedis(decode_responses=True)
    client.flushall()
    metrics.reset_client(client)
    yield client
    metrics.reset_client(None)


@pytest.fixture(autouse=True)
def quiet_settings(monkeypatch):
    monkeypatch.setattr(settings, "LOG_LEVEL", "warning")
    monkeypatch.setattr(settings, "DELIVERY_MODE", "off")
    monkeypatch.setattr(settings, "JOB_WORKERS", 4)


@pytest.fixture
def store(r):
    return StateStore(r)


@pytest.fixture
def transitions(r):
    return TransitionLog(r)


@pytest.fixture
def machine(store, transitions):
    return StateMachine(store, transitions)


@pytest.fixture
def mq(r):
    return MessageQueue(r)


@pytest.fixture
def profiles(r):
    return ProfileStore(r)


@pytest.fixture
def seed(store):
    """
    seed(user_id, state, idle_days=0, entered_at=NOW) -> stored record.
    Non-active states get their timers as if entered at `entered_at`.
    """
    def _seed(user_id, state=ACTIVE, idle_days=0, entered_at=NOW):
        last = NOW - int(idle_days) * MS_PER_DAY
        record = UserEngagementState(userId=user_id, state=ACTIVE, lastActivityAt=last,
                                     createdAt=last, updatedAt=last)
        if state != ACTIVE:
            record = build_next_record(record, state, entered_at)
            record.lastActivityAt = last
        assert store.create(record)
        return store.read(user_id)
    return _seed
