import json
from dataclasses import asdict, replace
from typing import Callable, Dict, Iterable, List, Optional

from redis.exceptions import WatchError

from engagement.store.redis_conn import get_redis
from engagement.store.models import (
    UserEngagementState,
    from_dict,
    STATES,
    ACTIVE,
    GOODBYE_SENT,
    REMIND_LATER,
)

PREFIX = "engagement:state:"
IDX_PREFIX = "engagement:idx:"

# A callable that queues extra commands into the write transaction.
PipelineOp = Callable[[object], None]


def _key(user_id: str) -> str:
    return f"{PREFIX}{user_id}"


def _idx_key(state: str) -> str:
    return f"{IDX_PREFIX}{state}"


def index_score(record: UserEngagementState) -> int:
    """
    Score used in the per-state sorted set: the timestamp the sweep for that
    state compares against `now`.
    """
    if record.state == ACTIVE:
        return int(record.lastActivityAt or 0)
    if record.state == GOODBYE_SENT:
        return int(record.goodbyeExpiresAt or 0)
    if record.state == REMIND_LATER:
        return int(record.remindAt or 0)
    return int(record.updatedAt or 0)


def _encode(record: UserEngagementState) -> str:
    return json.dumps(asdict(record))


def _decode(raw: str) -> UserEngagementState:
    return from_dict(UserEngagementState, json.loads(raw))


class StateStore:
    """
    Durable per-user engagement record.

    Contract: read(user_id) -> record | None; write(user_id, expected_version,
    record) -> True (committed) | False (conflict). Writes are WATCH/MULTI
    transactions; the per-state index moves in the same transaction.
    """

    def __init__(self, r=None):
        self.r = r if r is not None else get_redis()

    def ping(self) -> bool:
        return bool(self.r.ping())

    def read(self, user_id: str) -> Optional[UserEngagementState]:
        raw = self.r.get(_key(user_id))
        if not raw:
            return None
        return _decode(raw)

    def create(self, record: UserEngagementState) -> bool:
        """Insert the first record for a user. False if one already exists."""
        key = _key(record.userId)
        stored = replace(record, version=1)
        with self.r.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.exists(key):
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, _encode(stored))
                pipe.zadd(_idx_key(stored.state), {stored.userId: index_score(stored)})
                pipe.execute()
            except WatchError:
                return False
        record.version = stored.version
        return True

    def write(
        self,
        user_id: str,
        expected_version: int,
        record: UserEngagementState,
        on_commit: Iterable[PipelineOp] = (),
    ) -> bool:
        """
        Commit `record` only if the stored version still equals `expected_version`.
        `on_commit` ops (transition log rows, outbox messages) are queued into
        the same MULTI so they commit or vanish together with the state.
        """
        key = _key(user_id)
        stored = replace(record, version=int(expected_version) + 1)
        with self.r.pipeline() as pipe:
            try:
                pipe.watch(key)
                raw = pipe.get(key)
                current = _decode(raw) if raw else None
                if current is None or current.version != int(expected_version):
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, _encode(stored))
                if current.state != stored.state:
                    pipe.zrem(_idx_key(current.state), user_id)
                pipe.zadd(_idx_key(stored.state), {user_id: index_score(stored)})
                for op in on_commit:
                    op(pipe)
                pipe.execute()
            except WatchError:
                return False
        record.version = stored.version
        return True

    def user_ids_in_state(
        self,
        state: str,
        min_score="-inf",
        max_score="+inf",
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[str]:
        """Users whose index score for `state` lies in [min_score, max_score]."""
        if limit is None:
            return list(self.r.zrangebyscore(_idx_key(state), min_score, max_score))
        return list(self.r.zrangebyscore(_idx_key(state), min_score, max_score, start=offset, num=limit))

    def population(self) -> Dict[str, int]:
        return {s: int(self.r.zcard(_idx_key(s)) or 0) for s in STATES}
