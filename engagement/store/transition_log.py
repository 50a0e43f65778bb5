import json
from dataclasses import asdict
from typing import Dict, List

from engagement.settings import settings
from engagement.store.redis_conn import get_redis
from engagement.store.models import StateTransition, from_dict

PREFIX = "engagement:transitions:"
K_RECENT = "engagement:transitions:recent"
K_STATS = "engagement:transitions:stats"


def _key(user_id: str) -> str:
    return f"{PREFIX}{user_id}"


class TransitionLog:
    """
    Append-only history of committed state changes. Rows are analytics and
    debugging material only; nothing reads them to make a decision.
    """

    def __init__(self, r=None):
        self.r = r if r is not None else get_redis()

    def append(self, pipe, transition: StateTransition) -> None:
        """Queue the row into the caller's transaction (no I/O of its own)."""
        row = json.dumps(asdict(transition), default=str)
        pipe.rpush(_key(transition.userId), row)
        pipe.lpush(K_RECENT, row)
        pipe.ltrim(K_RECENT, 0, max(0, int(settings.TRANSITION_RECENT_LIMIT) - 1))
        pipe.hincrby(K_STATS, f"{transition.fromState}->{transition.toState}", 1)
        pipe.hincrby(K_STATS, f"trigger:{transition.trigger}", 1)

    def history(self, user_id: str, limit: int = 50) -> List[StateTransition]:
        """Most recent first."""
        raw = self.r.lrange(_key(user_id), -int(limit), -1) or []
        rows = [from_dict(StateTransition, json.loads(x)) for x in raw]
        rows.reverse()
        return rows

    def count(self, user_id: str) -> int:
        return int(self.r.llen(_key(user_id)) or 0)

    def recent(self, limit: int = 50) -> List[StateTransition]:
        raw = self.r.lrange(K_RECENT, 0, int(limit) - 1) or []
        return [from_dict(StateTransition, json.loads(x)) for x in raw]

    def stats(self) -> Dict[str, Dict[str, int]]:
        raw = self.r.hgetall(K_STATS) or {}
        transitions: Dict[str, int] = {}
        triggers: Dict[str, int] = {}
        for k, v in raw.items():
            if k.startswith("trigger:"):
                triggers[k[len("trigger:"):]] = int(v)
            else:
                transitions[k] = int(v)
        return {
            "transitions": transitions,
            "triggers": triggers,
            "total": sum(transitions.values()),
        }
