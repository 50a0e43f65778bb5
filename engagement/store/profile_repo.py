from typing import Optional, Tuple

from engagement.store.redis_conn import get_redis
from engagement.store.models import UserProfile, DEST_INDIVIDUAL, DEST_GROUP
from engagement.observability.logging import log

PREFIX = "engagement:profile:"
K_TXN_ACTIVITY = "engagement:txn_activity"


def _key(user_id: str) -> str:
    return f"{PREFIX}{user_id}"


def resolve_destination(profile: Optional[UserProfile]) -> Tuple[str, Optional[str], bool]:
    """
    Returns (destination, jid, fallback_used).
    A group preference without a known group jid falls back to the
    individual chat.
    """
    if profile is None:
        return DEST_INDIVIDUAL, None, False
    if profile.preferredDestination == DEST_GROUP:
        if profile.groupJid:
            return DEST_GROUP, profile.groupJid, False
        log(event="destination_group_fallback", level="warning", userId=profile.userId)
        return DEST_INDIVIDUAL, profile.jid, True
    return DEST_INDIVIDUAL, profile.jid, False


class ProfileStore:
    """Messaging-facing profile bits the engine needs: routing, locale, opt-out."""

    def __init__(self, r=None):
        self.r = r if r is not None else get_redis()

    def get(self, user_id: str) -> Optional[UserProfile]:
        raw = self.r.hgetall(_key(user_id))
        if not raw:
            return None
        return UserProfile(
            userId=user_id,
            jid=raw.get("jid") or None,
            groupJid=raw.get("groupJid") or None,
            preferredDestination=raw.get("preferredDestination") or DEST_INDIVIDUAL,
            locale=raw.get("locale") or None,
            reengagementOptOut=raw.get("reengagementOptOut") == "1",
        )

    def upsert(self, user_id: str, **fields) -> None:
        mapping = {}
        for k, v in fields.items():
            if v is None:
                continue
            if isinstance(v, bool):
                v = "1" if v else "0"
            mapping[k] = str(v)
        if mapping:
            self.r.hset(_key(user_id), mapping=mapping)

    def record_message_source(self, user_id: str, is_group: bool, jid: Optional[str] = None,
                              group_jid: Optional[str] = None, locale: Optional[str] = None) -> None:
        """Remember where the user last talked to us from."""
        self.upsert(
            user_id,
            jid=jid,
            groupJid=group_jid if is_group else None,
            preferredDestination=DEST_GROUP if is_group else DEST_INDIVIDUAL,
            locale=locale,
        )

    def set_opt_out(self, user_id: str, opt_out: bool) -> None:
        self.upsert(user_id, reengagementOptOut=bool(opt_out))
        log(event="reengagement_opt_out_set", userId=user_id, optOut=bool(opt_out))

    def is_opted_out(self, user_id: str) -> bool:
        return self.r.hget(_key(user_id), "reengagementOptOut") == "1"


class TransactionActivity:
    """
    Last domain-transaction time per user. The finance layer calls
    `record` whenever a user logs a transaction; the weekly review reads it.
    """

    def __init__(self, r=None):
        self.r = r if r is not None else get_redis()

    def record(self, user_id: str, at_ms: int) -> None:
        # GT keeps the newest timestamp when events arrive out of order.
        self.r.zadd(K_TXN_ACTIVITY, {user_id: int(at_ms)}, gt=True)

    def user_ids_since(self, since_ms: int):
        return list(self.r.zrangebyscore(K_TXN_ACTIVITY, int(since_ms), "+inf"))
