import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from engagement.settings import settings
from engagement.core.errors import ConflictError
from engagement.core.state_machine import StateMachine, TransitionResult
from engagement.store.models import (
    UserEngagementState,
    MessageDraft,
    ACTIVE,
    GOODBYE_SENT,
    HELP_FLOW,
    USER_MESSAGE,
    GOODBYE_RESPONSE_1,
    GOODBYE_RESPONSE_2,
    GOODBYE_RESPONSE_3,
    MSG_GOODBYE,
    MSG_HELP_RESTART,
)
from engagement.store.state_repo import StateStore
from engagement.store.profile_repo import ProfileStore, TransactionActivity, resolve_destination
from engagement.outbox.message_queue import MessageQueue, daily_idempotency_key
from engagement.outbox.templates import (
    HELP_RESTART_KEY,
    WELCOME_BACK_KEY,
    REPLY_CONFUSED_KEY,
    REPLY_BUSY_KEY,
    REPLY_ALL_GOOD_KEY,
)
from engagement.observability.events import event, emit
from engagement.utils.time import now_ms, parse_timestamp_ms

# Canned replies to the goodbye message (trimmed, case-insensitive, full match).
GOODBYE_PATTERNS = {
    GOODBYE_RESPONSE_1: re.compile(r"^(1|1️⃣|confuso|confused)$", re.IGNORECASE),
    GOODBYE_RESPONSE_2: re.compile(r"^(2|2️⃣|ocupado|busy)$", re.IGNORECASE),
    GOODBYE_RESPONSE_3: re.compile(r"^(3|3️⃣|tudo\s*certo|all\s*good)$", re.IGNORECASE),
}

REPLY_KEYS = {
    GOODBYE_RESPONSE_1: REPLY_CONFUSED_KEY,
    GOODBYE_RESPONSE_2: REPLY_BUSY_KEY,
    GOODBYE_RESPONSE_3: REPLY_ALL_GOOD_KEY,
}

_TOUCH_ATTEMPTS = 3
_ACTIVITY_ROUNDS = 3


def classify_goodbye_reply(raw_text: Optional[str]) -> Optional[str]:
    """Map a reply to goodbye_response_1/2/3, or None when it is free text."""
    text = (raw_text or "").strip()
    if not text:
        return None
    for trigger, pattern in GOODBYE_PATTERNS.items():
        if pattern.match(text):
            return trigger
    return None


def classify_trigger(state: str, raw_text: Optional[str]) -> str:
    # Digits only mean something while the goodbye question is outstanding.
    if state == GOODBYE_SENT:
        return classify_goodbye_reply(raw_text) or USER_MESSAGE
    return USER_MESSAGE


@dataclass
class ActivityResult:
    userId: str
    reactivated: bool
    previousState: Optional[str]
    state: str
    isFirstMessage: bool = False
    trigger: Optional[str] = None
    replyKey: Optional[str] = None
    replyParams: Dict[str, Any] = field(default_factory=dict)
    events: List[dict] = field(default_factory=list)


class ActivityTracker:
    """
    Entry point for every inbound user message.

    Bootstraps the engagement record on first contact, turns the message into
    a trigger, applies it, and keeps lastActivityAt current.
    """

    def __init__(self, store: Optional[StateStore] = None, machine: Optional[StateMachine] = None,
                 mq: Optional[MessageQueue] = None, profiles: Optional[ProfileStore] = None):
        self.store = store if store is not None else StateStore()
        self.machine = machine if machine is not None else StateMachine(self.store)
        self.mq = mq if mq is not None else MessageQueue(self.store.r)
        self.profiles = profiles if profiles is not None else ProfileStore(self.store.r)

    def record_activity(
        self,
        user_id: str,
        timestamp=None,
        raw_text: Optional[str] = None,
        is_group: bool = False,
        jid: Optional[str] = None,
        group_jid: Optional[str] = None,
        locale: Optional[str] = None,
        now: Optional[int] = None,
    ) -> ActivityResult:
        now = int(now if now is not None else now_ms())
        at = parse_timestamp_ms(timestamp) if timestamp is not None else now

        self.profiles.record_message_source(user_id, is_group, jid=jid, group_jid=group_jid, locale=locale)

        current = self.store.read(user_id)
        if current is None:
            first = self._bootstrap(user_id, at, now)
            if first is not None:
                out = ActivityResult(userId=user_id, reactivated=False, previousState=None,
                                     state=first.state, isFirstMessage=True)
                out.events.append(event("engagement_bootstrapped", userId=user_id))
                emit(out.events)
                return out
            current = self.store.read(user_id)

        out = ActivityResult(userId=user_id, reactivated=False, previousState=current.state,
                             state=current.state)

        touched = None
        for _ in range(_ACTIVITY_ROUNDS):
            settled = self._apply_message(out, current.state, raw_text, at, now)
            if settled is None:
                # A scheduled transition won; classify again where it left the user.
                current = self.store.read(user_id)
                if current is None:
                    break
                continue
            touched = self._touch(user_id, at, now, expected_state=settled)
            if touched is None or touched.state == settled:
                break
            # A sweep committed between classification and the touch.
            out.events.append(event("activity_reclassified", level="warning", userId=user_id,
                                    expectedState=settled, actualState=touched.state))
            current = touched
        else:
            touched = self._touch(user_id, at, now)

        if touched is not None:
            out.state = touched.state
        emit(out.events)
        return out

    def _apply_message(self, out: ActivityResult, state: str, raw_text: Optional[str],
                       at: int, now: int) -> Optional[str]:
        """
        Classify the message against `state` and apply it. Returns the state
        the user settled in, or None when a concurrent transition won.
        """
        user_id = out.userId
        trigger = classify_trigger(state, raw_text)
        out.trigger = trigger

        outbox = None
        if trigger == GOODBYE_RESPONSE_1:
            outbox = lambda record: [self._help_restart_op(user_id, now)]

        try:
            res: TransitionResult = self.machine.apply_transition(
                user_id, trigger, now=now, activity_at=at, outbox=outbox
            )
        except ConflictError as e:
            out.events.append(event("activity_transition_lost", level="warning", userId=user_id,
                                    trigger=trigger, detail=e.detail))
            return None
        if not res.applied:
            return res.toState

        if res.fromState == GOODBYE_SENT:
            self._cancel_unsent_goodbye(user_id)
        if trigger in REPLY_KEYS:
            out.replyKey = REPLY_KEYS[trigger]
            if trigger == GOODBYE_RESPONSE_2:
                out.replyParams = {"remindDays": int(settings.REMIND_LATER_DAYS)}
        elif res.toState == ACTIVE and out.previousState != ACTIVE:
            out.reactivated = True
            out.replyKey = WELCOME_BACK_KEY

        if res.toState == HELP_FLOW:
            return self._leave_help_flow(out, at, now)
        return res.toState

    def _leave_help_flow(self, out: ActivityResult, at: int, now: int) -> Optional[str]:
        # help_flow only lasts until the help message is queued; the user goes
        # straight back to active so the inactivity sweep sees them again.
        try:
            res = self.machine.apply_transition(out.userId, USER_MESSAGE, inputs={"from_help_flow": True},
                                                now=now, activity_at=at)
        except ConflictError as e:
            out.events.append(event("help_flow_exit_lost", level="warning", userId=out.userId,
                                    detail=e.detail))
            return None
        return res.toState

    def _cancel_unsent_goodbye(self, user_id: str) -> None:
        """The user answered; a goodbye still waiting in the queue is moot."""
        for msg in self.mq.pending_for_user(user_id):
            if msg.messageType == MSG_GOODBYE:
                self.mq.cancel(msg.id)

    def _bootstrap(self, user_id: str, at: int, now: int) -> Optional[UserEngagementState]:
        record = UserEngagementState(userId=user_id, state=ACTIVE, lastActivityAt=at,
                                     createdAt=now, updatedAt=now)
        if self.store.create(record):
            return record
        # Someone else created it first; fall through to the normal path.
        return None

    def _help_restart_op(self, user_id: str, now: int):
        profile = self.profiles.get(user_id)
        dest, jid, _ = resolve_destination(profile)
        draft = MessageDraft(
            userId=user_id,
            messageType=MSG_HELP_RESTART,
            messageKey=HELP_RESTART_KEY,
            idempotencyKey=daily_idempotency_key(user_id, MSG_HELP_RESTART, now),
            messageParams={"locale": profile.locale} if profile and profile.locale else {},
            destination=dest,
            destinationJid=jid,
            scheduledFor=now,
        )
        return self.mq.enqueue_op(draft, now)

    def _touch(self, user_id: str, at: int, now: int,
               expected_state: Optional[str] = None) -> Optional[UserEngagementState]:
        """
        Move lastActivityAt forward (never backward) under the version check.
        With `expected_state`, only while the user is still in that state; a
        record found elsewhere is returned untouched.
        """
        for _ in range(_TOUCH_ATTEMPTS):
            current = self.store.read(user_id)
            if current is None:
                return None
            if expected_state is not None and current.state != expected_state:
                return current
            if int(current.lastActivityAt or 0) >= at:
                return current
            nxt = replace(current, lastActivityAt=at, updatedAt=now)
            if self.store.write(user_id, current.version, nxt):
                return nxt
        emit([event("activity_touch_contended", level="warning", userId=user_id)])
        return None


def record_transaction_activity(user_id: str, at=None, r=None) -> None:
    """Called by the finance layer whenever a user logs a transaction."""
    TransactionActivity(r).record(user_id, parse_timestamp_ms(at) if at is not None else now_ms())
