from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from engagement.settings import settings
from engagement.core.errors import ConflictError
from engagement.store.models import (
    UserEngagementState,
    StateTransition,
    TRIGGERS,
    ACTIVE,
    GOODBYE_SENT,
    HELP_FLOW,
    REMIND_LATER,
    DORMANT,
    USER_MESSAGE,
    INACTIVITY_14D,
    GOODBYE_RESPONSE_1,
    GOODBYE_RESPONSE_2,
    GOODBYE_RESPONSE_3,
    GOODBYE_TIMEOUT,
    REMINDER_DUE,
)
from engagement.store.state_repo import StateStore, PipelineOp
from engagement.store.transition_log import TransitionLog
from engagement.observability.events import event, emit
from engagement.utils.time import (
    now_ms,
    MS_PER_HOUR,
    MS_PER_DAY,
    whole_days_between,
    whole_hours_between,
)

# state -> trigger -> next state. Pairs not listed are absorbed (no-op).
TRANSITIONS: Dict[str, Dict[str, str]] = {
    ACTIVE: {
        INACTIVITY_14D: GOODBYE_SENT,
    },
    GOODBYE_SENT: {
        USER_MESSAGE: ACTIVE,
        GOODBYE_RESPONSE_1: HELP_FLOW,
        GOODBYE_RESPONSE_2: REMIND_LATER,
        GOODBYE_RESPONSE_3: DORMANT,
        GOODBYE_TIMEOUT: DORMANT,
    },
    HELP_FLOW: {
        USER_MESSAGE: ACTIVE,
    },
    REMIND_LATER: {
        USER_MESSAGE: ACTIVE,
        REMINDER_DUE: DORMANT,
    },
    DORMANT: {
        USER_MESSAGE: ACTIVE,
    },
}

GOODBYE_RESPONSE_TYPES = {
    GOODBYE_RESPONSE_1: "confused",
    GOODBYE_RESPONSE_2: "busy",
    GOODBYE_RESPONSE_3: "all_good",
    GOODBYE_TIMEOUT: "timeout",
}

SCHEDULER_TRIGGERS = frozenset({INACTIVITY_14D, GOODBYE_TIMEOUT, REMINDER_DUE})

# Retry once against fresh state, then give up.
MAX_WRITE_ATTEMPTS = 2

# Given the record about to be committed, return ops to queue into the same
# transaction (outbox messages).
OutboxFactory = Callable[[UserEngagementState], Iterable[PipelineOp]]


def get_transition_target(state: str, trigger: str) -> Optional[str]:
    return TRANSITIONS.get(state, {}).get(trigger)


def build_next_record(current: UserEngagementState, target: str, now: int,
                      activity_at: Optional[int] = None) -> UserEngagementState:
    """
    Field updates per target state. Keeps the timer invariants:
    goodbyeExpiresAt is set iff goodbye_sent, remindAt iff remind_later.
    """
    nxt = replace(current, state=target, updatedAt=int(now))
    nxt.goodbyeSentAt = None
    nxt.goodbyeExpiresAt = None
    nxt.remindAt = None

    if target == GOODBYE_SENT:
        nxt.goodbyeSentAt = int(now)
        nxt.goodbyeExpiresAt = int(now) + int(settings.GOODBYE_TIMEOUT_HOURS) * MS_PER_HOUR
    elif target == REMIND_LATER:
        nxt.remindAt = int(now) + int(settings.REMIND_LATER_DAYS) * MS_PER_DAY
    elif target == ACTIVE:
        seen = int(activity_at if activity_at is not None else now)
        nxt.lastActivityAt = max(int(current.lastActivityAt or 0), seen)
    return nxt


def build_transition_metadata(trigger: str, current: UserEngagementState, target: str, now: int,
                              inputs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    days_inactive = whole_days_between(current.lastActivityAt, now)
    metadata: Dict[str, Any] = dict(inputs or {})
    metadata["days_inactive"] = days_inactive
    metadata["trigger_source"] = "scheduler" if trigger in SCHEDULER_TRIGGERS else "user_message"

    response_type = GOODBYE_RESPONSE_TYPES.get(trigger)
    if response_type:
        metadata["response_type"] = response_type
        if current.goodbyeSentAt:
            hours = whole_hours_between(current.goodbyeSentAt, now)
            metadata["hours_waited"] = hours
            metadata["days_since_goodbye"] = hours // 24

    if trigger == USER_MESSAGE and target == ACTIVE:
        # Dormant has no outstanding goodbye or reminder by construction.
        metadata["unprompted_return"] = (
            current.state == DORMANT and days_inactive >= int(settings.UNPROMPTED_RETURN_DAYS)
        )
    return metadata


def invariant_violations(record: UserEngagementState) -> List[str]:
    out = []
    if record.state == GOODBYE_SENT:
        if record.goodbyeSentAt is None or record.goodbyeExpiresAt is None:
            out.append("goodbye_sent without goodbye timestamps")
        elif record.goodbyeExpiresAt != record.goodbyeSentAt + int(settings.GOODBYE_TIMEOUT_HOURS) * MS_PER_HOUR:
            out.append("goodbyeExpiresAt != goodbyeSentAt + timeout")
    elif record.goodbyeExpiresAt is not None or record.goodbyeSentAt is not None:
        out.append(f"goodbye timestamps set in state {record.state}")
    if record.state == REMIND_LATER:
        if record.remindAt is None:
            out.append("remind_later without remindAt")
    elif record.remindAt is not None:
        out.append(f"remindAt set in state {record.state}")
    return out


@dataclass
class TransitionResult:
    userId: str
    trigger: str
    fromState: Optional[str]
    toState: Optional[str]
    applied: bool
    metadata: Dict[str, Any] = field(default_factory=dict)
    record: Optional[UserEngagementState] = None
    attempts: int = 0
    guardRejected: bool = False
    events: List[dict] = field(default_factory=list)


class StateMachine:
    """
    Validated, atomic engagement transitions.

    apply_transition reads the record, looks up the target and commits the
    new record, the transition row and any outbox messages in one optimistic
    transaction. Concurrent writers for the same user never both commit
    against the same version.
    """

    def __init__(self, store: Optional[StateStore] = None, transitions: Optional[TransitionLog] = None):
        self.store = store if store is not None else StateStore()
        self.log = transitions if transitions is not None else TransitionLog(self.store.r)

    def apply_transition(
        self,
        user_id: str,
        trigger: str,
        inputs: Optional[Dict[str, Any]] = None,
        now: Optional[int] = None,
        activity_at: Optional[int] = None,
        outbox: Optional[OutboxFactory] = None,
        guard: Optional[Callable[[UserEngagementState], bool]] = None,
    ) -> TransitionResult:
        if trigger not in TRIGGERS:
            raise ValueError(f"unknown trigger: {trigger}")
        now = int(now if now is not None else now_ms())
        result = TransitionResult(userId=user_id, trigger=trigger, fromState=None, toState=None, applied=False)
        try:
            self._apply(result, inputs, now, activity_at, outbox, guard)
        finally:
            emit(result.events)
        return result

    def _apply(self, result: TransitionResult, inputs, now: int, activity_at, outbox, guard) -> None:
        user_id, trigger = result.userId, result.trigger
        decided_from = None

        while True:
            result.attempts += 1
            current = self.store.read(user_id)
            if current is None:
                result.events.append(event("transition_missing_user", level="warning",
                                           userId=user_id, trigger=trigger))
                return

            if decided_from is not None and current.state != decided_from:
                # The lifecycle moved underneath us; the trigger was decided
                # against a state that no longer exists.
                result.fromState = result.toState = current.state
                result.events.append(event("transition_conflict", level="warning", userId=user_id,
                                           trigger=trigger, expectedState=decided_from,
                                           actualState=current.state, reason="state_changed"))
                raise ConflictError(user_id, trigger, f"state changed {decided_from} -> {current.state}")

            result.fromState = current.state
            target = get_transition_target(current.state, trigger)
            if target is None:
                result.toState = current.state
                result.record = current
                result.events.append(event("transition_absorbed", level="debug", userId=user_id,
                                           state=current.state, trigger=trigger))
                return

            if guard is not None and not guard(current):
                # Eligibility was decided on a snapshot that no longer holds.
                result.toState = current.state
                result.record = current
                result.guardRejected = True
                result.events.append(event("transition_guard_rejected", level="debug", userId=user_id,
                                           state=current.state, trigger=trigger))
                return

            nxt = build_next_record(current, target, now, activity_at)
            metadata = build_transition_metadata(trigger, current, target, now, inputs)
            row = StateTransition(userId=user_id, fromState=current.state, toState=target,
                                  trigger=trigger, metadata=metadata, createdAt=now)

            ops: List[PipelineOp] = [lambda pipe, row=row: self.log.append(pipe, row)]
            if outbox is not None:
                ops.extend(outbox(nxt))

            if self.store.write(user_id, current.version, nxt, on_commit=ops):
                result.toState = target
                result.applied = True
                result.metadata = metadata
                result.record = nxt
                result.events.append(event("transition_applied", userId=user_id, fromState=current.state,
                                           toState=target, trigger=trigger,
                                           daysInactive=metadata.get("days_inactive"),
                                           attempts=result.attempts))
                return

            if result.attempts >= MAX_WRITE_ATTEMPTS:
                result.toState = current.state
                result.events.append(event("transition_conflict", level="warning", userId=user_id,
                                           trigger=trigger, reason="retry_lost", attempts=result.attempts))
                raise ConflictError(user_id, trigger, "lost the retry as well")

            decided_from = current.state
            result.events.append(event("transition_retry", level="debug", userId=user_id,
                                       trigger=trigger, state=current.state))
