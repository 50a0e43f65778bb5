import threading
from typing import Optional

from engagement.settings import settings
from engagement.core.state_machine import StateMachine
from engagement.jobs.base import JobResult, run_job, run_units, SUCCEEDED, SKIPPED
from engagement.store.models import (
    UserEngagementState,
    MessageDraft,
    ACTIVE,
    GOODBYE_SENT,
    REMIND_LATER,
    INACTIVITY_14D,
    GOODBYE_TIMEOUT,
    REMINDER_DUE,
    MSG_GOODBYE,
)
from engagement.store.state_repo import StateStore
from engagement.store.profile_repo import ProfileStore, resolve_destination
from engagement.outbox.message_queue import MessageQueue, daily_idempotency_key
from engagement.outbox.templates import GOODBYE_KEY
from engagement.observability.logging import log
from engagement.utils.time import now_ms, MS_PER_DAY

JOB_NAME = "daily"


class DailyEngagementJob:
    """
    Three independent passes over the state indices:
      1. active, idle for INACTIVITY_THRESHOLD_DAYS -> inactivity_14d (+ goodbye message)
      2. goodbye_sent past goodbyeExpiresAt        -> goodbye_timeout
      3. remind_later past remindAt                -> reminder_due
    Re-running on unchanged data finds nobody eligible.
    """

    def __init__(self, store: Optional[StateStore] = None, machine: Optional[StateMachine] = None,
                 mq: Optional[MessageQueue] = None, profiles: Optional[ProfileStore] = None):
        self.store = store if store is not None else StateStore()
        self.machine = machine if machine is not None else StateMachine(self.store)
        self.mq = mq if mq is not None else MessageQueue(self.store.r)
        self.profiles = profiles if profiles is not None else ProfileStore(self.store.r)

    def run(self, now: Optional[int] = None, cancel_event: Optional[threading.Event] = None,
            deliver: bool = True) -> JobResult:
        now = int(now if now is not None else now_ms())

        def body(result: JobResult) -> None:
            self._inactive_pass(result, now, cancel_event)
            self._goodbye_timeout_pass(result, now, cancel_event)
            self._reminder_due_pass(result, now, cancel_event)

        return run_job(JOB_NAME, body, self.store, self.mq, cancel_event=cancel_event, deliver=deliver)

    # ---- pass 1 ----------------------------------------------------------

    def _inactive_pass(self, result: JobResult, now: int, cancel_event) -> None:
        cutoff = now - int(settings.INACTIVITY_THRESHOLD_DAYS) * MS_PER_DAY
        user_ids = self.store.user_ids_in_state(ACTIVE, "-inf", cutoff)
        log(event="daily_inactive_candidates", count=len(user_ids))

        def still_idle(record: UserEngagementState) -> bool:
            return int(record.lastActivityAt or 0) <= cutoff

        def unit(user_id: str) -> str:
            if self.profiles.is_opted_out(user_id):
                log(event="daily_opted_out_skipped", level="debug", userId=user_id)
                return SKIPPED
            res = self.machine.apply_transition(
                user_id, INACTIVITY_14D, now=now,
                outbox=lambda record: [self._goodbye_op(record, now)],
                guard=still_idle,
            )
            return SUCCEEDED if res.applied else SKIPPED

        run_units(result, "inactivity", user_ids, unit, cancel_event)

    def _goodbye_op(self, record: UserEngagementState, now: int):
        profile = self.profiles.get(record.userId)
        dest, jid, _ = resolve_destination(profile)
        draft = MessageDraft(
            userId=record.userId,
            messageType=MSG_GOODBYE,
            messageKey=GOODBYE_KEY,
            # One goodbye per goodbye_sent episode.
            idempotencyKey=daily_idempotency_key(record.userId, MSG_GOODBYE, record.goodbyeSentAt),
            messageParams={"locale": profile.locale} if profile and profile.locale else {},
            destination=dest,
            destinationJid=jid,
            scheduledFor=now,
        )
        return self.mq.enqueue_op(draft, now)

    # ---- passes 2 and 3 ----------------------------------------------------

    def _goodbye_timeout_pass(self, result: JobResult, now: int, cancel_event) -> None:
        user_ids = self.store.user_ids_in_state(GOODBYE_SENT, "-inf", now)
        log(event="daily_goodbye_timeout_candidates", count=len(user_ids))

        def expired(record: UserEngagementState) -> bool:
            return record.goodbyeExpiresAt is not None and int(record.goodbyeExpiresAt) <= now

        def unit(user_id: str) -> str:
            res = self.machine.apply_transition(user_id, GOODBYE_TIMEOUT, now=now, guard=expired)
            return SUCCEEDED if res.applied else SKIPPED

        run_units(result, "goodbye_timeout", user_ids, unit, cancel_event)

    def _reminder_due_pass(self, result: JobResult, now: int, cancel_event) -> None:
        user_ids = self.store.user_ids_in_state(REMIND_LATER, "-inf", now)
        log(event="daily_reminder_due_candidates", count=len(user_ids))

        def due(record: UserEngagementState) -> bool:
            return record.remindAt is not None and int(record.remindAt) <= now

        def unit(user_id: str) -> str:
            res = self.machine.apply_transition(user_id, REMINDER_DUE, now=now, guard=due)
            return SUCCEEDED if res.applied else SKIPPED

        run_units(result, "reminder_due", user_ids, unit, cancel_event)


def run_daily_job(now: Optional[int] = None, cancel_event: Optional[threading.Event] = None,
                  r=None) -> JobResult:
    store = StateStore(r)
    return DailyEngagementJob(store=store).run(now=now, cancel_event=cancel_event)
