import threading
from typing import List, Optional

from engagement.settings import settings
from engagement.jobs.base import JobResult, run_job, run_units, SUCCEEDED, SKIPPED
from engagement.store.models import MessageDraft, ACTIVE, MSG_WEEKLY_REVIEW
from engagement.store.state_repo import StateStore
from engagement.store.profile_repo import ProfileStore, TransactionActivity, resolve_destination
from engagement.outbox.message_queue import MessageQueue, idempotency_key
from engagement.outbox.templates import WEEKLY_REVIEW_KEY
from engagement.observability.logging import log
from engagement.utils.time import now_ms, iso_week, MS_PER_DAY

JOB_NAME = "weekly"


class WeeklyReviewJob:
    """
    Weekly review for users still `active` who either talked to the bot or
    logged a transaction in the trailing window. No state transition; the
    ISO-week idempotency key makes re-runs inside the same week no-ops.
    """

    def __init__(self, store: Optional[StateStore] = None, mq: Optional[MessageQueue] = None,
                 profiles: Optional[ProfileStore] = None, txn_activity: Optional[TransactionActivity] = None):
        self.store = store if store is not None else StateStore()
        self.mq = mq if mq is not None else MessageQueue(self.store.r)
        self.profiles = profiles if profiles is not None else ProfileStore(self.store.r)
        self.txn_activity = txn_activity if txn_activity is not None else TransactionActivity(self.store.r)

    def candidates(self, now: int) -> List[str]:
        since = now - int(settings.WEEKLY_ACTIVITY_DAYS) * MS_PER_DAY
        chatted = self.store.user_ids_in_state(ACTIVE, since, "+inf")
        transacted = self.txn_activity.user_ids_since(since)
        # Keep first-seen order, drop duplicates.
        return list(dict.fromkeys(chatted + transacted))

    def run(self, now: Optional[int] = None, cancel_event: Optional[threading.Event] = None,
            deliver: bool = True) -> JobResult:
        now = int(now if now is not None else now_ms())
        week = iso_week(now)

        def unit(user_id: str) -> str:
            record = self.store.read(user_id)
            if record is None or record.state != ACTIVE:
                return SKIPPED
            profile = self.profiles.get(user_id)
            if profile is not None and profile.reengagementOptOut:
                return SKIPPED
            dest, jid, _ = resolve_destination(profile)
            created, _ = self.mq.enqueue(MessageDraft(
                userId=user_id,
                messageType=MSG_WEEKLY_REVIEW,
                messageKey=WEEKLY_REVIEW_KEY,
                idempotencyKey=idempotency_key(user_id, MSG_WEEKLY_REVIEW, week),
                messageParams={"locale": profile.locale} if profile and profile.locale else {},
                destination=dest,
                destinationJid=jid,
                scheduledFor=now,
            ), now)
            return SUCCEEDED if created else SKIPPED

        def body(result: JobResult) -> None:
            user_ids = self.candidates(now)
            log(event="weekly_review_candidates", count=len(user_ids), week=week)
            run_units(result, "weekly_review", user_ids, unit, cancel_event)

        return run_job(JOB_NAME, body, self.store, self.mq, cancel_event=cancel_event, deliver=deliver)


def run_weekly_job(now: Optional[int] = None, cancel_event: Optional[threading.Event] = None,
                   r=None) -> JobResult:
    return WeeklyReviewJob(store=StateStore(r)).run(now=now, cancel_event=cancel_event)
