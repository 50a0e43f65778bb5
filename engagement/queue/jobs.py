from typing import Optional

from engagement.outbox.delivery import deliver_pending
from engagement.outbox.transport import HttpTransport
from engagement.observability.logging import log


def deliver_pending_messages_job(limit: Optional[int] = None):
    """
    Background job: one delivery pass over due messages.
    Per-message claims make concurrent passes safe; the idempotency key
    already guarantees a single row per logical send.
    """
    try:
        log(event="delivery_job_start")
        summary = deliver_pending(HttpTransport(), limit=limit)
        return {k: v for k, v in summary.items() if k != "errors"}
    except Exception as e:
        log(event="delivery_job_exception", level="error", error=str(e))
        raise


def daily_engagement_job():
    """RQ wrapper so a scheduler can enqueue the sweep instead of running cron."""
    from engagement.jobs.daily import run_daily_job
    return run_daily_job().to_dict()


def weekly_review_job():
    from engagement.jobs.weekly import run_weekly_job
    return run_weekly_job().to_dict()
