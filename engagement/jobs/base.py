"""
Shared plumbing for the scheduled sweeps.

A sweep takes a snapshot of eligible user ids and runs one isolated unit of
work per user on a bounded thread pool. Whatever a unit raises (conflicts,
Redis timeouts, bugs) is recorded against that user and never reaches the
sibling units. Every unit commits or fails on its own, so stopping between
units leaves nothing half-written.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, asdict
from typing import Callable, Dict, Iterable, List, Optional

from redis.exceptions import RedisError

from engagement.settings import settings
from engagement.core.errors import FatalError
from engagement.store.state_repo import StateStore
from engagement.outbox.message_queue import MessageQueue
from engagement.observability.logging import log
import engagement.observability.metrics as metrics
from engagement.utils.lock import job_lock, LockNotAcquired

SUCCEEDED = "succeeded"
SKIPPED = "skipped"
CANCELLED = "cancelled"


@dataclass
class JobResult:
    job: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    durationMs: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    cancelled: bool = False
    lockContended: bool = False
    delivery: Optional[Dict] = None

    def to_dict(self) -> Dict:
        return asdict(self)


def ensure_store_reachable(store: StateStore) -> None:
    try:
        store.ping()
    except RedisError as e:
        raise FatalError(f"state store unreachable: {type(e).__name__}: {e}") from e


def run_units(
    result: JobResult,
    label: str,
    user_ids: Iterable[str],
    unit: Callable[[str], str],
    cancel_event: Optional[threading.Event] = None,
    workers: Optional[int] = None,
) -> None:
    """
    Run `unit(user_id)` for every id. A unit returns SUCCEEDED or SKIPPED;
    an exception marks that user failed. `processed` counts users whose unit
    actually ran to a decision (succeeded + failed).
    """
    workers = max(1, int(workers if workers is not None else settings.JOB_WORKERS))

    def _guarded(user_id: str) -> str:
        if cancel_event is not None and cancel_event.is_set():
            return CANCELLED
        return unit(user_id)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"job-{result.job}") as pool:
        futures = {pool.submit(_guarded, uid): uid for uid in user_ids}
        for fut in as_completed(futures):
            uid = futures[fut]
            try:
                outcome = fut.result()
            except Exception as e:
                result.processed += 1
                result.failed += 1
                result.errors.append({"userId": uid, "step": label, "error": f"{type(e).__name__}: {e}"})
                log(event="job_unit_failed", level="error", job=result.job, step=label,
                    userId=uid, error=str(e))
                continue
            if outcome == CANCELLED:
                result.cancelled = True
            elif outcome == SKIPPED:
                result.skipped += 1
            else:
                result.processed += 1
                result.succeeded += 1


def trigger_delivery(result: JobResult, mq: MessageQueue) -> None:
    """Kick the delivery worker per DELIVERY_MODE. Never fails the sweep."""
    mode = (settings.DELIVERY_MODE or "off").lower()
    if mode == "off":
        return
    try:
        if mode == "inline":
            from engagement.outbox.delivery import deliver_pending
            from engagement.outbox.transport import HttpTransport
            summary = deliver_pending(HttpTransport(), mq=mq)
            result.delivery = {k: v for k, v in summary.items() if k != "errors"}
        elif mode == "rq":
            from engagement.queue.rq_conn import get_queue
            from engagement.queue.jobs import deliver_pending_messages_job
            job = get_queue().enqueue(deliver_pending_messages_job)
            result.delivery = {"mode": "rq", "jobId": getattr(job, "id", None)}
        else:
            log(event="delivery_mode_unknown", level="warning", mode=mode)
    except Exception as e:
        # Pending rows stay queued; the next poll picks them up.
        log(event="delivery_trigger_failed", level="error", job=result.job, mode=mode, error=str(e))


def run_job(
    name: str,
    body: Callable[[JobResult], None],
    store: StateStore,
    mq: MessageQueue,
    cancel_event: Optional[threading.Event] = None,
    deliver: bool = True,
) -> JobResult:
    """
    Common job frame: connectivity check (FatalError), job lock, timing,
    summary log and last-result metric.
    """
    start = time.time()
    result = JobResult(job=name)
    ensure_store_reachable(store)
    log(event="job_started", job=name)

    try:
        with job_lock(name, settings.JOB_LOCK_TTL_MS, r=store.r):
            body(result)
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
            if deliver and not result.cancelled:
                trigger_delivery(result, mq)
    except LockNotAcquired:
        result.lockContended = True
        log(event="job_lock_contended", level="warning", job=name)
    except RedisError as e:
        # Per-user errors never get here; this is the lock or a snapshot query.
        log(event="job_store_failed", level="error", job=name, error=str(e))
        raise FatalError(f"state store failed during {name}: {type(e).__name__}: {e}") from e

    result.durationMs = int((time.time() - start) * 1000)
    log(event="job_completed", job=name, processed=result.processed, succeeded=result.succeeded,
        failed=result.failed, skipped=result.skipped, durationMs=result.durationMs,
        cancelled=result.cancelled, lockContended=result.lockContended)
    metrics.incr(f"job_runs:{name}")
    metrics.record_job_result(name, result.to_dict())
    return result
