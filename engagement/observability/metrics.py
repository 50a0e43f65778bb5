"""
Engagement Metrics Snapshot
---------------------------
Lightweight Redis counters for the lifecycle engine plus a single snapshot
function consumed by /admin/metrics. Counter writes never raise: a metrics
outage must not fail a transition or a sweep.
"""
from __future__ import annotations
import json
import time
from typing import Dict, Optional
from redis.exceptions import RedisError
from engagement.store.redis_conn import get_redis

K_COUNTER_PREFIX = "metrics:engagement:"
K_JOB_LAST = "metrics:jobs:last:"          # + job name -> JSON of last JobResult
K_DELIVERY_LAT = "metrics:delivery:latencies"  # LPUSH ms

_MAX_SAMPLES = 500

# Known counter names (anything else is still accepted by incr()).
TRANSITION_APPLIED = "transition_applied"
TRANSITION_ABSORBED = "transition_absorbed"
TRANSITION_CONFLICT = "transition_conflict"
MESSAGE_ENQUEUED = "message_enqueued"
MESSAGE_DUPLICATE = "message_duplicate"
MESSAGE_SENT = "message_sent"
MESSAGE_RETRY = "message_retry"
MESSAGE_FAILED = "message_failed"
CONTEXT_CONSUMED = "context_consumed"

_client = None

def _redis():
    global _client
    if _client is None:
        _client = get_redis()
    return _client

def reset_client(r=None) -> None:
    """Point metrics at another connection (tests, worker bootstrap)."""
    global _client
    _client = r

def _percentile(data, p: float) -> float:
    """Deterministic percentile (nearest-rank on sorted data)."""
    if not data:
        return 0.0
    d = sorted(data)
    k = max(1, int(round(p * len(d))))
    return float(d[k - 1])

def incr(name: str, amount: int = 1) -> None:
    try:
        _redis().incr(f"{K_COUNTER_PREFIX}{name}", int(amount))
    except RedisError:
        pass

def record_delivery_latency(ms: int) -> None:
    try:
        r = _redis()
        r.lpush(K_DELIVERY_LAT, int(ms))
        r.ltrim(K_DELIVERY_LAT, 0, _MAX_SAMPLES - 1)
    except RedisError:
        pass

def record_job_result(job: str, result: dict) -> None:
    try:
        _redis().set(f"{K_JOB_LAST}{job}", json.dumps(result, default=str))
    except RedisError:
        pass

def last_job_result(job: str) -> Optional[dict]:
    raw = _redis().get(f"{K_JOB_LAST}{job}")
    return json.loads(raw) if raw else None

def counters() -> Dict[str, int]:
    r = _redis()
    out: Dict[str, int] = {}
    for key in r.scan_iter(match=f"{K_COUNTER_PREFIX}*"):
        try:
            out[key[len(K_COUNTER_PREFIX):]] = int(r.get(key) or 0)
        except (TypeError, ValueError):
            continue
    return out

def get_engagement_snapshot(population: Optional[Dict[str, int]] = None,
                            queue_depth: Optional[int] = None) -> dict:
    """
    Dashboard-shaped dict: counters, per-state population, pending queue
    depth, delivery latency percentiles (seconds) and last job results.
    """
    r = _redis()
    raw = r.lrange(K_DELIVERY_LAT, 0, _MAX_SAMPLES - 1) or []
    lat_s = []
    for x in raw:
        try:
            lat_s.append(float(x) / 1000.0)
        except (TypeError, ValueError):
            continue

    c = counters()
    sent = c.get(MESSAGE_SENT, 0)
    failed = c.get(MESSAGE_FAILED, 0)
    delivered_rate = (sent / (sent + failed)) * 100.0 if (sent + failed) > 0 else 0.0

    return {
        "counters": c,
        "population": population or {},
        "pending_messages": int(queue_depth or 0),
        "delivery_success_rate": round(delivered_rate, 3),
        "p50_delivery_latency": round(_percentile(lat_s, 0.50), 3),
        "p95_delivery_latency": round(_percentile(lat_s, 0.95), 3),
        "last_jobs": {
            "daily": last_job_result("daily"),
            "weekly": last_job_result("weekly"),
        },
        "snapshot_at": int(time.time()),
    }
