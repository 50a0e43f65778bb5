from contextlib import contextmanager
import time
import uuid
from redis.exceptions import RedisError
from engagement.store.redis_conn import get_redis

_RELEASE_LUA = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockNotAcquired(RuntimeError):
    pass


def acquire(r, key: str, ttl_ms: int):
    """Single SET NX PX attempt. Returns the owner token or None."""
    token = uuid.uuid4().hex
    if r.set(key, token, px=int(ttl_ms), nx=True):
        return token
    return None


def release(r, key: str, token: str) -> None:
    # Release only if we still own it (the TTL may have handed it to someone else).
    try:
        r.eval(_RELEASE_LUA, 1, key, token)
    except RedisError:
        pass


@contextmanager
def redis_lock(key: str, ttl_ms: int = 5000, retries: int = 0, wait_sec: float = 0.1, r=None):
    """
    Distributed lock with owner-token release.
    Raises LockNotAcquired when the key stays held after `retries` short waits.
    """
    r = r if r is not None else get_redis()
    token = acquire(r, key, ttl_ms)
    for _ in range(int(retries)):
        if token:
            break
        time.sleep(wait_sec)
        token = acquire(r, key, ttl_ms)

    if not token:
        raise LockNotAcquired(f"Could not acquire lock {key}")
    try:
        yield token
    finally:
        release(r, key, token)


def job_lock(job_name: str, ttl_ms: int, r=None):
    """Job-level mutual exclusion; fails fast so an overlapping run can bow out."""
    return redis_lock(f"lock:job:{job_name}", ttl_ms=ttl_ms, retries=0, r=r)
