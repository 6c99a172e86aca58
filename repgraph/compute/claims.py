"""
RepGraph — Active Job Claims

At most one Queued/Running computation per (type, target). Submission claims
the key atomically; the claim is released when the job reaches a terminal
state. A running job refreshes its claim before every unit, so the TTL only
has to outlive one unit plus the time a job waits in the queue.

The claim backend also carries cancellation requests, so a cancel issued by
the API process reaches a job running in an arq worker.

    InMemoryJobClaims  : single process (inline queue mode)
    RedisJobClaims     : API + arq workers sharing one Redis
                         repgraph:claim:{type}:{target} → job_id  (SET NX EX)
                         repgraph:cancel:{job_id}      → 1       (SET EX)
"""
import threading
from typing import Dict, Optional, Set

import redis
import structlog

logger = structlog.get_logger()

# Delete the claim only if it still belongs to the releasing job
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

# Extend our own claim, or take it back if it lapsed; 0 when another job holds it
_REFRESH_SCRIPT = """
local holder = redis.call('get', KEYS[1])
if holder == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
end
if not holder then
    redis.call('set', KEYS[1], ARGV[1], 'EX', ARGV[2])
    return 1
end
return 0
"""


class InMemoryJobClaims:
    def __init__(self):
        self._claims: Dict[str, str] = {}
        self._cancelled: Set[str] = set()
        self._lock = threading.Lock()

    def claim(self, key: str, job_id: str) -> Optional[str]:
        """Claim `key` for `job_id`. Returns None on success, else the holder's job id."""
        with self._lock:
            holder = self._claims.get(key)
            if holder is not None:
                return holder
            self._claims[key] = job_id
            return None

    def refresh(self, key: str, job_id: str) -> bool:
        with self._lock:
            holder = self._claims.setdefault(key, job_id)
            return holder == job_id

    def release(self, key: str, job_id: str) -> None:
        with self._lock:
            if self._claims.get(key) == job_id:
                del self._claims[key]

    def holder(self, key: str) -> Optional[str]:
        return self._claims.get(key)

    # ── cancellation requests ──

    def request_cancel(self, job_id: str) -> None:
        with self._lock:
            self._cancelled.add(job_id)

    def is_cancel_requested(self, job_id: str) -> bool:
        return job_id in self._cancelled

    def clear_cancel(self, job_id: str) -> None:
        with self._lock:
            self._cancelled.discard(job_id)


class RedisJobClaims:
    def __init__(self, redis_url: str, ttl_seconds: int = 3600):
        self._redis = redis.from_url(redis_url, decode_responses=True)
        self._ttl = ttl_seconds
        self._release = self._redis.register_script(_RELEASE_SCRIPT)
        self._refresh = self._redis.register_script(_REFRESH_SCRIPT)

    @staticmethod
    def _key(key: str) -> str:
        return f"repgraph:claim:{key}"

    @staticmethod
    def _cancel_key(job_id: str) -> str:
        return f"repgraph:cancel:{job_id}"

    def claim(self, key: str, job_id: str) -> Optional[str]:
        if self._redis.set(self._key(key), job_id, nx=True, ex=self._ttl):
            return None
        holder = self._redis.get(self._key(key))
        if holder is None:
            # Expired between SET and GET; one more attempt
            if self._redis.set(self._key(key), job_id, nx=True, ex=self._ttl):
                return None
            holder = self._redis.get(self._key(key)) or "unknown"
        return holder

    def refresh(self, key: str, job_id: str) -> bool:
        return bool(self._refresh(keys=[self._key(key)], args=[job_id, self._ttl]))

    def release(self, key: str, job_id: str) -> None:
        released = self._release(keys=[self._key(key)], args=[job_id])
        if not released:
            logger.warning("job_claim_not_held", claim_key=key, job_id=job_id)

    def holder(self, key: str) -> Optional[str]:
        return self._redis.get(self._key(key))

    # ── cancellation requests ──

    def request_cancel(self, job_id: str) -> None:
        # Expires on its own if no runner ever picks the job up
        self._redis.set(self._cancel_key(job_id), "1", ex=self._ttl)

    def is_cancel_requested(self, job_id: str) -> bool:
        return bool(self._redis.exists(self._cancel_key(job_id)))

    def clear_cancel(self, job_id: str) -> None:
        self._redis.delete(self._cancel_key(job_id))
