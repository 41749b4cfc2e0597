"""
Request Rate Limiter
====================

Per-key request limiting for public endpoints (lead form, OTP, token
retrieval).

WHY THIS FILE EXISTS
--------------------
The public endpoints trigger SMS sends and database writes. Without limits a
single client could burn SMS credit or brute-force retrieval tokens.

HOW
---
- With Redis: sliding window on a sorted set per key. Counts are shared by
  every API instance.
- Without Redis (or when Redis errors): fixed window held in this process.
  This is best effort only; each instance counts separately. It is a
  defense-in-depth layer, the OTP flow itself is the security boundary.

RATE LIMITS
-----------
- Lead submission: 5 per minute per IP
- Token retrieval: 5 per minute per IP
- OTP send: 2 per minute per IP, 3 per 15 minutes per phone hash

RELATED FILES
-------------
- app/state.py: Shared Redis client
- app/routers/leads.py, app/routers/otp.py: Callers
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from redis import Redis, RedisError

from app.state import get_redis_client

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_in: int  # seconds until the window frees a slot


class RateLimiter:
    """
    Sliding-window limiter with an in-process fallback.

    USAGE:
        limiter = RateLimiter(max_requests=5, window_seconds=60, prefix="leads")
        decision = limiter.check(ip_hash)
        if not decision.allowed:
            raise HTTPException(429, ...)

    Every call to check() that is allowed counts as a request.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        prefix: str,
        redis_client: Optional[Redis] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.prefix = prefix
        self.redis = redis_client
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (count, reset_at)
        self._memory: Dict[str, Tuple[int, float]] = {}

    def _get_key(self, key: str) -> str:
        return f"rate_limit:{self.prefix}:{key}"

    def check(self, key: str) -> RateLimitDecision:
        """Count a request for `key` and decide whether it is allowed."""
        if self.redis is not None:
            try:
                return self._check_redis(self._get_key(key))
            except RedisError as e:
                logger.warning(f"[RATE_LIMIT] Redis unavailable, using in-process window: {e}")
        return self._check_memory(self._get_key(key))

    def _check_redis(self, key: str) -> RateLimitDecision:
        now = self._clock()
        cutoff = now - self.window_seconds

        self.redis.zremrangebyscore(key, "-inf", cutoff)
        current_count = self.redis.zcard(key)

        if current_count >= self.max_requests:
            oldest = self.redis.zrange(key, 0, 0, withscores=True)
            reset_in = self.window_seconds
            if oldest:
                reset_in = max(1, int(oldest[0][1] + self.window_seconds - now))
            logger.warning(
                f"[RATE_LIMIT] {self.prefix} limit hit ({current_count}/{self.max_requests})"
            )
            return RateLimitDecision(allowed=False, remaining=0, reset_in=reset_in)

        # Member must be unique even for calls within the same microsecond
        self.redis.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        self.redis.expire(key, self.window_seconds * 2)

        return RateLimitDecision(
            allowed=True,
            remaining=max(0, self.max_requests - current_count - 1),
            reset_in=self.window_seconds,
        )

    def _check_memory(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            count, reset_at = self._memory.get(key, (0, now + self.window_seconds))

            if count >= self.max_requests:
                logger.warning(
                    f"[RATE_LIMIT] {self.prefix} limit hit ({count}/{self.max_requests}, in-process)"
                )
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_in=max(1, int(reset_at - now)),
                )

            self._memory[key] = (count + 1, reset_at)
            return RateLimitDecision(
                allowed=True,
                remaining=self.max_requests - count - 1,
                reset_in=max(1, int(reset_at - now)),
            )

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, (_, reset_at) in self._memory.items() if reset_at <= now]
        for k in expired:
            del self._memory[k]

    def reset(self) -> None:
        """Clear in-process counters (tests)."""
        with self._lock:
            self._memory.clear()


# Named limiters shared by the routers. Built on first use so the Redis
# client (when configured) is resolved after settings load.
_registry: Dict[str, RateLimiter] = {}
_registry_lock = threading.Lock()


def get_limiter(prefix: str, max_requests: int, window_seconds: int) -> RateLimiter:
    with _registry_lock:
        limiter = _registry.get(prefix)
        if limiter is None:
            limiter = RateLimiter(
                max_requests=max_requests,
                window_seconds=window_seconds,
                prefix=prefix,
                redis_client=get_redis_client(),
            )
            _registry[prefix] = limiter
        return limiter


def reset_limiters() -> None:
    """Forget every named limiter (tests)."""
    with _registry_lock:
        _registry.clear()
