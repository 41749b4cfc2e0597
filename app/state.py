"""
Application State
=================

Process-wide shared clients.

WHAT it stores:
- redis_client: Shared Redis client, or None when REDIS_URL is not configured

WHERE it's used:
- app/services/rate_limiter.py: Shared sliding-window counters across instances
- app/routers/health.py: Reports whether Redis is reachable

Design:
- Simple module-level singleton, created lazily on first use
- Redis is optional. Without it, rate limiting falls back to per-process
  counters (best effort only)
- The arq worker manages its own Redis connection for job scheduling
"""

import logging
from typing import Optional

from redis import ConnectionPool, Redis

from app.deps import get_settings

logger = logging.getLogger(__name__)

redis_pool: Optional[ConnectionPool] = None
redis_client: Optional[Redis] = None
_initialized = False


def get_redis_client() -> Optional[Redis]:
    """Return the shared Redis client, initializing it on first call."""
    global redis_pool, redis_client, _initialized

    if _initialized:
        return redis_client
    _initialized = True

    settings = get_settings()
    if not settings.REDIS_URL:
        logger.info("[STATE] REDIS_URL not set - using in-process rate limiting")
        return None

    try:
        redis_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=False,
        )
        redis_client = Redis(connection_pool=redis_pool)
        logger.info("[STATE] Shared Redis connection pool initialized (max_connections=20)")
    except Exception as e:
        logger.error(f"[STATE] Failed to initialize Redis: {e}")
        logger.warning("[STATE] Falling back to in-process rate limiting")
        redis_pool = None
        redis_client = None

    return redis_client


def reset_state() -> None:
    """Drop shared clients (tests, settings reload)."""
    global redis_pool, redis_client, _initialized
    if redis_pool is not None:
        redis_pool.disconnect()
    redis_pool = None
    redis_client = None
    _initialized = False
