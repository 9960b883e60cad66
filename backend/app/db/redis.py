"""Redis client for session lookup and rate limiting.

Sessions are written by the account service; this service only reads them.
"""
import redis
import logging
from typing import Optional
from app.core.config import settings

logger = logging.getLogger(__name__)

# Created on first use so tests can swap in fakeredis before any connection
_client = None


def get_redis_client():
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def get_session(session_id: str) -> Optional[int]:
    """User id behind a session cookie, or None when unknown or expired"""
    user_id = get_redis_client().get(f"session:{session_id}")
    return int(user_id) if user_id else None


def increment_rate_limit(identifier: str, window: int) -> int:
    """Increment a fixed-window counter and return the count so far"""
    key = f"ratelimit:{identifier}"
    client = get_redis_client()
    count = client.incr(key)
    if count == 1:
        client.expire(key, window)
    return int(count)


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """True while under the limit; ``strict`` uses the lower limit for writes"""
    max_requests = settings.RATE_LIMIT_STRICT_REQUESTS if strict else settings.RATE_LIMIT_REQUESTS
    scope = "strict" if strict else "default"
    return increment_rate_limit(f"{scope}:{identifier}", settings.RATE_LIMIT_WINDOW) <= max_requests
