"""Per-phone fixed-window limiter for automated replies."""

from __future__ import annotations

import logging
from dataclasses import dataclass

_LOGGER = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int


class ReplyRateLimiter:
    def __init__(self, redis, max_replies: int = 10, window_seconds: int = 60, prefix: str = "rate_limit:reply"):
        self._redis = redis
        self._max = max_replies
        self._window = window_seconds
        self._prefix = prefix

    def _key(self, phone: str) -> str:
        return f"{self._prefix}:{phone}"

    async def hit(self, phone: str) -> RateLimitResult:
        """Count one reply to *phone*; fails open when Redis is down."""
        key = self._key(phone)
        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, self._window)
                ttl = self._window
            else:
                ttl = await self._redis.ttl(key)
                if ttl is None or ttl < 0:
                    await self._redis.expire(key, self._window)
                    ttl = self._window
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Rate limiter unavailable for %s, allowing reply: %s", phone, exc)
            return RateLimitResult(allowed=True, remaining=self._max, retry_after=0)

        allowed = count <= self._max
        if not allowed:
            _LOGGER.info("Reply rate limit reached for %s (%d/%d)", phone, count, self._max)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, self._max - count),
            retry_after=0 if allowed else int(ttl),
        )
