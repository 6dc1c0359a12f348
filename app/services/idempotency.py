"""Webhook de-duplication backed by Redis ``SET NX EX``."""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Iterable

_LOGGER = logging.getLogger(__name__)

INCOMING_PREFIX = "webhook:incoming:"
STATUS_PREFIX = "webhook:message-status:"


def fingerprint(parts: Iterable[Any]) -> str:
    """Stable sha256 over *parts*; missing values hash as empty strings."""
    joined = "|".join("" if p is None else str(p) for p in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def incoming_key(external_id: Any, sender: Any, timestamp: Any, message: Any) -> str:
    return INCOMING_PREFIX + fingerprint([external_id, sender, timestamp, message])


def status_key(message_id: Any, timestamp: Any) -> str:
    return STATUS_PREFIX + fingerprint([message_id, timestamp])


class IdempotencyGuard:
    """Remembers event keys for ``ttl_seconds``.

    ``is_duplicate`` records the key on first sight. If Redis is unreachable
    the lookup fails open (returns False) so patient replies are never dropped.
    """

    def __init__(self, redis, ttl_seconds: int = 86_400):
        self._redis = redis
        self._ttl = ttl_seconds

    async def is_duplicate(self, key: str) -> bool:
        try:
            was_set = await self._redis.set(key, "1", ex=self._ttl, nx=True)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Idempotency store unavailable, processing without dedup (%s): %s", key, exc)
            return False
        if not was_set:
            _LOGGER.info("Duplicate webhook event ignored: %s", key)
            return True
        return False

    async def forget(self, key: str) -> None:
        """Drop *key* so a gateway retry of a failed request is processed again."""
        try:
            await self._redis.delete(key)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Could not clear idempotency key %s: %s", key, exc)
