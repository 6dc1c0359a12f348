"""
Lease-based mutual exclusion on the ``distributed_locks`` table.

A lock is a row ``(lock_key, owner, expires_at)``; acquiring is an atomic
INSERT … ON CONFLICT DO NOTHING. A conflicting row whose lease has passed is
deleted and the insert retried once. Release only deletes the caller's own
row: ``acquire`` hands back the lease token and ``release`` takes it, so a
late release after the lease was taken over is a no-op even when both
callers share one ``LockService``.

Contention returns None. ``StoreUnavailable`` is raised only when
every attempt failed on the database itself.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from app.errors import StoreUnavailable
from db import DistributedLock, SessionMaker, insert_ignore, new_id, utcnow

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def patient_lock_key(patient_id: str) -> str:
    return f"patient:{patient_id}"


class LockService:
    def __init__(
        self,
        session_maker: SessionMaker,
        default_ttl: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 0.1,
    ):
        self._session_maker = session_maker
        self._default_ttl = default_ttl
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay

    # ── Public API ──

    async def acquire(self, key: str, ttl: Optional[float] = None) -> Optional[str]:
        """Lease token for *key* (truthy), or ``None`` when the lock is held elsewhere."""
        return await self._acquire(key, ttl)

    async def release(self, key: str, token: Optional[str]) -> None:
        """Delete the lease identified by *token*; a no-op once it was taken over."""
        if token is not None:
            await self._release(key, token)

    async def with_lock(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
    ) -> Optional[T]:
        """Run *fn* while holding *key*; ``None`` if the lock was not acquired."""
        owner = await self._acquire(key, ttl)
        if owner is None:
            return None
        try:
            return await fn()
        finally:
            await self._release(key, owner)

    async def is_locked(self, key: str) -> bool:
        async with self._session_maker() as s:
            res = await s.execute(
                select(DistributedLock.lock_key).where(
                    DistributedLock.lock_key == key,
                    DistributedLock.expires_at > utcnow(),
                )
            )
            return res.scalar_one_or_none() is not None

    async def reap_expired(self) -> int:
        """Delete leases whose expiry has passed (crashed holders)."""
        async with self._session_maker() as s:
            res = await s.execute(
                delete(DistributedLock).where(DistributedLock.expires_at <= utcnow())
            )
            await s.commit()
        count = res.rowcount or 0
        if count:
            _LOGGER.info("Reaped %d expired locks", count)
        return count

    # ── Internal ──

    async def _acquire(self, key: str, ttl: Optional[float]) -> Optional[str]:
        ttl = self._default_ttl if ttl is None else ttl
        owner = new_id()
        errors = 0
        for attempt in range(1, self._max_retries + 1):
            try:
                if await self._try_insert(key, owner, ttl):
                    _LOGGER.debug("Lock acquired %s (attempt %d)", key, attempt)
                    return owner
                if await self._delete_if_expired(key) and await self._try_insert(key, owner, ttl):
                    _LOGGER.debug("Lock acquired %s after reaping stale lease", key)
                    return owner
            except SQLAlchemyError as exc:
                errors += 1
                _LOGGER.error("Error acquiring lock %s (attempt %d): %s", key, attempt, exc)
            if attempt < self._max_retries:
                await asyncio.sleep(self._retry_delay)
        if errors == self._max_retries:
            raise StoreUnavailable(f"lock table unreachable for {key}")
        _LOGGER.warning("Failed to acquire lock %s after %d attempts", key, self._max_retries)
        return None

    async def _try_insert(self, key: str, owner: str, ttl: float) -> bool:
        now = utcnow()
        async with self._session_maker() as s:
            stmt = (
                insert_ignore(s, DistributedLock)
                .values(
                    lock_key=key,
                    owner=owner,
                    expires_at=now + timedelta(seconds=ttl),
                    created_at=now,
                )
                .returning(DistributedLock.lock_key)
            )
            res = await s.execute(stmt)
            inserted = res.scalar_one_or_none() is not None
            await s.commit()
            return inserted

    async def _delete_if_expired(self, key: str) -> bool:
        async with self._session_maker() as s:
            res = await s.execute(
                delete(DistributedLock).where(
                    DistributedLock.lock_key == key,
                    DistributedLock.expires_at <= utcnow(),
                )
            )
            await s.commit()
            return bool(res.rowcount)

    async def _release(self, key: str, owner: str) -> None:
        try:
            async with self._session_maker() as s:
                res = await s.execute(
                    delete(DistributedLock).where(
                        DistributedLock.lock_key == key,
                        DistributedLock.owner == owner,
                    )
                )
                await s.commit()
            if not res.rowcount:
                _LOGGER.info("Lock %s was no longer held by this owner at release", key)
        except SQLAlchemyError as exc:
            _LOGGER.error("Error releasing lock %s: %s", key, exc)
