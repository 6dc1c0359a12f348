"""Periodic maintenance tasks for locks, the outbound queue and verifications."""

from __future__ import annotations

import asyncio
import logging

from app.celery_app import celery_app
from app.services import container
from config import settings

_LOGGER = logging.getLogger(__name__)


async def _reap_locks() -> int:
    async with container.open_services(settings) as services:
        return await services.locks.reap_expired()


async def _recover_stuck() -> int:
    async with container.open_services(settings) as services:
        return await services.queue.recover_stuck(settings.QUEUE_STUCK_AFTER_SECONDS)


async def _purge_queue() -> int:
    async with container.open_services(settings) as services:
        return await services.queue.purge_finished(settings.QUEUE_RETENTION_HOURS)


async def _expire_verifications() -> int:
    async with container.open_services(settings) as services:
        return await services.verification.expire_stale(settings.VERIFICATION_EXPIRY_DAYS)


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.maintenance.reap_locks", bind=True, max_retries=3)
def reap_locks(self) -> int:
    """Delete expired lock leases left by crashed holders."""
    try:
        return asyncio.run(_reap_locks())
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("reap_locks failed: %s", exc)
        raise self.retry(exc=exc)


@celery_app.task(name="app.workers.maintenance.recover_stuck", bind=True, max_retries=3)
def recover_stuck(self) -> int:
    """Return messages abandoned in ``processing`` to ``pending``."""
    try:
        return asyncio.run(_recover_stuck())
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("recover_stuck failed: %s", exc)
        raise self.retry(exc=exc)


@celery_app.task(name="app.workers.maintenance.purge_queue", bind=True, max_retries=3)
def purge_queue(self) -> int:
    try:
        return asyncio.run(_purge_queue())
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("purge_queue failed: %s", exc)
        raise self.retry(exc=exc)


@celery_app.task(name="app.workers.maintenance.expire_verifications", bind=True, max_retries=3)
def expire_verifications(self) -> int:
    """Mark unanswered PENDING verifications as EXPIRED."""
    try:
        return asyncio.run(_expire_verifications())
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("expire_verifications failed: %s", exc)
        raise self.retry(exc=exc)
