"""Beat-driven draining of the outbound queue (alternative to the in-process loop)."""

from __future__ import annotations

import asyncio

from app.celery_app import celery_app
from app.services import container
from config import settings


async def _drain(max_ticks: int) -> int:
    sent = 0
    async with container.open_services(settings) as services:
        for _ in range(max_ticks):
            n = await services.worker.run_once()
            if not n:
                break
            sent += n
    return sent


@celery_app.task(name="app.workers.outbound.drain", bind=True)
def drain(self, max_ticks: int = 10) -> int:  # noqa: D401
    """Send due queued messages, at most ``max_ticks`` batches per run."""
    return asyncio.run(_drain(max_ticks))
