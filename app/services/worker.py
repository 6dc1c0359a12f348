"""
Outbound worker loop: polls the message queue and sends through the gateway.

Every tick claims at most ``concurrency`` messages and sends them in
parallel. ``stop()`` stops new claims immediately and waits for the sends of
the current tick to finish.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional, Protocol

from app.services.queue import INACTIVE_EXEMPT_TYPES, MessageQueue
from app.services.rate_limit import ReplyRateLimiter
from app.types.contracts import Priority, SendResult
from db import PatientStore, QueuedMessage

_LOGGER = logging.getLogger(__name__)


class Gateway(Protocol):
    async def send(self, phone_number: str, body: str) -> SendResult: ...


class OutboundWorker:
    def __init__(
        self,
        queue: MessageQueue,
        patients: PatientStore,
        gateway: Gateway,
        rate_limiter: Optional[ReplyRateLimiter] = None,
        concurrency: int = 5,
        poll_interval: float = 5.0,
        send_timeout: float = 30.0,
    ) -> None:
        self.queue = queue
        self.patients = patients
        self.gateway = gateway
        self.rate_limiter = rate_limiter
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.send_timeout = send_timeout

        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ── Public API ──

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="outbound-worker")
        _LOGGER.info(
            "Outbound worker started (concurrency=%d, poll=%.1fs)", self.concurrency, self.poll_interval,
        )

    async def stop(self) -> None:
        """Stop claiming; let in-flight sends complete."""
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        _LOGGER.info("Outbound worker stopped")

    async def run_once(self) -> int:
        """One tick: claim up to ``concurrency`` messages and deliver them."""
        batch = await self.queue.dequeue(self.concurrency)
        if not batch:
            return 0
        await asyncio.gather(*(self._deliver(msg) for msg in batch))
        return len(batch)

    # ── Internal ──

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except Exception as exc:  # noqa: BLE001
                _LOGGER.error("Outbound worker tick failed: %s", exc, exc_info=True)
                processed = 0
            if processed:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _deliver(self, msg: QueuedMessage) -> None:
        try:
            await self._send(msg)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.error("Delivery of message %s crashed: %s", msg.id, exc, exc_info=True)
            try:
                await self.queue.mark_failed(msg.id, f"worker error: {exc}")
            except Exception as mark_exc:  # noqa: BLE001
                _LOGGER.error("Could not record failure of %s: %s", msg.id, mark_exc)

    async def _send(self, msg: QueuedMessage) -> None:
        if msg.message_type not in INACTIVE_EXEMPT_TYPES and not await self.patients.is_active(msg.patient_id):
            await self.queue.mark_failed(msg.id, "patient_inactive", can_retry=False)
            return

        if self.rate_limiter is not None and msg.priority != Priority.URGENT.value:
            limit = await self.rate_limiter.hit(msg.phone_number)
            if not limit.allowed:
                await self.queue.defer(msg.id, max(limit.retry_after, 1))
                _LOGGER.info("Message %s deferred %ss by reply rate limit", msg.id, limit.retry_after)
                return

        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self.gateway.send(msg.phone_number, msg.body), timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            result = SendResult(success=False, error=f"send timed out after {self.send_timeout:.0f}s")
        elapsed_ms = (time.perf_counter() - started) * 1000

        if result.success:
            await self.queue.mark_processed(msg.id, elapsed_ms, result.message_id)
            _LOGGER.info("Sent %s message %s (%.0fms)", msg.message_type, msg.id, elapsed_ms)
        else:
            await self.queue.mark_failed(msg.id, result.error or "send failed")
