"""
Durable priority queue for outbound WhatsApp messages.

Rows live in ``queued_messages``. Claiming is a single conditional UPDATE
(``status='pending'`` → ``'processing'``) so two workers never claim the same
row; on PostgreSQL the candidate SELECT additionally uses
``FOR UPDATE SKIP LOCKED``.

Lifecycle: pending → processing → completed | pending (retry) | failed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db import PatientStore, QueuedMessage, QueueStats, SessionMaker, insert_ignore, utcnow
from app.types.contracts import PRIORITY_SCORES, MessageStatus, Priority

_LOGGER = logging.getLogger(__name__)

# Acknowledgement of the transition that deactivated the patient.
UNSUBSCRIBE_CONFIRMATION = "unsubscribe_confirmation"
INACTIVE_EXEMPT_TYPES = frozenset({UNSUBSCRIBE_CONFIRMATION})

_PENDING = MessageStatus.PENDING.value
_PROCESSING = MessageStatus.PROCESSING.value
_COMPLETED = MessageStatus.COMPLETED.value
_FAILED = MessageStatus.FAILED.value


@dataclass
class FailureOutcome:
    retried: bool
    retry_count: int
    delay_seconds: Optional[float] = None
    next_retry_at: Optional[datetime] = None


def backoff_delay(retry_count: int, base_delay: float, max_delay: float) -> float:
    """``min(base * 2^retry_count, max)``."""
    return min(base_delay * (2 ** retry_count), max_delay)


def _is_postgres(session: AsyncSession) -> bool:
    return session.bind is not None and session.bind.dialect.name == "postgresql"


class MessageQueue:
    def __init__(
        self,
        session_maker: SessionMaker,
        patients: Optional[PatientStore] = None,
        base_delay: float = 30.0,
        max_delay: float = 3600.0,
        max_retries: int = 3,
        name: str = "outbound",
    ):
        self._session_maker = session_maker
        self._patients = patients
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries
        self.name = name

    # ──────────────────────────────────────────────────────────────────
    # Producer side
    # ──────────────────────────────────────────────────────────────────
    async def enqueue(
        self,
        patient_id: str,
        phone_number: str,
        body: str,
        priority: Priority = Priority.MEDIUM,
        message_type: str = "general",
        max_retries: Optional[int] = None,
    ) -> Optional[str]:
        """Store a pending message and return its id.

        Returns ``None`` for inactive patients, except for the unsubscribe
        farewell.
        """
        priority = Priority(priority)
        if (
            self._patients is not None
            and message_type not in INACTIVE_EXEMPT_TYPES
            and not await self._patients.is_active(patient_id)
        ):
            _LOGGER.info("Refusing to queue %s for inactive patient %s", message_type, patient_id)
            return None

        now = utcnow()
        msg = QueuedMessage(
            patient_id=patient_id,
            phone_number=phone_number,
            body=body,
            priority=priority.value,
            priority_score=PRIORITY_SCORES[priority],
            message_type=message_type,
            retry_count=0,
            max_retries=self.max_retries if max_retries is None else max_retries,
            status=_PENDING,
            created_at=now,
            updated_at=now,
        )
        async with self._session_maker() as s:
            s.add(msg)
            await s.commit()
        _LOGGER.info(
            "Queued %s message %s for patient %s (priority=%s)",
            message_type, msg.id, patient_id, priority.value,
        )
        return msg.id

    # ──────────────────────────────────────────────────────────────────
    # Consumer side
    # ──────────────────────────────────────────────────────────────────
    async def dequeue(self, limit: int = 1) -> List[QueuedMessage]:
        """Claim up to *limit* due messages, most urgent and oldest first."""
        if limit <= 0:
            return []
        now = utcnow()
        async with self._session_maker() as s:
            candidates = (
                select(QueuedMessage.id)
                .where(
                    QueuedMessage.status == _PENDING,
                    or_(QueuedMessage.next_retry_at.is_(None), QueuedMessage.next_retry_at <= now),
                )
                .order_by(QueuedMessage.priority_score, QueuedMessage.created_at)
                .limit(limit)
            )
            if _is_postgres(s):
                candidates = candidates.with_for_update(skip_locked=True)
            stmt = (
                update(QueuedMessage)
                .where(QueuedMessage.id.in_(candidates), QueuedMessage.status == _PENDING)
                .values(status=_PROCESSING, updated_at=now)
                .returning(QueuedMessage)
                .execution_options(synchronize_session=False)
            )
            res = await s.execute(stmt)
            claimed = list(res.scalars().all())
            await s.commit()
        claimed.sort(key=lambda m: (m.priority_score, m.created_at))
        if claimed:
            _LOGGER.debug("Claimed %d queued messages", len(claimed))
        return claimed

    async def mark_processed(
        self,
        message_id: str,
        processing_ms: float = 0.0,
        gateway_message_id: Optional[str] = None,
    ) -> bool:
        now = utcnow()
        async with self._session_maker() as s:
            res = await s.execute(
                update(QueuedMessage)
                .where(QueuedMessage.id == message_id, QueuedMessage.status == _PROCESSING)
                .values(
                    status=_COMPLETED,
                    processed_at=now,
                    updated_at=now,
                    last_error=None,
                    gateway_message_id=gateway_message_id,
                )
            )
            if res.rowcount != 1:
                await s.rollback()
                _LOGGER.warning("mark_processed: message %s was not in processing", message_id)
                return False
            await self._ensure_stats_row(s)
            total = QueueStats.total_processed
            await s.execute(
                update(QueueStats)
                .where(QueueStats.name == self.name)
                .values(
                    total_processed=total + 1,
                    avg_processing_ms=(QueueStats.avg_processing_ms * total + float(processing_ms)) / (total + 1),
                )
            )
            await s.commit()
        return True

    async def mark_failed(self, message_id: str, error: str, can_retry: bool = True) -> Optional[FailureOutcome]:
        """Schedule a retry with exponential backoff, or dead-letter.

        Returns ``None`` when the message was not in ``processing``.
        """
        now = utcnow()
        async with self._session_maker() as s:
            msg = await s.get(QueuedMessage, message_id)
            if msg is None or msg.status != _PROCESSING:
                _LOGGER.warning("mark_failed: message %s was not in processing", message_id)
                return None

            retry_count = msg.retry_count
            guard = (
                QueuedMessage.id == message_id,
                QueuedMessage.status == _PROCESSING,
                QueuedMessage.retry_count == retry_count,
            )
            if can_retry and retry_count < msg.max_retries:
                delay = backoff_delay(retry_count, self.base_delay, self.max_delay)
                next_retry_at = now + timedelta(seconds=delay)
                res = await s.execute(
                    update(QueuedMessage)
                    .where(*guard)
                    .values(
                        status=_PENDING,
                        retry_count=retry_count + 1,
                        next_retry_at=next_retry_at,
                        last_error=error,
                        updated_at=now,
                    )
                )
                await s.commit()
                if res.rowcount != 1:
                    return None
                _LOGGER.warning(
                    "Message %s failed (attempt %d/%d), retrying in %.0fs: %s",
                    message_id, retry_count + 1, msg.max_retries, delay, error,
                )
                return FailureOutcome(
                    retried=True,
                    retry_count=retry_count + 1,
                    delay_seconds=delay,
                    next_retry_at=next_retry_at,
                )

            res = await s.execute(
                update(QueuedMessage)
                .where(*guard)
                .values(status=_FAILED, last_error=error, processed_at=now, updated_at=now)
            )
            if res.rowcount != 1:
                await s.rollback()
                return None
            await self._ensure_stats_row(s)
            await s.execute(
                update(QueueStats)
                .where(QueueStats.name == self.name)
                .values(total_failed=QueueStats.total_failed + 1)
            )
            await s.commit()
        _LOGGER.error("Message %s dead-lettered after %d retries: %s", message_id, retry_count, error)
        return FailureOutcome(retried=False, retry_count=retry_count)

    async def defer(self, message_id: str, seconds: float) -> bool:
        """Return a claimed message to ``pending`` without consuming a retry."""
        now = utcnow()
        async with self._session_maker() as s:
            res = await s.execute(
                update(QueuedMessage)
                .where(QueuedMessage.id == message_id, QueuedMessage.status == _PROCESSING)
                .values(status=_PENDING, next_retry_at=now + timedelta(seconds=seconds), updated_at=now)
            )
            await s.commit()
        return res.rowcount == 1

    # ──────────────────────────────────────────────────────────────────
    # Operator / maintenance
    # ──────────────────────────────────────────────────────────────────
    async def requeue_failed(self, limit: int = 100) -> int:
        now = utcnow()
        async with self._session_maker() as s:
            ids = (
                select(QueuedMessage.id)
                .where(QueuedMessage.status == _FAILED)
                .order_by(QueuedMessage.updated_at)
                .limit(limit)
            )
            res = await s.execute(
                update(QueuedMessage)
                .where(QueuedMessage.id.in_(ids), QueuedMessage.status == _FAILED)
                .values(
                    status=_PENDING,
                    retry_count=0,
                    next_retry_at=None,
                    last_error=None,
                    processed_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await s.commit()
        count = res.rowcount or 0
        _LOGGER.info("Requeued %d dead-lettered messages", count)
        return count

    async def purge_finished(self, older_than_hours: float = 24) -> int:
        cutoff = utcnow() - timedelta(hours=older_than_hours)
        async with self._session_maker() as s:
            res = await s.execute(
                delete(QueuedMessage).where(
                    QueuedMessage.status.in_((_COMPLETED, _FAILED)),
                    QueuedMessage.updated_at < cutoff,
                )
            )
            await s.commit()
        count = res.rowcount or 0
        if count:
            _LOGGER.info("Purged %d finished queue messages older than %sh", count, older_than_hours)
        return count

    async def recover_stuck(self, older_than_seconds: float = 300) -> int:
        """Return rows left in ``processing`` by a crashed worker to ``pending``."""
        now = utcnow()
        cutoff = now - timedelta(seconds=older_than_seconds)
        async with self._session_maker() as s:
            res = await s.execute(
                update(QueuedMessage)
                .where(QueuedMessage.status == _PROCESSING, QueuedMessage.updated_at < cutoff)
                .values(status=_PENDING, updated_at=now)
            )
            await s.commit()
        count = res.rowcount or 0
        if count:
            _LOGGER.warning("Recovered %d messages stuck in processing", count)
        return count

    async def remove_patient_messages(self, patient_id: str) -> int:
        async with self._session_maker() as s:
            res = await s.execute(
                delete(QueuedMessage).where(
                    QueuedMessage.patient_id == patient_id,
                    QueuedMessage.status == _PENDING,
                )
            )
            await s.commit()
        count = res.rowcount or 0
        if count:
            _LOGGER.info("Removed %d pending messages for patient %s", count, patient_id)
        return count

    async def messages_for_patient(self, patient_id: str) -> Sequence[QueuedMessage]:
        async with self._session_maker() as s:
            res = await s.execute(
                select(QueuedMessage)
                .where(QueuedMessage.patient_id == patient_id)
                .order_by(QueuedMessage.created_at)
            )
            return res.scalars().all()

    async def get(self, message_id: str) -> Optional[QueuedMessage]:
        async with self._session_maker() as s:
            return await s.get(QueuedMessage, message_id)

    async def stats(self) -> Dict[str, Any]:
        async with self._session_maker() as s:
            res = await s.execute(
                select(QueuedMessage.status, func.count()).group_by(QueuedMessage.status)
            )
            counts = {status: n for status, n in res.all()}
            row = await s.get(QueueStats, self.name)
        return {
            "pending": counts.get(_PENDING, 0),
            "processing": counts.get(_PROCESSING, 0),
            "completed": counts.get(_COMPLETED, 0),
            "failed": counts.get(_FAILED, 0),
            "total_processed": row.total_processed if row else 0,
            "total_failed": row.total_failed if row else 0,
            "avg_processing_ms": round(row.avg_processing_ms, 2) if row else 0.0,
        }

    # ── Internal ──

    async def _ensure_stats_row(self, s: AsyncSession) -> None:
        await s.execute(
            insert_ignore(s, QueueStats).values(
                name=self.name, total_processed=0, total_failed=0, avg_processing_ms=0.0
            )
        )
