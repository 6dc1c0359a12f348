"""
Patient / reminder persistence used by the response pipeline.

Every state-changing helper is a conditional UPDATE (compare-and-swap on the
current status) and reports whether a row actually changed, so callers never
read-then-write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import select, update

from db.db import SessionMaker
from db.models import Patient, Reminder, utcnow

_AWAITING = ("PENDING", "SENT")


class PatientStore:
    def __init__(self, session_maker: SessionMaker):
        self._session_maker = session_maker

    # ── Lookups ──────────────────────────────────────────────────────
    async def find_by_phone(self, numbers: Iterable[str]) -> Patient | None:
        candidates = [n for n in dict.fromkeys(numbers) if n]
        if not candidates:
            return None
        async with self._session_maker() as s:
            stmt = select(Patient).where(Patient.phone_number.in_(candidates)).limit(1)
            res = await s.execute(stmt)
            return res.scalar_one_or_none()

    async def get(self, patient_id: str) -> Patient | None:
        async with self._session_maker() as s:
            return await s.get(Patient, patient_id)

    async def is_active(self, patient_id: str) -> bool:
        async with self._session_maker() as s:
            res = await s.execute(select(Patient.is_active).where(Patient.id == patient_id))
            return bool(res.scalar_one_or_none())

    async def active_reminder(self, patient_id: str) -> Reminder | None:
        """Most recently sent reminder still waiting for the patient's answer."""
        async with self._session_maker() as s:
            stmt = (
                select(Reminder)
                .where(
                    Reminder.patient_id == patient_id,
                    Reminder.is_active.is_(True),
                    Reminder.confirmation_status.in_(_AWAITING),
                )
                .order_by(Reminder.sent_at.desc().nulls_last(), Reminder.created_at.desc())
                .limit(1)
            )
            res = await s.execute(stmt)
            return res.scalar_one_or_none()

    async def reminders_for(self, patient_id: str) -> Sequence[Reminder]:
        async with self._session_maker() as s:
            res = await s.execute(select(Reminder).where(Reminder.patient_id == patient_id))
            return res.scalars().all()

    # ── Verification transitions ─────────────────────────────────────
    async def set_verification(
        self,
        patient_id: str,
        new_status: str,
        response: str,
        expected: Sequence[str] = ("PENDING",),
    ) -> bool:
        now = utcnow()
        async with self._session_maker() as s:
            res = await s.execute(
                update(Patient)
                .where(Patient.id == patient_id, Patient.verification_status.in_(expected))
                .values(
                    verification_status=new_status,
                    verification_response_at=now,
                    verification_message=response,
                    updated_at=now,
                )
            )
            await s.commit()
            return res.rowcount == 1

    async def unsubscribe(self, patient_id: str, response: str) -> bool:
        """DECLINED + inactive, and every reminder of the patient deactivated."""
        now = utcnow()
        async with self._session_maker() as s:
            res = await s.execute(
                update(Patient)
                .where(Patient.id == patient_id, Patient.is_active.is_(True))
                .values(
                    verification_status="DECLINED",
                    is_active=False,
                    verification_response_at=now,
                    verification_message=response,
                    updated_at=now,
                )
            )
            await s.execute(
                update(Reminder)
                .where(Reminder.patient_id == patient_id)
                .values(is_active=False, updated_at=now)
            )
            await s.commit()
            return res.rowcount == 1

    async def expire_pending(self, sent_before: datetime) -> int:
        now = utcnow()
        async with self._session_maker() as s:
            res = await s.execute(
                update(Patient)
                .where(
                    Patient.verification_status == "PENDING",
                    Patient.verification_sent_at.is_not(None),
                    Patient.verification_sent_at < sent_before,
                )
                .values(verification_status="EXPIRED", updated_at=now)
            )
            await s.commit()
            return res.rowcount or 0

    # ── Reminder transitions ─────────────────────────────────────────
    async def record_confirmation(
        self,
        reminder_id: str,
        response: str,
        status: str | None = None,
        escalate: bool = False,
    ) -> bool:
        now = utcnow()
        values = dict(confirmation_response=response, confirmation_response_at=now, updated_at=now)
        if status is not None:
            values["confirmation_status"] = status
        if escalate:
            values["needs_escalation"] = True
        async with self._session_maker() as s:
            res = await s.execute(
                update(Reminder)
                .where(Reminder.id == reminder_id, Reminder.confirmation_status.in_(_AWAITING))
                .values(**values)
            )
            await s.commit()
            return res.rowcount == 1

    async def flag_escalation(self, reminder_id: str) -> None:
        async with self._session_maker() as s:
            await s.execute(
                update(Reminder)
                .where(Reminder.id == reminder_id)
                .values(needs_escalation=True, updated_at=utcnow())
            )
            await s.commit()

    async def update_delivery_status(self, gateway_message_id: str, status: str) -> Reminder | None:
        now = utcnow()
        async with self._session_maker() as s:
            res = await s.execute(
                select(Reminder).where(Reminder.gateway_message_id == gateway_message_id).limit(1)
            )
            reminder = res.scalar_one_or_none()
            if reminder is None:
                return None
            values = dict(delivery_status=status, updated_at=now)
            await s.execute(update(Reminder).where(Reminder.id == reminder.id).values(**values))
            if status == "FAILED":
                await s.execute(
                    update(Reminder)
                    .where(Reminder.id == reminder.id, Reminder.confirmation_status.in_(_AWAITING))
                    .values(confirmation_status="FAILED")
                )
            await s.commit()
            await s.refresh(reminder)
            return reminder
