"""
Patient verification and reminder confirmation state machines.

Both run their transition under the per-patient lock and then enqueue the
acknowledgement. The acknowledgement is best-effort: a failed enqueue is
logged and never rolls the transition back.

Verification:  PENDING → VERIFIED | DECLINED,  any → DECLINED + inactive (unsubscribe)
Confirmation:  PENDING/SENT → CONFIRMED (taken) | MISSED (not taken);
               "need help" only records the response and flags escalation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.errors import LockBusy, StoreUnavailable
from app.services import messages
from app.services.keywords import KeywordScorer
from app.services.locks import LockService, patient_lock_key
from app.services.queue import UNSUBSCRIBE_CONFIRMATION, MessageQueue
from app.types.contracts import (
    ClassificationSource,
    ConfirmationStatus,
    Intent,
    IntentResult,
    Priority,
    VerificationStatus,
)
from db import Patient, PatientStore, utcnow

_LOGGER = logging.getLogger(__name__)


@dataclass
class TransitionOutcome:
    action: str
    changed: bool
    reply: Optional[str] = None
    ack_queued: bool = False
    reminder_id: Optional[str] = None
    escalated: bool = False


class _LockedMachine:
    def __init__(
        self,
        patients: PatientStore,
        locks: LockService,
        queue: MessageQueue,
        lock_ttl: Optional[float] = None,
    ):
        self.patients = patients
        self.locks = locks
        self.queue = queue
        self.lock_ttl = lock_ttl

    async def _locked(self, patient: Patient, fn: Callable[[], Awaitable[TransitionOutcome]]) -> TransitionOutcome:
        async def guarded() -> TransitionOutcome:
            try:
                return await fn()
            except SQLAlchemyError as exc:
                raise StoreUnavailable(f"transition failed for patient {patient.id}: {exc}") from exc

        outcome = await self.locks.with_lock(patient_lock_key(patient.id), guarded, ttl=self.lock_ttl)
        if outcome is None:
            _LOGGER.warning("Patient %s is locked by another worker, not mutating", patient.id)
            raise LockBusy(patient.id)
        return outcome

    async def _ack(
        self,
        patient: Patient,
        outcome: TransitionOutcome,
        message_type: str,
        priority: Priority = Priority.HIGH,
    ) -> TransitionOutcome:
        if not outcome.reply:
            return outcome
        try:
            queued = await self.queue.enqueue(
                patient.id, patient.phone_number, outcome.reply,
                priority=priority, message_type=message_type,
            )
            outcome.ack_queued = queued is not None
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Acknowledgement enqueue failed for patient %s (%s): %s", patient.id, outcome.action, exc)
        return outcome


# ──────────────────────────────────────────────────────────────────────────
# Verification
# ──────────────────────────────────────────────────────────────────────────


class VerificationMachine(_LockedMachine):
    def __init__(
        self,
        patients: PatientStore,
        locks: LockService,
        queue: MessageQueue,
        scorer: Optional[KeywordScorer] = None,
        lock_ttl: Optional[float] = None,
    ):
        super().__init__(patients, locks, queue, lock_ttl)
        self.scorer = scorer or KeywordScorer()

    def ambiguous(self, result: IntentResult, message: str) -> bool:
        """A keyword answer carrying both a yes and a no word ("ya tidak")."""
        return result.source == ClassificationSource.KEYWORD and self.scorer.conflicting(
            message, Intent.ACCEPT, Intent.DECLINE,
        )

    async def respond(self, patient: Patient, result: IntentResult, message: str) -> TransitionOutcome:
        """Apply an accept/decline answer from a PENDING patient."""
        if self.ambiguous(result, message):
            _LOGGER.info("Patient %s sent a mixed yes/no answer, asking again", patient.id)
            return await self._clarify(patient)
        if result.intent == Intent.ACCEPT:
            new_status, action, reply = (
                VerificationStatus.VERIFIED, "verified", messages.verification_accepted(patient.name),
            )
        elif result.intent == Intent.DECLINE:
            new_status, action, reply = (
                VerificationStatus.DECLINED, "declined", messages.verification_declined(patient.name),
            )
        else:
            return await self._clarify(patient)

        async def transition() -> TransitionOutcome:
            changed = await self.patients.set_verification(
                patient.id, new_status.value, message, expected=(VerificationStatus.PENDING.value,),
            )
            if not changed:
                _LOGGER.info("Patient %s no longer PENDING; %s ignored", patient.id, action)
                return TransitionOutcome(action="not_pending", changed=False)
            _LOGGER.info(
                "Patient %s verification → %s (source=%s)", patient.id, new_status.value, result.source.value,
            )
            return TransitionOutcome(action=action, changed=True, reply=reply)

        outcome = await self._locked(patient, transition)
        return await self._ack(patient, outcome, f"verification_{action}")

    async def _clarify(self, patient: Patient) -> TransitionOutcome:
        outcome = TransitionOutcome(
            action="clarification_requested", changed=False,
            reply=messages.verification_clarify(patient.name),
        )
        return await self._ack(patient, outcome, "verification_clarification", Priority.MEDIUM)

    async def unsubscribe(self, patient: Patient, message: str) -> TransitionOutcome:
        """DECLINED + inactive, reminders deactivated, pending outbound purged."""

        async def transition() -> TransitionOutcome:
            changed = await self.patients.unsubscribe(patient.id, message)
            removed = await self.queue.remove_patient_messages(patient.id)
            _LOGGER.info(
                "Patient %s unsubscribed (changed=%s, purged %d pending messages)", patient.id, changed, removed,
            )
            return TransitionOutcome(
                action="unsubscribed", changed=changed,
                reply=messages.unsubscribed(patient.name) if changed else None,
            )

        outcome = await self._locked(patient, transition)
        return await self._ack(patient, outcome, UNSUBSCRIBE_CONFIRMATION)

    async def expire_stale(self, older_than_days: int) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        count = await self.patients.expire_pending(cutoff)
        if count:
            _LOGGER.info("Expired %d unanswered verifications sent before %s", count, cutoff.isoformat())
        return count


# ──────────────────────────────────────────────────────────────────────────
# Reminder confirmation
# ──────────────────────────────────────────────────────────────────────────


class ConfirmationMachine(_LockedMachine):
    def __init__(
        self,
        patients: PatientStore,
        locks: LockService,
        queue: MessageQueue,
        scorer: Optional[KeywordScorer] = None,
        clarify_below: float = 0.4,
        lock_ttl: Optional[float] = None,
    ):
        super().__init__(patients, locks, queue, lock_ttl)
        self.scorer = scorer or KeywordScorer()
        self.clarify_below = clarify_below

    def resolve(self, result: IntentResult, message: str) -> Optional[Intent]:
        """Intent to act on, or ``None`` when the answer must be clarified."""
        if result.confidence < self.clarify_below:
            return None
        if result.intent == Intent.NEED_HELP:
            return Intent.NEED_HELP
        if result.intent not in (Intent.MEDICATION_TAKEN, Intent.MEDICATION_PENDING):
            return None
        if result.source == ClassificationSource.KEYWORD and self.scorer.conflicting(
            message, Intent.MEDICATION_TAKEN, Intent.MEDICATION_PENDING,
        ):
            return None
        return result.intent

    async def respond(self, patient: Patient, result: IntentResult, message: str) -> TransitionOutcome:
        intent = self.resolve(result, message)

        async def transition() -> TransitionOutcome:
            reminder = await self.patients.active_reminder(patient.id)
            if reminder is None:
                return TransitionOutcome(
                    action="no_pending_reminder", changed=False,
                    reply=messages.no_pending_reminder(patient.name),
                )
            med = reminder.medication_name
            if intent is None:
                return TransitionOutcome(
                    action="clarification_requested", changed=False,
                    reply=messages.medication_clarify(patient.name, med), reminder_id=reminder.id,
                )
            if intent == Intent.MEDICATION_TAKEN:
                changed = await self.patients.record_confirmation(
                    reminder.id, message, status=ConfirmationStatus.CONFIRMED.value,
                )
                action, reply, escalated = "confirmed", messages.medication_taken(patient.name, med), False
            elif intent == Intent.MEDICATION_PENDING:
                changed = await self.patients.record_confirmation(
                    reminder.id, message, status=ConfirmationStatus.MISSED.value,
                )
                action, reply, escalated = "missed", messages.medication_missed(patient.name, med), False
            else:
                changed = await self.patients.record_confirmation(reminder.id, message, escalate=True)
                action, reply, escalated = "escalated", messages.medication_help(patient.name), True
            _LOGGER.info(
                "Reminder %s for patient %s: %s (changed=%s)", reminder.id, patient.id, action, changed,
            )
            return TransitionOutcome(
                action=action, changed=changed, reply=reply if changed else None,
                reminder_id=reminder.id, escalated=escalated and changed,
            )

        outcome = await self._locked(patient, transition)
        priority = Priority.URGENT if outcome.escalated else Priority.HIGH
        return await self._ack(patient, outcome, f"medication_{outcome.action}", priority)

    async def escalate(self, patient: Patient) -> TransitionOutcome:
        """Flag the reminder awaiting an answer for human follow-up (emergency path)."""

        async def transition() -> TransitionOutcome:
            reminder = await self.patients.active_reminder(patient.id)
            if reminder is None:
                return TransitionOutcome(action="escalated", changed=False)
            await self.patients.flag_escalation(reminder.id)
            return TransitionOutcome(action="escalated", changed=True, reminder_id=reminder.id, escalated=True)

        return await self._locked(patient, transition)
