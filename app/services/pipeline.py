"""
Inbound webhook processing: dedup → patient lookup → classification →
handler chain → response envelope.

``StoreUnavailable`` is the only exception that leaves ``process``; the
idempotency key is forgotten first so the gateway's redelivery is handled.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from app.errors import StoreUnavailable
from app.services.handlers import BUSY, STORE_UNAVAILABLE, HandlerChain, ResponseContext
from app.services.idempotency import IdempotencyGuard, incoming_key, status_key
from app.services.intent import IntentClassifier, PatientContext
from app.services.keywords import KeywordScorer
from app.types.contracts import (
    ClassificationContext,
    ClassificationSource,
    DeliveryStatus,
    InboundEvent,
    Intent,
    IntentResult,
    InteractionType,
    StatusCallback,
    VerificationStatus,
    WebhookResponse,
)
from app.utils.phone import phone_alternatives
from db import Patient, PatientStore

_LOGGER = logging.getLogger(__name__)

STATUS_MAP = {
    "sent": DeliveryStatus.SENT,
    "queued": DeliveryStatus.SENT,
    "delivered": DeliveryStatus.DELIVERED,
    "read": DeliveryStatus.DELIVERED,
    "opened": DeliveryStatus.DELIVERED,
    "received": DeliveryStatus.DELIVERED,
    "failed": DeliveryStatus.FAILED,
    "error": DeliveryStatus.FAILED,
    "undelivered": DeliveryStatus.FAILED,
}

_MEDICATION_INTENTS = (Intent.MEDICATION_TAKEN, Intent.MEDICATION_PENDING, Intent.NEED_HELP)
_VERIFICATION_INTENTS = (Intent.ACCEPT, Intent.DECLINE)


def classification_context(patient: Patient) -> ClassificationContext:
    if patient.verification_status == VerificationStatus.PENDING.value:
        return ClassificationContext.VERIFICATION
    if patient.verification_status == VerificationStatus.VERIFIED.value:
        return ClassificationContext.MEDICATION
    return ClassificationContext.GENERAL


def interaction_type(
    patient: Patient,
    message: str,
    result: IntentResult,
    emergency_terms: list,
    scorer: KeywordScorer,
) -> InteractionType:
    if emergency_terms:
        return InteractionType.EMERGENCY
    if result.intent == Intent.UNSUBSCRIBE:
        return InteractionType.UNSUBSCRIBE
    status = patient.verification_status
    if status == VerificationStatus.PENDING.value:
        llm_answer = result.source == ClassificationSource.LLM and result.intent in _VERIFICATION_INTENTS
        if llm_answer or scorer.is_actual_verification_response(message):
            return InteractionType.VERIFICATION
    elif status == VerificationStatus.VERIFIED.value and result.intent in _MEDICATION_INTENTS:
        return InteractionType.MEDICATION_REMINDER
    return InteractionType.GENERAL_INQUIRY


class InboundProcessor:
    def __init__(
        self,
        guard: IdempotencyGuard,
        patients: PatientStore,
        classifier: IntentClassifier,
        chain: HandlerChain,
    ):
        self.guard = guard
        self.patients = patients
        self.classifier = classifier
        self.chain = chain

    @property
    def scorer(self) -> KeywordScorer:
        return self.classifier.scorer

    # ──────────────────────────────────────────────────────────────────
    # Incoming patient messages
    # ──────────────────────────────────────────────────────────────────
    async def process(self, event: InboundEvent) -> WebhookResponse:
        key = incoming_key(event.id, event.sender, event.timestamp, event.message)
        if await self.guard.is_duplicate(key):
            return WebhookResponse(ok=True, duplicate=True)
        try:
            return await self._process(event)
        except StoreUnavailable:
            await self.guard.forget(key)
            raise

    async def _process(self, event: InboundEvent) -> WebhookResponse:
        patient = await self._lookup(event.sender)
        if patient is None:
            _LOGGER.info("Message from unknown sender ignored (device=%s)", event.device)
            return WebhookResponse(ok=True, ignored=True, reason="unknown_patient")
        if not patient.is_active:
            _LOGGER.info("Message from inactive patient %s ignored", patient.id)
            return WebhookResponse(ok=True, ignored=True, reason="inactive_patient")

        emergency_terms = self.scorer.detect_emergency(event.message)
        context = classification_context(patient)
        result = await self.classifier.classify(
            event.message,
            context,
            PatientContext(name=patient.name, verification_status=patient.verification_status),
        )
        kind = interaction_type(patient, event.message, result, emergency_terms, self.scorer)
        _LOGGER.info(
            "Patient %s message routed as %s (intent=%s, %.2f)",
            patient.id, kind.value, result.intent.value, result.confidence,
        )

        outcome = await self.chain.dispatch(
            ResponseContext(
                patient=patient,
                message=event.message,
                interaction_type=kind,
                intent=result,
                emergency_terms=emergency_terms,
            )
        )
        meta = outcome.metadata
        if outcome.success:
            return WebhookResponse(
                ok=True,
                processed=True,
                action=meta.action,
                source=meta.source,
                emergency_detected=meta.emergency_detected,
                escalated=meta.escalated,
            )
        if outcome.error == STORE_UNAVAILABLE:
            raise StoreUnavailable(outcome.message)
        if outcome.error == BUSY:
            return WebhookResponse(ok=True, processed=False, action="busy")
        return WebhookResponse(ok=True, processed=False, action=meta.action, error=outcome.error)

    async def _lookup(self, sender: str) -> Optional[Patient]:
        try:
            return await self.patients.find_by_phone(phone_alternatives(sender))
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"patient lookup failed: {exc}") from exc

    # ──────────────────────────────────────────────────────────────────
    # Delivery receipts
    # ──────────────────────────────────────────────────────────────────
    async def process_status(self, callback: StatusCallback) -> WebhookResponse:
        key = status_key(callback.id, callback.timestamp)
        if await self.guard.is_duplicate(key):
            return WebhookResponse(ok=True, duplicate=True)

        mapped = STATUS_MAP.get((callback.status or "").strip().lower())
        if mapped is None:
            _LOGGER.info("Unmapped delivery status %r for %s ignored", callback.status, callback.id)
            return WebhookResponse(ok=True, ignored=True)

        try:
            reminder = await self.patients.update_delivery_status(callback.id, mapped.value)
        except SQLAlchemyError as exc:
            await self.guard.forget(key)
            raise StoreUnavailable(f"delivery status update failed: {exc}") from exc
        if reminder is None:
            return WebhookResponse(ok=True, processed=False, reason="unknown_message")
        _LOGGER.info("Reminder %s delivery status → %s (%s)", reminder.id, mapped.value, callback.reason or "")
        return WebhookResponse(ok=True, processed=True, action=f"delivery_{mapped.value.lower()}")
