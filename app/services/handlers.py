"""
Response handler chain.

Handlers are registered once at startup as an ordered list and walked in
ascending priority. A handler takes part when ``can_handle`` accepts the
context (by default: its interaction type matches). The first successful
result halts the chain; a failed one lets the next eligible handler try,
except for ``busy`` / ``store_unavailable`` which stop the walk so the caller
can answer "try later" or HTTP 500.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from app.errors import LockBusy, PrimaError, StoreUnavailable
from app.services import messages
from app.services.intent import LLMCompletion
from app.services.queue import MessageQueue
from app.services.transitions import ConfirmationMachine, TransitionOutcome, VerificationMachine
from app.types.contracts import (
    HandlerMetadata,
    HandlerResult,
    InteractionType,
    IntentResult,
    Priority,
    VerificationStatus,
)
from db import Patient

_LOGGER = logging.getLogger(__name__)

BUSY = "busy"
STORE_UNAVAILABLE = "store_unavailable"
HALTING_ERRORS = frozenset({BUSY, STORE_UNAVAILABLE})


@dataclass
class ResponseContext:
    patient: Patient
    message: str
    interaction_type: InteractionType
    intent: IntentResult
    emergency_terms: List[str] = field(default_factory=list)


class ResponseHandler:
    interaction_type: Optional[InteractionType] = None
    priority: int = 100
    name: str = "handler"

    def can_handle(self, ctx: ResponseContext) -> bool:
        return ctx.interaction_type == self.interaction_type

    async def handle(self, ctx: ResponseContext) -> HandlerResult:
        raise NotImplementedError

    async def run(self, ctx: ResponseContext) -> HandlerResult:
        """``handle`` with timing; exceptions become ``success=False`` results."""
        started = time.perf_counter()
        try:
            result = await self.handle(ctx)
        except LockBusy:
            result = self._failure(ctx, BUSY, "patient is being processed by another worker")
        except StoreUnavailable as exc:
            result = self._failure(ctx, STORE_UNAVAILABLE, str(exc))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.exception("Handler %s failed for patient %s", self.name, ctx.patient.id)
            result = self._failure(ctx, type(exc).__name__, str(exc) or type(exc).__name__)
        result.metadata.processing_time_ms = int((time.perf_counter() - started) * 1000)
        return result

    # ── Result helpers ──

    def _result(self, ctx: ResponseContext, action: str, message: str, **meta: Any) -> HandlerResult:
        return HandlerResult(
            success=True,
            message=message,
            metadata=HandlerMetadata(
                source=ctx.intent.source.value, action=action, patient_id=ctx.patient.id, **meta,
            ),
        )

    def _from_outcome(self, ctx: ResponseContext, outcome: TransitionOutcome, **meta: Any) -> HandlerResult:
        result = self._result(ctx, outcome.action, outcome.reply or outcome.action, **meta)
        result.data = {
            "changed": outcome.changed,
            "ackQueued": outcome.ack_queued,
            "reminderId": outcome.reminder_id,
        }
        return result

    def _failure(self, ctx: ResponseContext, error: str, message: str) -> HandlerResult:
        return HandlerResult(
            success=False,
            message=message,
            error=error,
            metadata=HandlerMetadata(
                source=ctx.intent.source.value, action=self.name, patient_id=ctx.patient.id,
            ),
        )


# ──────────────────────────────────────────────────────────────────────────
# Handlers
# ──────────────────────────────────────────────────────────────────────────


class EmergencyHandler(ResponseHandler):
    interaction_type = InteractionType.EMERGENCY
    priority = 1
    name = "emergency"

    def __init__(self, confirmation: ConfirmationMachine, queue: MessageQueue):
        self.confirmation = confirmation
        self.queue = queue

    def can_handle(self, ctx: ResponseContext) -> bool:
        return bool(ctx.emergency_terms)

    async def handle(self, ctx: ResponseContext) -> HandlerResult:
        patient = ctx.patient
        _LOGGER.warning(
            "Emergency keywords %s from patient %s, escalating", ctx.emergency_terms, patient.id,
        )
        reminder_id = None
        try:
            reminder_id = (await self.confirmation.escalate(patient)).reminder_id
        except LockBusy:
            # the urgent acknowledgement still goes out
            _LOGGER.error("Patient %s locked, emergency escalation flag not set", patient.id)
        reply = messages.emergency_ack(patient.name)
        await self.queue.enqueue(
            patient.id, patient.phone_number, reply, priority=Priority.URGENT, message_type="emergency_ack",
        )
        result = self._result(ctx, "emergency_escalation", reply, emergency_detected=True, escalated=True)
        result.data = {"terms": ctx.emergency_terms, "reminderId": reminder_id}
        return result


class UnsubscribeHandler(ResponseHandler):
    interaction_type = InteractionType.UNSUBSCRIBE
    priority = 5
    name = "unsubscribe"

    def __init__(self, verification: VerificationMachine):
        self.verification = verification

    async def handle(self, ctx: ResponseContext) -> HandlerResult:
        outcome = await self.verification.unsubscribe(ctx.patient, ctx.message)
        return self._from_outcome(ctx, outcome)


class VerificationHandler(ResponseHandler):
    interaction_type = InteractionType.VERIFICATION
    priority = 10
    name = "verification"

    def __init__(self, verification: VerificationMachine):
        self.verification = verification

    async def handle(self, ctx: ResponseContext) -> HandlerResult:
        outcome = await self.verification.respond(ctx.patient, ctx.intent, ctx.message)
        return self._from_outcome(ctx, outcome)


class MedicationHandler(ResponseHandler):
    interaction_type = InteractionType.MEDICATION_REMINDER
    priority = 15
    name = "medication"

    def __init__(self, confirmation: ConfirmationMachine):
        self.confirmation = confirmation

    async def handle(self, ctx: ResponseContext) -> HandlerResult:
        outcome = await self.confirmation.respond(ctx.patient, ctx.intent, ctx.message)
        return self._from_outcome(ctx, outcome, escalated=outcome.escalated or None)


_INQUIRY_PROMPT = """You are a helpful assistant for PRIMA (Palliative Remote Integrated Monitoring and Assistance), writing WhatsApp replies to cancer patients.

Patient name: {name}

Guidelines:
- Always answer in Bahasa Indonesia, in at most 4 short sentences.
- Be friendly, empathetic and simple.
- Never diagnose, never recommend treatments or dosages.
- For medical concerns, advise consulting a healthcare professional or a PRIMA volunteer.
- End by offering to connect the patient with a PRIMA volunteer.

Respond ONLY with a JSON object: {{"reply": "..."}}"""

MAX_REPLY_CHARS = 1_000


class GeneralInquiryHandler(ResponseHandler):
    """LLM-drafted answer for verified patients; fails over to the fallback."""

    interaction_type = InteractionType.GENERAL_INQUIRY
    priority = 30
    name = "general_inquiry"

    def __init__(self, queue: MessageQueue, llm: Optional[LLMCompletion]):
        self.queue = queue
        self.llm = llm

    def can_handle(self, ctx: ResponseContext) -> bool:
        return (
            self.llm is not None
            and super().can_handle(ctx)
            and ctx.patient.verification_status == VerificationStatus.VERIFIED.value
        )

    async def handle(self, ctx: ResponseContext) -> HandlerResult:
        try:
            data = await self.llm(_INQUIRY_PROMPT.format(name=ctx.patient.name), ctx.message)
        except PrimaError as exc:
            return self._failure(ctx, "llm_unavailable", str(exc))
        reply = data.get("reply")
        if not isinstance(reply, str) or not reply.strip():
            return self._failure(ctx, "llm_malformed", "LLM reply missing")
        reply = reply.strip()[:MAX_REPLY_CHARS]
        await self.queue.enqueue(
            ctx.patient.id, ctx.patient.phone_number, reply, priority=Priority.MEDIUM, message_type="general_inquiry",
        )
        result = self._result(ctx, "answered", reply)
        result.metadata.source = "llm"
        return result


class FallbackHandler(ResponseHandler):
    """Canned status message; accepts every context."""

    priority = 100
    name = "fallback"

    def __init__(self, queue: MessageQueue):
        self.queue = queue

    def can_handle(self, ctx: ResponseContext) -> bool:
        return True

    async def handle(self, ctx: ResponseContext) -> HandlerResult:
        patient = ctx.patient
        if patient.verification_status == VerificationStatus.PENDING.value:
            reply, action = messages.verification_clarify(patient.name), "verification_reminder"
        else:
            reply, action = messages.general_thanks(patient.name), "acknowledged"
        await self.queue.enqueue(
            patient.id, patient.phone_number, reply, priority=Priority.LOW, message_type="fallback",
        )
        return self._result(ctx, action, reply)


# ──────────────────────────────────────────────────────────────────────────
# Chain
# ──────────────────────────────────────────────────────────────────────────


class HandlerChain:
    def __init__(self, handlers: Sequence[ResponseHandler]):
        self.handlers: List[ResponseHandler] = sorted(handlers, key=lambda h: h.priority)

    async def dispatch(self, ctx: ResponseContext) -> HandlerResult:
        last: Optional[HandlerResult] = None
        for handler in self.handlers:
            if not handler.can_handle(ctx):
                continue
            result = await handler.run(ctx)
            if result.success:
                _LOGGER.info(
                    "Handler %s processed patient %s: %s (%dms)",
                    handler.name, ctx.patient.id, result.metadata.action, result.metadata.processing_time_ms,
                )
                return result
            _LOGGER.warning("Handler %s failed for patient %s: %s", handler.name, ctx.patient.id, result.error)
            last = result
            if result.error in HALTING_ERRORS:
                break
        if last is not None:
            return last
        return HandlerResult(
            success=False,
            message="no handler accepted the message",
            error="unhandled",
            metadata=HandlerMetadata(source=ctx.intent.source.value, action="unhandled", patient_id=ctx.patient.id),
        )

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {"name": h.name, "priority": h.priority, "type": h.interaction_type.value if h.interaction_type else None}
            for h in self.handlers
        ]


def build_chain(
    queue: MessageQueue,
    verification: VerificationMachine,
    confirmation: ConfirmationMachine,
    llm: Optional[LLMCompletion] = None,
) -> HandlerChain:
    return HandlerChain(
        [
            EmergencyHandler(confirmation, queue),
            UnsubscribeHandler(verification),
            VerificationHandler(verification),
            MedicationHandler(confirmation),
            GeneralInquiryHandler(queue, llm),
            FallbackHandler(queue),
        ]
    )
