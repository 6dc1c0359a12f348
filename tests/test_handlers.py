import pytest

from app.errors import ClassificationFailure, LockBusy
from app.services.container import build_services
from app.services.handlers import FallbackHandler, HandlerChain, ResponseContext, ResponseHandler
from app.services.locks import LockService, patient_lock_key
from app.types.contracts import ClassificationSource, InteractionType, Intent, IntentResult
from db import Reminder
from conftest import TestSettings, add_patient, add_reminder, reload


class FakeLLM:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def __call__(self, system, user):
        self.calls.append(user)
        if self.error is not None:
            raise self.error
        return self.reply


class Raising(ResponseHandler):
    priority = 2
    name = "raising"

    def __init__(self, exc):
        self.exc = exc

    def can_handle(self, ctx):
        return True

    async def handle(self, ctx):
        raise self.exc


def context(patient, kind=InteractionType.GENERAL_INQUIRY, message="halo", intent=None, terms=None):
    return ResponseContext(
        patient=patient,
        message=message,
        interaction_type=kind,
        intent=intent or IntentResult.fallback(),
        emergency_terms=terms or [],
    )


def test_chain_is_ordered_by_priority(services):
    names = [h["name"] for h in services.chain.describe()]
    assert names == ["emergency", "unsubscribe", "verification", "medication", "general_inquiry", "fallback"]


@pytest.mark.asyncio
async def test_emergency_escalates_with_metadata(services, session_maker):
    patient = await add_patient(session_maker, status="VERIFIED")
    reminder = await add_reminder(session_maker, patient)
    result = await services.chain.dispatch(
        context(patient, InteractionType.EMERGENCY, "sesak napas", terms=["sesak napas"])
    )
    assert result.success
    assert result.metadata.action == "emergency_escalation"
    assert result.metadata.emergency_detected and result.metadata.escalated
    assert result.as_dict()["metadata"]["emergencyDetected"] is True
    assert (await reload(session_maker, Reminder, reminder.id)).needs_escalation is True
    [ack] = await services.queue.messages_for_patient(patient.id)
    assert (ack.priority, ack.message_type) == ("urgent", "emergency_ack")


@pytest.mark.asyncio
async def test_verification_handler_reports_transition(services, session_maker):
    patient = await add_patient(session_maker)
    intent = IntentResult(intent=Intent.ACCEPT, confidence=1.0, source=ClassificationSource.KEYWORD)
    result = await services.chain.dispatch(context(patient, InteractionType.VERIFICATION, "ya", intent))
    assert result.success
    assert (result.metadata.action, result.metadata.source) == ("verified", "keyword")
    assert result.data == {"changed": True, "ackQueued": True, "reminderId": None}


@pytest.mark.asyncio
async def test_failed_handler_falls_through_to_fallback(services, session_maker):
    patient = await add_patient(session_maker, status="VERIFIED")
    chain = HandlerChain([FallbackHandler(services.queue), Raising(RuntimeError("boom"))])
    result = await chain.dispatch(context(patient))
    assert result.success
    assert result.metadata.action == "acknowledged"


@pytest.mark.asyncio
async def test_busy_halts_the_chain(services, session_maker):
    patient = await add_patient(session_maker, status="VERIFIED")
    chain = HandlerChain([FallbackHandler(services.queue), Raising(LockBusy(patient.id))])
    result = await chain.dispatch(context(patient))
    assert (result.success, result.error) == (False, "busy")
    assert await services.queue.messages_for_patient(patient.id) == []


@pytest.mark.asyncio
async def test_pending_patient_fallback_repeats_verification_prompt(services, session_maker):
    patient = await add_patient(session_maker)
    result = await services.chain.dispatch(context(patient))
    assert result.metadata.action == "verification_reminder"
    [msg] = await services.queue.messages_for_patient(patient.id)
    assert (msg.priority, msg.message_type) == ("low", "fallback")


@pytest.mark.asyncio
async def test_general_inquiry_answered_by_llm(session_maker, redis, gateway):
    llm = FakeLLM(reply={"reply": "Halo Budi, silakan hubungi relawan PRIMA."})
    services = build_services(TestSettings(), session_maker, redis, llm=llm, gateway=gateway)
    patient = await add_patient(session_maker, status="VERIFIED")
    result = await services.chain.dispatch(context(patient, message="apa efek samping obat ini?"))
    assert (result.metadata.action, result.metadata.source) == ("answered", "llm")
    assert llm.calls == ["apa efek samping obat ini?"]
    [msg] = await services.queue.messages_for_patient(patient.id)
    assert msg.body.startswith("Halo Budi")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "llm",
    [FakeLLM(error=ClassificationFailure("timeout")), FakeLLM(reply={"answer": "?"})],
)
async def test_general_inquiry_falls_back_when_llm_fails(session_maker, redis, gateway, llm):
    services = build_services(TestSettings(), session_maker, redis, llm=llm, gateway=gateway)
    patient = await add_patient(session_maker, status="VERIFIED")
    result = await services.chain.dispatch(context(patient, message="apa kabar?"))
    assert result.success
    assert result.metadata.action == "acknowledged"


@pytest.mark.asyncio
async def test_emergency_ack_is_sent_even_when_patient_is_locked(services, session_maker):
    patient = await add_patient(session_maker, status="VERIFIED")
    reminder = await add_reminder(session_maker, patient)
    await LockService(session_maker).acquire(patient_lock_key(patient.id))
    result = await services.chain.dispatch(
        context(patient, InteractionType.EMERGENCY, "pingsan", terms=["pingsan"])
    )
    assert result.success
    assert result.data["reminderId"] is None
    assert (await reload(session_maker, Reminder, reminder.id)).needs_escalation is False
    [ack] = await services.queue.messages_for_patient(patient.id)
    assert ack.priority == "urgent"
