import pytest

from app.errors import ClassificationFailure
from app.services.intent import IntentClassifier, PatientContext
from app.types.contracts import ClassificationContext, ClassificationSource, Intent

VERIFICATION = ClassificationContext.VERIFICATION
MEDICATION = ClassificationContext.MEDICATION


class FakeLLM:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def __call__(self, system_prompt, user_message):
        self.calls.append((system_prompt, user_message))
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.mark.asyncio
async def test_confident_keyword_short_circuits_llm():
    llm = FakeLLM({"intent": "verification_response", "confidence": 0.9})
    result = await IntentClassifier(llm=llm).classify("YA", VERIFICATION)
    assert result.intent == Intent.ACCEPT
    assert result.source == ClassificationSource.KEYWORD
    assert llm.calls == []


@pytest.mark.asyncio
async def test_llm_entities_take_precedence():
    llm = FakeLLM({
        "intent": "verification_response",
        "confidence": 0.9,
        "entities": {"response_type": "negative"},
    })
    result = await IntentClassifier(llm=llm).classify(
        "hmm saya pikir-pikir dulu", VERIFICATION, PatientContext(name="Budi", verification_status="PENDING"),
    )
    assert result.intent == Intent.DECLINE
    assert result.source == ClassificationSource.LLM
    system_prompt, user_message = llm.calls[0]
    assert "Budi" in system_prompt and "PENDING" in system_prompt
    assert user_message == "hmm saya pikir-pikir dulu"


@pytest.mark.asyncio
async def test_llm_without_entities_falls_back_to_keyword_polarity():
    llm = FakeLLM({"intent": "verification_response", "confidence": 0.8})
    # suppressed by the greeting, so the keyword stage is not confident
    result = await IntentClassifier(llm=llm).classify("halo, ya saya ikut", VERIFICATION)
    assert result.intent == Intent.ACCEPT
    assert result.source == ClassificationSource.LLM


@pytest.mark.asyncio
async def test_medication_confirmation_mapping():
    llm = FakeLLM({"intent": "medication_confirmation", "confidence": 0.95, "entities": {"response": "SUDAH"}})
    result = await IntentClassifier(llm=llm).classify("obatnya tadi pagi beres", MEDICATION)
    assert result.intent == Intent.MEDICATION_TAKEN


@pytest.mark.asyncio
async def test_emergency_maps_to_need_help_and_confidence_is_clamped():
    llm = FakeLLM({"intent": "emergency", "confidence": 1.7})
    result = await IntentClassifier(llm=llm).classify("rasanya lemas sekali", MEDICATION)
    assert result.intent == Intent.NEED_HELP
    assert result.confidence == 1.0


@pytest.mark.asyncio
async def test_low_llm_confidence_falls_back():
    llm = FakeLLM({"intent": "verification_response", "confidence": 0.5, "entities": {"response_type": "positive"}})
    result = await IntentClassifier(llm=llm).classify("mungkin", VERIFICATION)
    assert result.intent == Intent.OTHER
    assert result.confidence == 0.0
    assert result.source == ClassificationSource.FALLBACK


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "llm",
    [
        FakeLLM(error=ClassificationFailure("provider down")),
        FakeLLM(error=RuntimeError("boom")),
        FakeLLM({"intent": "verification_response"}),
        FakeLLM({"confidence": 0.9}),
        FakeLLM({"intent": "verification_response", "confidence": "high"}),
    ],
)
async def test_llm_failures_never_raise(llm):
    result = await IntentClassifier(llm=llm).classify("mungkin", VERIFICATION)
    assert result.source == ClassificationSource.FALLBACK
    assert result.is_unclear


@pytest.mark.asyncio
async def test_ambiguous_llm_polarity_is_rejected():
    llm = FakeLLM({"intent": "verification_response", "confidence": 0.9})
    result = await IntentClassifier(llm=llm).classify("halo, ya tapi tidak", VERIFICATION)
    assert result.source == ClassificationSource.FALLBACK


@pytest.mark.asyncio
async def test_semantic_flow_consults_llm_first():
    llm = FakeLLM({"intent": "general_inquiry", "confidence": 0.9})
    result = await IntentClassifier(llm=llm).classify("ya", VERIFICATION, semantic=True)
    assert llm.calls
    assert result.intent == Intent.OTHER
    assert result.source == ClassificationSource.LLM


@pytest.mark.asyncio
async def test_without_llm_cascade_is_keyword_then_fallback():
    classifier = IntentClassifier()
    assert (await classifier.classify("TIDAK", VERIFICATION)).intent == Intent.DECLINE
    assert (await classifier.classify("halo, kamu siapa?", VERIFICATION)).source == ClassificationSource.FALLBACK
