"""
Intent classification cascade: keyword scorer → LLM → fallback.

Each stage is an async callable ``(message, context, patient) -> IntentResult``
that raises ``ClassificationFailure`` when it cannot answer. ``first_confident``
walks the stages in order and returns the first result at or above that
stage's threshold. ``IntentClassifier.classify`` never raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from app.errors import ClassificationFailure
from app.services.keywords import KeywordScorer
from app.types.contracts import ClassificationContext, ClassificationSource, Intent, IntentResult

_LOGGER = logging.getLogger(__name__)

LLMCompletion = Callable[[str, str], Awaitable[Dict[str, Any]]]


@dataclass
class PatientContext:
    """The minimal conversation context handed to the LLM stage."""

    name: Optional[str] = None
    verification_status: Optional[str] = None
    medications: List[str] = field(default_factory=list)


Stage = Callable[[str, ClassificationContext, Optional[PatientContext]], Awaitable[IntentResult]]


async def first_confident(
    stages: Sequence[Tuple[str, Stage, float]],
    message: str,
    context: ClassificationContext,
    patient: Optional[PatientContext] = None,
) -> IntentResult:
    for name, stage, threshold in stages:
        try:
            result = await stage(message, context, patient)
        except ClassificationFailure as exc:
            _LOGGER.warning("Classification stage %s failed: %s", name, exc)
            continue
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Classification stage %s raised unexpectedly", name)
            continue
        if result.confidence >= threshold:
            _LOGGER.debug(
                "Stage %s accepted intent=%s confidence=%.2f",
                name, result.intent.value, result.confidence,
            )
            return result
        _LOGGER.debug(
            "Stage %s below threshold (%s %.2f < %.2f)",
            name, result.intent.value, result.confidence, threshold,
        )
    return IntentResult.fallback()


# ──────────────────────────────────────────────────────────────────────────
# LLM prompt & output mapping
# ──────────────────────────────────────────────────────────────────────────

_INTENT_PROMPT = """You are an AI assistant for the PRIMA palliative-care programme, reading WhatsApp replies from cancer patients.

Patient information:
- Name: {name}
- Verification status: {status}{medications}
- Conversation context: {context}

Classify the patient's message. Respond ONLY with a JSON object:
{{"intent": "...", "confidence": 0.0-1.0, "entities": {{...}}}}

intent is one of [verification_response, medication_confirmation, unsubscribe, general_inquiry, emergency, unknown].

Guidelines:
- verification_response: a YA/TIDAK answer to the programme opt-in question. Set entities.response_type to "positive" or "negative".
- medication_confirmation: whether the medication was taken ("SUDAH minum", "sudah saya minum", "BELUM minum"). Set entities.response to "SUDAH" or "BELUM".
- unsubscribe: "BERHENTI", "STOP", "CANCEL" or any request to stop receiving messages.
- emergency: urgent symptoms, pain, breathing problems, loss of consciousness.
- general_inquiry: questions, greetings or anything else.
Messages about eating food ("makan makanan") are NOT medication confirmations."""

_POSITIVE = {"positive", "accept", "yes", "ya", "setuju", "sudah", "taken", "done"}
_NEGATIVE = {"negative", "decline", "no", "tidak", "belum", "pending", "not_taken"}

# Closed-set names the model sometimes answers with directly
_DIRECT_INTENTS = {i.value: i for i in Intent}


def _entity_polarity(entities: Dict[str, Any]) -> Optional[bool]:
    for key in ("response_type", "response", "answer"):
        value = entities.get(key)
        if not isinstance(value, str):
            continue
        value = value.strip().lower()
        if value in _POSITIVE:
            return True
        if value in _NEGATIVE:
            return False
    return None


class IntentClassifier:
    def __init__(
        self,
        scorer: Optional[KeywordScorer] = None,
        llm: Optional[LLMCompletion] = None,
        keyword_threshold: float = 0.4,
        llm_threshold: float = 0.6,
    ):
        self.scorer = scorer or KeywordScorer()
        self.llm = llm
        self.keyword_threshold = keyword_threshold
        self.llm_threshold = llm_threshold

    async def classify(
        self,
        message: str,
        context: ClassificationContext = ClassificationContext.GENERAL,
        patient: Optional[PatientContext] = None,
        semantic: bool = False,
    ) -> IntentResult:
        """Resolve *message* to an intent.

        ``semantic=True`` consults the LLM before the keyword scorer, for flows
        where free text must be understood rather than matched.
        """
        keyword = ("keyword", self._keyword_stage, self.keyword_threshold)
        stages: List[Tuple[str, Stage, float]] = [keyword]
        if self.llm is not None:
            llm = ("llm", self._llm_stage, self.llm_threshold)
            stages = [llm, keyword] if semantic else [keyword, llm]
        result = await first_confident(stages, message, context, patient)
        _LOGGER.info(
            "Classified message as %s (%.2f, %s) in %s context",
            result.intent.value, result.confidence, result.source.value, context.value,
        )
        return result

    # ── Stages ──

    async def _keyword_stage(
        self, message: str, context: ClassificationContext, patient: Optional[PatientContext]
    ) -> IntentResult:
        return self.scorer.score(message, context)

    async def _llm_stage(
        self, message: str, context: ClassificationContext, patient: Optional[PatientContext]
    ) -> IntentResult:
        if self.llm is None:
            raise ClassificationFailure("llm disabled")
        data = await self.llm(self._prompt(context, patient), message)
        return self._map_llm_output(message, data)

    # ── Helpers ──

    @staticmethod
    def _prompt(context: ClassificationContext, patient: Optional[PatientContext]) -> str:
        patient = patient or PatientContext()
        meds = f"\n- Active medication reminders: {', '.join(patient.medications)}" if patient.medications else ""
        return _INTENT_PROMPT.format(
            name=patient.name or "Unknown",
            status=patient.verification_status or "Unknown",
            medications=meds,
            context=context.value,
        )

    def _map_llm_output(self, message: str, data: Dict[str, Any]) -> IntentResult:
        label = data.get("intent")
        if not isinstance(label, str) or not label:
            raise ClassificationFailure("llm output has no intent")
        try:
            confidence = float(data.get("confidence"))
        except (TypeError, ValueError) as exc:
            raise ClassificationFailure("llm output has no numeric confidence") from exc
        confidence = min(max(confidence, 0.0), 1.0)
        entities = data.get("entities") if isinstance(data.get("entities"), dict) else {}

        label = label.strip().lower()
        if label == "verification_response":
            intent = self._binary(message, entities, Intent.ACCEPT, Intent.DECLINE)
        elif label == "medication_confirmation":
            intent = self._binary(message, entities, Intent.MEDICATION_TAKEN, Intent.MEDICATION_PENDING)
        elif label == "unsubscribe":
            intent = Intent.UNSUBSCRIBE
        elif label == "emergency":
            intent = Intent.NEED_HELP
        else:
            intent = _DIRECT_INTENTS.get(label, Intent.OTHER)

        return IntentResult(
            intent=intent,
            confidence=confidence,
            source=ClassificationSource.LLM,
            entities=entities,
        )

    def _binary(self, message: str, entities: Dict[str, Any], yes: Intent, no: Intent) -> Intent:
        """Entities win; otherwise exactly one side of the keyword lists must match."""
        polarity = _entity_polarity(entities)
        if polarity is not None:
            return yes if polarity else no
        yes_hits = self.scorer.matches(message, yes)
        no_hits = self.scorer.matches(message, no)
        if yes_hits and not no_hits:
            return yes
        if no_hits and not yes_hits:
            return no
        raise ClassificationFailure("llm answer without a resolvable polarity")
