"""
Deterministic keyword scorer for patient replies (Bahasa Indonesia + English).

Each intent owns weighted term groups. A single-word term scores its group
weight when it appears as a token; a multi-word phrase scores 1.5× the weight
when it appears as a whole. ``confidence = min(score / 10, 1)``, then:

* ×1.2 when the intent is expected for the classification context,
* ×0.1 when the message reads like chit-chat (greeting / question) and the
  context is ``verification`` or ``medication``.

The highest confidence wins; ties go to the intent declared first.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from app.types.contracts import ClassificationContext, ClassificationSource, Intent, IntentResult

PHRASE_BONUS = 1.5
CONTEXT_BONUS = 1.2
GENERAL_INQUIRY_PENALTY = 0.1
SCORE_SCALE = 10.0

_TOKEN = re.compile(r"[a-z0-9]+")
_SPACES = re.compile(r"\s+")


@dataclass(frozen=True)
class TermGroup:
    terms: Tuple[str, ...]
    weight: float


def _g(weight: float, *terms: str) -> TermGroup:
    return TermGroup(terms=terms, weight=weight)


# Declaration order is the tie-break order.
PATTERNS: Dict[Intent, Tuple[TermGroup, ...]] = {
    Intent.ACCEPT: (
        _g(10, "ya", "iya", "yaa", "yes", "yep", "yup"),
        _g(10, "setuju", "stuju", "setujuu"),
        _g(9, "boleh", "blh", "bole", "bolh"),
        _g(8, "baik", "bagus", "good"),
        _g(8, "ok", "oke", "okay", "okey", "okeh"),
        _g(7, "siap", "ready", "sip"),
        _g(7, "mau", "ingin", "pengen", "want"),
        _g(6, "terima", "accept"),
        _g(12, "ya boleh", "iya setuju", "ok siap"),
    ),
    Intent.DECLINE: (
        _g(10, "tidak", "tdk", "gak", "ga", "engga", "enggak", "no", "nope"),
        _g(10, "tolak", "refuse", "nolak"),
        _g(7, "nanti", "later"),
        _g(8, "jangan", "dont"),
        _g(6, "maaf", "sorry", "sori"),
        _g(12, "tidak mau", "ga mau", "tidak setuju"),
    ),
    Intent.UNSUBSCRIBE: (
        _g(10, "berhenti", "stop", "cancel", "batal"),
        _g(9, "keluar", "exit"),
        _g(9, "hapus", "delete", "remove"),
        _g(10, "unsubscribe", "unsub", "cabut"),
        _g(14, "berhenti langganan", "stop pengingat", "jangan kirim lagi"),
    ),
    Intent.MEDICATION_TAKEN: (
        _g(10, "sudah", "udah", "sdh", "done", "selesai"),
        _g(7, "oke", "ok", "siap", "good"),
        _g(15, "sudah minum", "sudah selesai", "sudah dilakukan", "udah minum"),
        _g(14, "sudah beres", "sudah diminum"),
    ),
    Intent.MEDICATION_PENDING: (
        _g(10, "belum", "blm", "nanti"),
        _g(8, "sebentar", "tunggu", "wait"),
        _g(9, "lupa", "forgot", "lupaa"),
        _g(14, "belum minum", "belum selesai", "not yet"),
        _g(12, "nanti dulu", "sebentar lagi"),
    ),
    Intent.NEED_HELP: (
        _g(10, "bantuan", "help", "tolong"),
        _g(9, "bingung", "confused", "susah"),
        _g(8, "relawan", "staff", "perawat"),
        _g(15, "butuh bantuan", "perlu bantuan", "minta tolong"),
    ),
}

CONTEXT_INTENTS: Dict[ClassificationContext, Tuple[Intent, ...]] = {
    ClassificationContext.VERIFICATION: (Intent.ACCEPT, Intent.DECLINE),
    ClassificationContext.MEDICATION: (
        Intent.MEDICATION_TAKEN,
        Intent.MEDICATION_PENDING,
        Intent.NEED_HELP,
    ),
}

# Greeting / FAQ vocabulary that marks a message as conversation, not an answer.
GENERAL_INQUIRY_TERMS: Tuple[str, ...] = (
    "halo", "hallo", "hai", "hi", "hello", "hey", "pagi", "siang", "sore", "malam",
    "assalamualaikum", "permisi", "siapa", "apa", "apakah", "kenapa", "mengapa",
    "bagaimana", "gimana", "kapan", "dimana", "mana", "berapa", "info", "informasi",
    "kamu", "anda", "nomor", "prima",
)

# Explicit answers to the opt-in question.
VERIFICATION_ACCEPT_TOKENS = frozenset({"ya", "iya", "yaa", "yes", "setuju", "boleh", "ok", "oke", "okay", "mau", "terima"})
VERIFICATION_DECLINE_TOKENS = frozenset({"tidak", "tdk", "gak", "ga", "engga", "enggak", "no", "tolak", "nolak"})

EMERGENCY_TERMS: Tuple[str, ...] = (
    "darurat", "emergency", "sesak napas", "sesak nafas", "sulit bernapas", "pingsan",
    "tidak sadar", "kejang", "muntah darah", "pendarahan", "perdarahan", "nyeri dada",
    "sakit dada", "overdosis", "ambulans",
)

MAX_VERIFICATION_WORDS = 3


def normalize(message: str) -> str:
    return _SPACES.sub(" ", (message or "").lower().strip())


def tokens(message: str) -> List[str]:
    return _TOKEN.findall(normalize(message))


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(r"(?<![a-z0-9])" + re.escape(phrase) + r"(?![a-z0-9])", text) is not None


def _match_term(text: str, toks: Sequence[str], term: str) -> bool:
    if " " in term:
        return _contains_phrase(text, term)
    return term in toks


def _inside_phrase(term: str, others: Sequence[str]) -> bool:
    return any(o != term and " " in o and f" {term} " in f" {o} " for o in others)


class KeywordScorer:
    """Stateless; one instance can be shared."""

    def __init__(self, patterns: Optional[Dict[Intent, Tuple[TermGroup, ...]]] = None):
        self._patterns = patterns or PATTERNS

    def score(self, message: str, context: ClassificationContext = ClassificationContext.GENERAL) -> IntentResult:
        text = normalize(message)
        toks = _TOKEN.findall(text)
        suppressed = (
            context in (ClassificationContext.VERIFICATION, ClassificationContext.MEDICATION)
            and self.is_general_inquiry(text)
        )
        expected = CONTEXT_INTENTS.get(context, ())

        best = IntentResult(intent=Intent.OTHER, confidence=0.0, source=ClassificationSource.KEYWORD)
        for intent, groups in self._patterns.items():
            total, matched = self._raw_score(text, toks, groups)
            if total <= 0:
                continue
            confidence = min(total / SCORE_SCALE, 1.0)
            if intent in expected:
                confidence *= CONTEXT_BONUS
            if suppressed:
                confidence *= GENERAL_INQUIRY_PENALTY
            confidence = min(confidence, 1.0)
            if confidence > best.confidence:
                best = IntentResult(
                    intent=intent,
                    confidence=confidence,
                    matched_words=matched,
                    source=ClassificationSource.KEYWORD,
                )
        return best

    def matches(self, message: str, intent: Intent) -> List[str]:
        text = normalize(message)
        _, matched = self._raw_score(text, _TOKEN.findall(text), self._patterns.get(intent, ()))
        return matched

    def conflicting(self, message: str, first: Intent, second: Intent) -> bool:
        """Both intents matched on their own words.

        A word that only appears inside a phrase matched for the other intent
        ("mau" in "tidak mau", "selesai" in "belum selesai") does not count.
        """
        a, b = self.matches(message, first), self.matches(message, second)
        own_a = [t for t in a if not _inside_phrase(t, b)]
        own_b = [t for t in b if not _inside_phrase(t, a)]
        return bool(own_a) and bool(own_b)

    @staticmethod
    def _raw_score(text: str, toks: Sequence[str], groups: Sequence[TermGroup]) -> Tuple[float, List[str]]:
        total = 0.0
        matched: List[str] = []
        for group in groups:
            for term in group.terms:
                if term in matched or not _match_term(text, toks, term):
                    continue
                total += group.weight * (PHRASE_BONUS if " " in term else 1.0)
                matched.append(term)
        return total, matched

    # ── Heuristics ──

    @staticmethod
    def is_general_inquiry(message: str) -> bool:
        text = normalize(message)
        if "?" in text:
            return True
        toks = _TOKEN.findall(text)
        return any(_match_term(text, toks, term) for term in GENERAL_INQUIRY_TERMS)

    @classmethod
    def is_actual_verification_response(cls, message: str) -> bool:
        """Short explicit YA/TIDAK-style answer, not a question or greeting."""
        toks = tokens(message)
        if not toks or len(toks) > MAX_VERIFICATION_WORDS:
            return False
        if cls.is_general_inquiry(message):
            return False
        return any(t in VERIFICATION_ACCEPT_TOKENS or t in VERIFICATION_DECLINE_TOKENS for t in toks)

    @staticmethod
    def detect_emergency(message: str) -> List[str]:
        text = normalize(message)
        toks = _TOKEN.findall(text)
        return [term for term in EMERGENCY_TERMS if _match_term(text, toks, term)]
