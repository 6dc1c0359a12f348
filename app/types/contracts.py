"""Pydantic models that define the contract between the webhook surface,
the classification cascade, the response handlers and the outbound queue.

These classes are intentionally framework-agnostic so they can be reused by
workers, API responses, and tests without pulling in FastAPI or database
layers.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Union
from typing_extensions import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# ──────────────────────────────
# Lifecycle enums
# ──────────────────────────────


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class ConfirmationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    CONFIRMED = "CONFIRMED"
    MISSED = "MISSED"
    FAILED = "FAILED"


# Reminder states that still wait for the patient's answer
AWAITING_CONFIRMATION = (ConfirmationStatus.PENDING, ConfirmationStatus.SENT)


class DeliveryStatus(str, Enum):
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class Intent(str, Enum):
    """Closed set of patient intents. Declaration order breaks score ties."""

    ACCEPT = "accept"
    DECLINE = "decline"
    UNSUBSCRIBE = "unsubscribe"
    MEDICATION_TAKEN = "medication_taken"
    MEDICATION_PENDING = "medication_pending"
    NEED_HELP = "need_help"
    OTHER = "other"


class ClassificationSource(str, Enum):
    KEYWORD = "keyword"
    LLM = "llm"
    FALLBACK = "fallback"


class ClassificationContext(str, Enum):
    VERIFICATION = "verification"
    MEDICATION = "medication"
    GENERAL = "general"


class InteractionType(str, Enum):
    EMERGENCY = "emergency"
    UNSUBSCRIBE = "unsubscribe"
    VERIFICATION = "verification"
    MEDICATION_REMINDER = "medication_reminder"
    GENERAL_INQUIRY = "general_inquiry"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


# Lower score sorts first
PRIORITY_SCORES: Dict[Priority, int] = {
    Priority.URGENT: 1,
    Priority.HIGH: 2,
    Priority.MEDIUM: 3,
    Priority.LOW: 4,
}


class MessageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ──────────────────────────────
# Inbound webhook payloads
# ──────────────────────────────

# Gateway-specific field names, first present wins
_INBOUND_ALIASES: Dict[str, tuple[str, ...]] = {
    "sender": ("sender", "phone", "from", "number", "wa_number"),
    "message": ("message", "text", "body"),
    "device": ("device", "gateway", "instance"),
    "name": ("name", "sender_name", "contact_name"),
    "id": ("id", "message_id", "msgId"),
    "timestamp": ("timestamp", "time", "created_at"),
}

_STATUS_ALIASES: Dict[str, tuple[str, ...]] = {
    "id": ("id", "message_id", "msgId"),
    "status": ("status", "state"),
    "reason": ("reason",),
    "timestamp": ("timestamp", "time", "updated_at"),
}


def _pick(raw: Dict[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        value = raw.get(name)
        if value not in (None, ""):
            return value
    return None


def _normalize(raw: Any, aliases: Dict[str, tuple[str, ...]], as_text: tuple[str, ...]) -> Any:
    if not isinstance(raw, dict):
        return raw
    out: Dict[str, Any] = {}
    for field, names in aliases.items():
        value = _pick(raw, names)
        if value is not None and field in as_text and not isinstance(value, str):
            value = str(value)
        out[field] = value
    return out


class InboundEvent(BaseModel):
    """A patient message as delivered by the messaging gateway.

    Ephemeral: only its idempotency fingerprint outlives the request.
    """

    sender: str = Field(min_length=6)
    message: str = Field(min_length=1)
    device: Optional[str] = None
    name: Optional[str] = None
    id: Optional[str] = None
    timestamp: Optional[Union[str, int, float]] = None

    @model_validator(mode="before")
    @classmethod
    def _from_gateway_fields(cls, data: Any) -> Any:
        return _normalize(data, _INBOUND_ALIASES, ("sender", "message", "id", "device", "name"))

    @field_validator("sender", "message")
    def _strip(cls, v: str):  # noqa: N805
        return v.strip()


class StatusCallback(BaseModel):
    """Delivery receipt for a previously sent outbound message."""

    id: str = Field(min_length=1)
    status: Optional[str] = None
    reason: Optional[str] = None
    timestamp: Optional[Union[str, int, float]] = None

    @model_validator(mode="before")
    @classmethod
    def _from_gateway_fields(cls, data: Any) -> Any:
        return _normalize(data, _STATUS_ALIASES, ("id", "status", "reason"))


class WebhookResponse(BaseModel):
    """Envelope returned by every webhook endpoint."""

    ok: bool
    duplicate: Optional[bool] = None
    ignored: Optional[bool] = None
    processed: Optional[bool] = None
    action: Optional[str] = None
    source: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    emergency_detected: Optional[bool] = Field(default=None, serialization_alias="emergencyDetected")
    escalated: Optional[bool] = None

    def body(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, by_alias=True)


# ──────────────────────────────
# Classification
# ──────────────────────────────


Confidence = Annotated[float, Field(ge=0.0, le=1.0)]


class IntentResult(BaseModel):
    intent: Intent = Intent.OTHER
    confidence: Confidence = 0.0
    matched_words: List[str] = Field(default_factory=list)
    source: ClassificationSource = ClassificationSource.FALLBACK
    entities: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def fallback(cls) -> "IntentResult":
        return cls(intent=Intent.OTHER, confidence=0.0, source=ClassificationSource.FALLBACK)

    @property
    def is_unclear(self) -> bool:
        return self.intent == Intent.OTHER


# ──────────────────────────────
# Handler results
# ──────────────────────────────


class HandlerMetadata(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    processing_time_ms: int = 0
    source: str
    action: str
    patient_id: Optional[str] = None
    emergency_detected: Optional[bool] = None
    escalated: Optional[bool] = None


class HandlerResult(BaseModel):
    """Uniform result shape returned by every response handler."""

    success: bool
    message: str
    metadata: HandlerMetadata
    error: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ──────────────────────────────
# Outbound gateway
# ──────────────────────────────


class SendResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
