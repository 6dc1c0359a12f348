from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Patient(Base):
    __tablename__ = "patients"

    id:                       Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    phone_number:             Mapped[str] = mapped_column(String(32), unique=True, index=True)
    name:                     Mapped[str] = mapped_column(String(255))
    verification_status:      Mapped[str] = mapped_column(String(16), default="PENDING")
    is_active:                Mapped[bool] = mapped_column(Boolean, default=True)
    verification_sent_at:     Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    verification_response_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    verification_message:     Mapped[str | None] = mapped_column(Text)
    created_at:               Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at:               Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class Reminder(Base):
    __tablename__ = "reminders"

    id:                       Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    patient_id:               Mapped[str] = mapped_column(ForeignKey("patients.id"), index=True)
    message:                  Mapped[str] = mapped_column(Text, default="")
    medication_name:          Mapped[str | None] = mapped_column(String(255))
    confirmation_status:      Mapped[str] = mapped_column(String(16), default="PENDING")
    is_active:                Mapped[bool] = mapped_column(Boolean, default=True)
    sent_at:                  Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    confirmation_response:    Mapped[str | None] = mapped_column(Text)
    confirmation_response_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    needs_escalation:         Mapped[bool] = mapped_column(Boolean, default=False)
    gateway_message_id:       Mapped[str | None] = mapped_column(String(128), index=True)
    delivery_status:          Mapped[str | None] = mapped_column(String(16))
    created_at:               Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at:               Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class QueuedMessage(Base):
    __tablename__ = "queued_messages"

    id:                 Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    patient_id:         Mapped[str] = mapped_column(String(36), index=True)
    phone_number:       Mapped[str] = mapped_column(String(32))
    body:               Mapped[str] = mapped_column(Text)
    priority:           Mapped[str] = mapped_column(String(8), default="medium")
    priority_score:     Mapped[int] = mapped_column(Integer, default=3)
    message_type:       Mapped[str] = mapped_column(String(64), default="general")
    retry_count:        Mapped[int] = mapped_column(Integer, default=0)
    max_retries:        Mapped[int] = mapped_column(Integer, default=3)
    status:             Mapped[str] = mapped_column(String(16), default="pending")
    next_retry_at:      Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error:         Mapped[str | None] = mapped_column(Text)
    gateway_message_id: Mapped[str | None] = mapped_column(String(128))
    processed_at:       Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at:         Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at:         Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_queued_messages_dequeue", "status", "priority_score", "created_at"),
    )


class DistributedLock(Base):
    __tablename__ = "distributed_locks"

    lock_key:   Mapped[str] = mapped_column(String(255), primary_key=True)
    owner:      Mapped[str] = mapped_column(String(36))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class QueueStats(Base):
    __tablename__ = "message_queue_stats"

    name:              Mapped[str] = mapped_column(String(64), primary_key=True)
    total_processed:   Mapped[int] = mapped_column(Integer, default=0)
    total_failed:      Mapped[int] = mapped_column(Integer, default=0)
    avg_processing_ms: Mapped[float] = mapped_column(Float, default=0.0)
