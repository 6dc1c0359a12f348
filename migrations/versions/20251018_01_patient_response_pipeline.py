"""patient response pipeline tables

Revision ID: 3f2c1a9d7e01
Revises:
Create Date: 2025-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f2c1a9d7e01'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Patients, reminders, outbound queue, lock leases and queue stats."""
    op.create_table(
        "patients",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("phone_number", sa.String(32), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("verification_status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("verification_sent_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("verification_response_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("verification_message", sa.Text()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_patients_phone_number", "patients", ["phone_number"], unique=True)

    op.create_table(
        "reminders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("patient_id", sa.String(36), sa.ForeignKey("patients.id"), nullable=False),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("medication_name", sa.String(255)),
        sa.Column("confirmation_status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("confirmation_response", sa.Text()),
        sa.Column("confirmation_response_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("needs_escalation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("gateway_message_id", sa.String(128)),
        sa.Column("delivery_status", sa.String(16)),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_reminders_patient_id", "reminders", ["patient_id"])
    op.create_index("ix_reminders_gateway_message_id", "reminders", ["gateway_message_id"])

    op.create_table(
        "queued_messages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("patient_id", sa.String(36), nullable=False),
        sa.Column("phone_number", sa.String(32), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("priority", sa.String(8), nullable=False, server_default="medium"),
        sa.Column("priority_score", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("message_type", sa.String(64), nullable=False, server_default="general"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("next_retry_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("last_error", sa.Text()),
        sa.Column("gateway_message_id", sa.String(128)),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_queued_messages_patient_id", "queued_messages", ["patient_id"])
    op.create_index(
        "ix_queued_messages_dequeue", "queued_messages", ["status", "priority_score", "created_at"]
    )

    op.create_table(
        "distributed_locks",
        sa.Column("lock_key", sa.String(255), primary_key=True),
        sa.Column("owner", sa.String(36), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_distributed_locks_expires_at", "distributed_locks", ["expires_at"])

    op.create_table(
        "message_queue_stats",
        sa.Column("name", sa.String(64), primary_key=True),
        sa.Column("total_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_processing_ms", sa.Float(), nullable=False, server_default="0"),
    )


def downgrade() -> None:
    op.drop_table("message_queue_stats")
    op.drop_index("ix_distributed_locks_expires_at", table_name="distributed_locks")
    op.drop_table("distributed_locks")
    op.drop_index("ix_queued_messages_dequeue", table_name="queued_messages")
    op.drop_index("ix_queued_messages_patient_id", table_name="queued_messages")
    op.drop_table("queued_messages")
    op.drop_index("ix_reminders_gateway_message_id", table_name="reminders")
    op.drop_index("ix_reminders_patient_id", table_name="reminders")
    op.drop_table("reminders")
    op.drop_index("ix_patients_phone_number", table_name="patients")
    op.drop_table("patients")
