"""Appointment lifecycle and check-in saga tables.

Revision ID: 0001_lifecycle_saga
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_lifecycle_saga"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = sa.Enum("patient", "doctor", "nurse", "staff", "admin", name="userrole")
appointment_status = sa.Enum(
    "booked", "confirmed", "completed", "cancelled", "rescheduled", name="appointmentstatus"
)
saga_state = sa.Enum("started", "checked_in", "paid", "compensated", "failed", name="sagastate")


def upgrade() -> None:
    op.create_table(
        "appointments",
        sa.Column("appointment_id", sa.String(length=26), primary_key=True),
        sa.Column("patient_id", sa.String(length=64), nullable=False),
        sa.Column("doctor_id", sa.String(length=64), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("location", sa.String(length=255)),
        sa.Column("status", appointment_status, nullable=False, server_default="booked"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("booked_by_user_id", sa.String(length=64)),
        sa.Column("booked_by_role", user_role, nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_appointments_doctor_scheduled", "appointments", ["doctor_id", "scheduled_at"])
    op.create_index("ix_appointments_patient", "appointments", ["patient_id"])

    op.create_table(
        "appointment_status_events",
        sa.Column("event_id", sa.String(length=26), primary_key=True),
        sa.Column(
            "appointment_id",
            sa.String(length=26),
            sa.ForeignKey("appointments.appointment_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_status", appointment_status),
        sa.Column("to_status", appointment_status, nullable=False),
        sa.Column("actor_role", user_role, nullable=False),
        sa.Column("actor_id", sa.String(length=64)),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_status_events_appointment_version",
        "appointment_status_events",
        ["appointment_id", "version"],
        unique=True,
    )

    op.create_table(
        "saga_attempts",
        sa.Column("idempotency_key", sa.String(length=64), primary_key=True),
        sa.Column("patient_id", sa.String(length=64), nullable=False),
        sa.Column("appointment_id", sa.String(length=26)),
        sa.Column("request_payload", sa.JSON(), nullable=False),
        sa.Column("request_fingerprint", sa.String(length=64), nullable=False),
        sa.Column("check_in_id", sa.String(length=64)),
        sa.Column("payment_id", sa.String(length=64)),
        sa.Column("state", saga_state, nullable=False, server_default="started"),
        sa.Column("last_error", sa.Text()),
        sa.Column("lease_owner", sa.String(length=26)),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_saga_attempts_patient_state", "saga_attempts", ["patient_id", "state"])
    op.create_index("ix_saga_attempts_appointment", "saga_attempts", ["appointment_id"])

    op.create_table(
        "reconciliation_items",
        sa.Column("item_id", sa.String(length=26), primary_key=True),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False),
        sa.Column("patient_id", sa.String(length=64), nullable=False),
        sa.Column("check_in_id", sa.String(length=64)),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_by", sa.String(length=64)),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_reconciliation_items_resolved", "reconciliation_items", ["resolved"])


def downgrade() -> None:
    op.drop_index("ix_reconciliation_items_resolved", table_name="reconciliation_items")
    op.drop_table("reconciliation_items")
    op.drop_index("ix_saga_attempts_appointment", table_name="saga_attempts")
    op.drop_index("ix_saga_attempts_patient_state", table_name="saga_attempts")
    op.drop_table("saga_attempts")
    op.drop_index("ix_status_events_appointment_version", table_name="appointment_status_events")
    op.drop_table("appointment_status_events")
    op.drop_index("ix_appointments_patient", table_name="appointments")
    op.drop_index("ix_appointments_doctor_scheduled", table_name="appointments")
    op.drop_table("appointments")
    saga_state.drop(op.get_bind(), checkfirst=True)
    appointment_status.drop(op.get_bind(), checkfirst=True)
    user_role.drop(op.get_bind(), checkfirst=True)
