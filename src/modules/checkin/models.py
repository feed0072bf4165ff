"""ORM models for the check-in and payment saga."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Enum, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database import Base
from src.shared.enums import SagaState, enum_values
from src.shared.models import TimestampMixin, utcnow
from src.shared.ulid import ULID_LENGTH, generate_ulid


class SagaAttempt(Base, TimestampMixin):
    """Durable progress record for one check-in-and-payment run.

    Only ``CheckInCoordinator`` writes these rows. ``lease_owner`` and
    ``lease_expires_at`` mark the key's execution lane as taken.
    """

    __tablename__ = "saga_attempts"
    __table_args__ = (
        Index("ix_saga_attempts_patient_state", "patient_id", "state"),
        Index("ix_saga_attempts_appointment", "appointment_id"),
    )

    idempotency_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    appointment_id: Mapped[str | None] = mapped_column(String(ULID_LENGTH))
    request_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    request_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    check_in_id: Mapped[str | None] = mapped_column(String(64))
    payment_id: Mapped[str | None] = mapped_column(String(64))
    state: Mapped[SagaState] = mapped_column(
        Enum(
            SagaState,
            values_callable=enum_values,
            validate_strings=True,
            name="sagastate",
        ),
        nullable=False,
        default=SagaState.STARTED,
    )
    last_error: Mapped[str | None] = mapped_column(Text)
    lease_owner: Mapped[str | None] = mapped_column(String(ULID_LENGTH))
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ReconciliationItem(Base):
    """A saga that could not be rolled back and needs an operator."""

    __tablename__ = "reconciliation_items"
    __table_args__ = (Index("ix_reconciliation_items_resolved", "resolved"),)

    item_id: Mapped[str] = mapped_column(String(ULID_LENGTH), primary_key=True, default=generate_ulid)
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    check_in_id: Mapped[str | None] = mapped_column(String(64))
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolved_by: Mapped[str | None] = mapped_column(String(64))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
