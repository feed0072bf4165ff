"""Appointment ORM models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database import Base
from src.shared.enums import AppointmentStatus, UserRole, enum_values
from src.shared.models import TimestampMixin, utcnow
from src.shared.ulid import ULID_LENGTH, generate_ulid


def _status_enum() -> Enum:
    return Enum(
        AppointmentStatus,
        values_callable=enum_values,
        validate_strings=True,
        name="appointmentstatus",
    )


def _role_enum() -> Enum:
    return Enum(
        UserRole,
        values_callable=enum_values,
        validate_strings=True,
        name="userrole",
    )


class Appointment(Base, TimestampMixin):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_doctor_scheduled", "doctor_id", "scheduled_at"),
        Index("ix_appointments_patient", "patient_id"),
    )

    appointment_id: Mapped[str] = mapped_column(String(ULID_LENGTH), primary_key=True, default=generate_ulid)
    # Patients and doctors live in the profile service; only their ids are stored.
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    doctor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    location: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[AppointmentStatus] = mapped_column(
        _status_enum(),
        nullable=False,
        default=AppointmentStatus.BOOKED,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    booked_by_user_id: Mapped[str | None] = mapped_column(String(64))
    booked_by_role: Mapped[UserRole] = mapped_column(_role_enum(), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)

    events: Mapped[list[AppointmentStatusEvent]] = relationship(
        back_populates="appointment",
        cascade="all,delete-orphan",
        order_by="AppointmentStatusEvent.version",
    )


class AppointmentStatusEvent(Base):
    """Append-only record of every status write."""

    __tablename__ = "appointment_status_events"
    __table_args__ = (Index("ix_status_events_appointment_version", "appointment_id", "version", unique=True),)

    event_id: Mapped[str] = mapped_column(String(ULID_LENGTH), primary_key=True, default=generate_ulid)
    appointment_id: Mapped[str] = mapped_column(
        String(ULID_LENGTH),
        ForeignKey("appointments.appointment_id", ondelete="CASCADE"),
        nullable=False,
    )
    from_status: Mapped[AppointmentStatus | None] = mapped_column(_status_enum())
    to_status: Mapped[AppointmentStatus] = mapped_column(_status_enum(), nullable=False)
    actor_role: Mapped[UserRole] = mapped_column(_role_enum(), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(64))
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    appointment: Mapped[Appointment] = relationship(back_populates="events")
