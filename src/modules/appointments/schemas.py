"""Appointments schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from src.shared.enums import AppointmentStatus, UserRole


class AppointmentPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    appointment_id: str = Field(serialization_alias="id")
    patient_id: str
    doctor_id: str
    scheduled_at: datetime
    location: str | None = None
    status: AppointmentStatus
    version: int
    booked_by_role: UserRole
    notes: str | None = None
    available_actions: list[AppointmentStatus] = Field(default_factory=list)


class AppointmentCreate(BaseModel):
    patient_id: str | None = None
    doctor_id: str = Field(..., min_length=1)
    scheduled_at: datetime
    location: str | None = None
    notes: str | None = None


class StatusChange(BaseModel):
    """Body for role actions; ``version`` pins the write to what the client saw."""

    version: int | None = Field(None, ge=1)


class RescheduleRequest(StatusChange):
    scheduled_at: datetime | None = None
    location: str | None = None


class AdminStatusUpdate(StatusChange):
    status: AppointmentStatus


class TransitionResult(BaseModel):
    appointment_id: str = Field(serialization_alias="id")
    status: AppointmentStatus
    version: int
