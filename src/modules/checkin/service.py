"""Front-desk views over appointments and completed check-ins."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.modules.appointments.models import Appointment
from src.modules.checkin.models import SagaAttempt
from src.modules.checkin.schemas import CheckedInPatient, CheckInRequest
from src.shared.enums import AppointmentStatus, SagaState

AWAITING_ARRIVAL = (AppointmentStatus.BOOKED, AppointmentStatus.CONFIRMED)


class FrontDeskService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.tz = ZoneInfo(settings.default_timezone)

    async def pending_check_ins(self, day: date | None = None) -> list[Appointment]:
        """Booked or confirmed appointments on ``day`` that have no paid check-in yet."""
        start, end = self._day_window(day)
        paid = select(SagaAttempt.appointment_id).where(
            SagaAttempt.state == SagaState.PAID,
            SagaAttempt.appointment_id.is_not(None),
        )
        stmt = (
            select(Appointment)
            .where(
                Appointment.status.in_(AWAITING_ARRIVAL),
                Appointment.scheduled_at >= start,
                Appointment.scheduled_at < end,
                Appointment.appointment_id.not_in(paid),
            )
            .order_by(Appointment.scheduled_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def checked_in_patients(self, day: date | None = None) -> list[CheckedInPatient]:
        """Patients whose check-in and payment both went through, newest first.

        Without ``day`` every paid check-in is returned.
        """
        result = await self.db.execute(
            select(SagaAttempt)
            .where(SagaAttempt.state == SagaState.PAID)
            .order_by(SagaAttempt.created_at.desc())
        )
        patients = [self._checked_in(attempt) for attempt in result.scalars().all()]
        if day is None:
            return patients
        return [patient for patient in patients if patient.check_in_time.astimezone(self.tz).date() == day]

    def _day_window(self, day: date | None) -> tuple[datetime, datetime]:
        day = day or datetime.now(self.tz).date()
        start = datetime.combine(day, time.min, tzinfo=self.tz)
        return start, start + timedelta(days=1)

    @staticmethod
    def _checked_in(attempt: SagaAttempt) -> CheckedInPatient:
        request = CheckInRequest.model_validate(attempt.request_payload)
        return CheckedInPatient(
            idempotency_key=attempt.idempotency_key,
            patient_id=attempt.patient_id,
            appointment_id=attempt.appointment_id,
            check_in_id=attempt.check_in_id,
            payment_id=attempt.payment_id,
            check_in_time=request.check_in_time,
            department=request.department,
            reason_for_visit=request.reason_for_visit,
            amount=request.amount,
            payment_method=request.payment_method,
        )
