"""Appointment lifecycle service layer."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.exceptions import Conflict, Forbidden, SagaInProgress, ValidationError
from src.modules.appointments import transitions
from src.modules.appointments.models import Appointment
from src.modules.appointments.schemas import AppointmentCreate, AppointmentPublic
from src.modules.appointments.store import AppointmentStore, ConcurrencyGuard
from src.modules.checkin.models import SagaAttempt
from src.shared.enums import AppointmentStatus, SagaState, UserRole
from src.shared.schemas import Actor

logger = structlog.get_logger(__name__)

BOOKING_ROLES = {UserRole.PATIENT, UserRole.STAFF, UserRole.ADMIN}
UNRESOLVED_SAGA_STATES = (SagaState.STARTED, SagaState.CHECKED_IN)


class AppointmentLifecycleService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = AppointmentStore(db)
        self.guard = ConcurrencyGuard(self.store)
        self.tz = ZoneInfo(settings.default_timezone)

    async def book_appointment(self, payload: AppointmentCreate, actor: Actor) -> Appointment:
        if actor.role not in BOOKING_ROLES:
            raise Forbidden(f"A {actor.role} cannot book appointments")

        if actor.role == UserRole.PATIENT:
            if payload.patient_id and payload.patient_id != actor.user_id:
                raise Forbidden("Patients can only book appointments for themselves")
            patient_id = actor.user_id
        else:
            if not payload.patient_id:
                raise ValidationError("patient_id is required", field="patient_id")
            patient_id = payload.patient_id

        appointment = Appointment(
            patient_id=patient_id,
            doctor_id=payload.doctor_id,
            scheduled_at=self._normalize_datetime(payload.scheduled_at),
            location=payload.location,
            status=AppointmentStatus.BOOKED,
            booked_by_user_id=actor.user_id,
            booked_by_role=actor.role,
            notes=payload.notes,
        )
        appointment = await self.store.create(appointment, actor)
        logger.info(
            "appointment_booked",
            appointment_id=appointment.appointment_id,
            patient_id=patient_id,
            actor_role=actor.role.value,
        )
        return appointment

    async def transition(
        self,
        appointment_id: str,
        target: AppointmentStatus,
        actor: Actor,
        expected_version: int | None = None,
        changes: dict[str, Any] | None = None,
    ) -> int:
        """Move an appointment to ``target`` and return the resulting version.

        With ``expected_version`` the write is pinned to it and a mismatch is
        surfaced as ``Conflict``. Without it, a lost race is retried against
        freshly loaded state a bounded number of times.
        """
        attempts = 1 if expected_version is not None else max(1, settings.conflict_retry_attempts)
        for attempt in range(1, attempts + 1):
            appointment, version = await self.store.load(appointment_id)
            self._ensure_can_act(appointment, actor)

            pinned = expected_version if expected_version is not None else version
            try:
                return await self.guard.with_lock(
                    appointment_id,
                    pinned,
                    lambda current: self._decide(current, target, actor),
                    actor,
                    changes,
                )
            except Conflict:
                if attempt == attempts:
                    raise
                logger.info("appointment_conflict_retry", appointment_id=appointment_id, attempt=attempt)
        raise Conflict(appointment_id, expected_version=expected_version)  # pragma: no cover

    async def confirm(self, appointment_id: str, actor: Actor, expected_version: int | None = None) -> int:
        return await self.transition(appointment_id, AppointmentStatus.CONFIRMED, actor, expected_version)

    async def complete(self, appointment_id: str, actor: Actor, expected_version: int | None = None) -> int:
        return await self.transition(appointment_id, AppointmentStatus.COMPLETED, actor, expected_version)

    async def cancel(self, appointment_id: str, actor: Actor, expected_version: int | None = None) -> int:
        return await self.transition(appointment_id, AppointmentStatus.CANCELLED, actor, expected_version)

    async def reschedule(
        self,
        appointment_id: str,
        actor: Actor,
        scheduled_at: datetime | None = None,
        location: str | None = None,
        expected_version: int | None = None,
    ) -> int:
        changes: dict[str, Any] = {}
        if scheduled_at is not None:
            changes["scheduled_at"] = self._normalize_datetime(scheduled_at)
        if location is not None:
            changes["location"] = location
        return await self.transition(
            appointment_id,
            AppointmentStatus.RESCHEDULED,
            actor,
            expected_version,
            changes or None,
        )

    async def rebook(self, appointment_id: str, actor: Actor, expected_version: int | None = None) -> int:
        return await self.transition(appointment_id, AppointmentStatus.BOOKED, actor, expected_version)

    async def get(self, appointment_id: str, actor: Actor) -> Appointment:
        appointment, _ = await self.store.load(appointment_id)
        self._ensure_can_act(appointment, actor)
        return appointment

    async def list_for_actor(self, actor: Actor) -> list[Appointment]:
        stmt = select(Appointment).order_by(Appointment.scheduled_at.desc())
        if actor.role == UserRole.PATIENT:
            stmt = stmt.where(Appointment.patient_id == actor.user_id)
        elif actor.role == UserRole.DOCTOR:
            stmt = stmt.where(Appointment.doctor_id == actor.user_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    def to_public(self, appointment: Appointment, actor: Actor) -> AppointmentPublic:
        public = AppointmentPublic.model_validate(appointment)
        public.available_actions = transitions.allowed_targets(appointment.status, actor.role)
        return public

    async def _decide(self, appointment: Appointment, target: AppointmentStatus, actor: Actor) -> AppointmentStatus:
        transitions.validate(appointment.status, target, actor.role)
        # Runs under the appointment lock, which the check-in coordinator also takes
        # before linking a new attempt to this appointment.
        if target == AppointmentStatus.CANCELLED and appointment.status != AppointmentStatus.CANCELLED:
            await self._ensure_no_saga_in_flight(appointment)
        return target

    @staticmethod
    def _ensure_can_act(appointment: Appointment, actor: Actor) -> None:
        if actor.role == UserRole.PATIENT and appointment.patient_id != actor.user_id:
            raise Forbidden("This appointment belongs to another patient")
        if actor.role == UserRole.DOCTOR and appointment.doctor_id != actor.user_id:
            raise Forbidden("This appointment is assigned to another doctor")

    async def _ensure_no_saga_in_flight(self, appointment: Appointment) -> None:
        stmt = select(SagaAttempt.idempotency_key).where(
            SagaAttempt.state.in_(UNRESOLVED_SAGA_STATES),
            or_(
                SagaAttempt.appointment_id == appointment.appointment_id,
                and_(
                    SagaAttempt.appointment_id.is_(None),
                    SagaAttempt.patient_id == appointment.patient_id,
                ),
            ),
        )
        result = await self.db.execute(stmt.limit(1))
        if result.scalar_one_or_none() is not None:
            raise SagaInProgress("Cannot cancel while the patient's check-in and payment are still being processed")

    def _normalize_datetime(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValidationError("Datetime must be timezone-aware", field="scheduled_at")
        return value.astimezone(self.tz)
