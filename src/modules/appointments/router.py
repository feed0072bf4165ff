"""Appointments API routes."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database import get_db
from src.core.deps import get_current_actor, require_admin
from src.modules.appointments.schemas import (
    AdminStatusUpdate,
    AppointmentCreate,
    AppointmentPublic,
    RescheduleRequest,
    StatusChange,
    TransitionResult,
)
from src.modules.appointments.service import AppointmentLifecycleService
from src.shared.enums import AppointmentStatus
from src.shared.schemas import Actor

router = APIRouter(prefix="/api/v1/appointments", tags=["appointments"])
admin_router = APIRouter(prefix="/api/v1/admin/appointments", tags=["admin-appointments"])


def get_service(db: AsyncSession = Depends(get_db)) -> AppointmentLifecycleService:
    return AppointmentLifecycleService(db)


async def _result(service: AppointmentLifecycleService, appointment_id: str, actor: Actor) -> TransitionResult:
    appointment = await service.get(appointment_id, actor)
    return TransitionResult(
        appointment_id=appointment.appointment_id,
        status=appointment.status,
        version=appointment.version,
    )


@router.post("", response_model=AppointmentPublic, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    payload: AppointmentCreate,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentLifecycleService = Depends(get_service),
) -> AppointmentPublic:
    appointment = await service.book_appointment(payload, actor)
    return service.to_public(appointment, actor)


@router.get("/me", response_model=list[AppointmentPublic])
async def my_appointments(
    actor: Actor = Depends(get_current_actor),
    service: AppointmentLifecycleService = Depends(get_service),
) -> list[AppointmentPublic]:
    items = await service.list_for_actor(actor)
    return [service.to_public(item, actor) for item in items]


@router.get("/{appointment_id}", response_model=AppointmentPublic)
async def get_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentLifecycleService = Depends(get_service),
) -> AppointmentPublic:
    appointment = await service.get(appointment_id, actor)
    return service.to_public(appointment, actor)


@router.post("/{appointment_id}/confirm", response_model=TransitionResult)
async def confirm_appointment(
    appointment_id: str,
    payload: StatusChange | None = None,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentLifecycleService = Depends(get_service),
) -> TransitionResult:
    await service.confirm(appointment_id, actor, payload.version if payload else None)
    return await _result(service, appointment_id, actor)


@router.post("/{appointment_id}/complete", response_model=TransitionResult)
async def complete_appointment(
    appointment_id: str,
    payload: StatusChange | None = None,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentLifecycleService = Depends(get_service),
) -> TransitionResult:
    await service.complete(appointment_id, actor, payload.version if payload else None)
    return await _result(service, appointment_id, actor)


@router.post("/{appointment_id}/cancel", response_model=TransitionResult)
async def cancel_appointment(
    appointment_id: str,
    payload: StatusChange | None = None,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentLifecycleService = Depends(get_service),
) -> TransitionResult:
    await service.cancel(appointment_id, actor, payload.version if payload else None)
    return await _result(service, appointment_id, actor)


@router.post("/{appointment_id}/reschedule", response_model=TransitionResult)
async def reschedule_appointment(
    appointment_id: str,
    payload: RescheduleRequest,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentLifecycleService = Depends(get_service),
) -> TransitionResult:
    await service.reschedule(
        appointment_id,
        actor,
        scheduled_at=payload.scheduled_at,
        location=payload.location,
        expected_version=payload.version,
    )
    return await _result(service, appointment_id, actor)


@router.post("/{appointment_id}/rebook", response_model=TransitionResult)
async def rebook_appointment(
    appointment_id: str,
    payload: StatusChange | None = None,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentLifecycleService = Depends(get_service),
) -> TransitionResult:
    await service.rebook(appointment_id, actor, payload.version if payload else None)
    return await _result(service, appointment_id, actor)


@admin_router.put("/{appointment_id}/status", response_model=TransitionResult)
async def admin_update_status(
    appointment_id: str,
    payload: AdminStatusUpdate,
    actor: Actor = Depends(require_admin),
    service: AppointmentLifecycleService = Depends(get_service),
) -> TransitionResult:
    target: AppointmentStatus = payload.status
    await service.transition(appointment_id, target, actor, payload.version)
    return await _result(service, appointment_id, actor)
