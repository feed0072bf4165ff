"""Front-desk check-in routes."""

from datetime import date

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database import get_db
from src.core.deps import require_admin, require_front_desk
from src.modules.appointments.router import get_service
from src.modules.appointments.schemas import AppointmentPublic
from src.modules.appointments.service import AppointmentLifecycleService
from src.modules.checkin.clients import HttpCheckInStore, HttpPaymentProcessor, build_notification_emitter
from src.modules.checkin.coordinator import (
    CheckInCoordinator,
    list_open_reconciliation_items,
    resolve_reconciliation_item,
)
from src.modules.checkin.schemas import (
    CheckedInPatient,
    CheckInRequest,
    ReconciliationItemPublic,
    SagaAttemptPublic,
    SagaResult,
)
from src.modules.checkin.service import FrontDeskService
from src.shared.schemas import Actor, ResponseEnvelope

router = APIRouter(prefix="/api/v1/staff/check-ins", tags=["check-ins"])
admin_router = APIRouter(prefix="/api/v1/admin", tags=["admin-check-ins"])
front_desk_router = APIRouter(prefix="/api/v1/staff", tags=["front-desk"])


def get_coordinator(db: AsyncSession = Depends(get_db)) -> CheckInCoordinator:
    return CheckInCoordinator(
        db,
        check_ins=HttpCheckInStore(),
        payments=HttpPaymentProcessor(),
        notifier=build_notification_emitter(),
    )


def get_front_desk(db: AsyncSession = Depends(get_db)) -> FrontDeskService:
    return FrontDeskService(db)


@router.post("", response_model=ResponseEnvelope[SagaResult], status_code=status.HTTP_201_CREATED)
async def check_in_and_pay(
    payload: CheckInRequest,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    _: Actor = Depends(require_front_desk),
    coordinator: CheckInCoordinator = Depends(get_coordinator),
) -> ResponseEnvelope[SagaResult]:
    result = await coordinator.run(payload, idempotency_key)
    return ResponseEnvelope(data=result, message="Patient checked in and payment recorded")


@router.get("/{idempotency_key}", response_model=SagaAttemptPublic)
async def get_check_in_attempt(
    idempotency_key: str,
    _: Actor = Depends(require_front_desk),
    coordinator: CheckInCoordinator = Depends(get_coordinator),
) -> SagaAttemptPublic:
    attempt = await coordinator.get_attempt(idempotency_key)
    return SagaAttemptPublic.model_validate(attempt)


@front_desk_router.get("/pending-check-ins", response_model=list[AppointmentPublic])
async def pending_check_ins(
    on: date | None = Query(None, description="Day to list, in the hospital time zone; defaults to today"),
    actor: Actor = Depends(require_front_desk),
    front_desk: FrontDeskService = Depends(get_front_desk),
    appointments: AppointmentLifecycleService = Depends(get_service),
) -> list[AppointmentPublic]:
    items = await front_desk.pending_check_ins(on)
    return [appointments.to_public(item, actor) for item in items]


@front_desk_router.get("/checked-in-patients", response_model=list[CheckedInPatient])
async def checked_in_patients(
    on: date | None = Query(None),
    _: Actor = Depends(require_front_desk),
    front_desk: FrontDeskService = Depends(get_front_desk),
) -> list[CheckedInPatient]:
    return await front_desk.checked_in_patients(on)


@admin_router.post("/check-ins/{idempotency_key}/resume", response_model=ResponseEnvelope[SagaResult])
async def resume_check_in(
    idempotency_key: str,
    _: Actor = Depends(require_admin),
    coordinator: CheckInCoordinator = Depends(get_coordinator),
) -> ResponseEnvelope[SagaResult]:
    result = await coordinator.resume(idempotency_key)
    return ResponseEnvelope(data=result)


@admin_router.get("/reconciliation", response_model=list[ReconciliationItemPublic])
async def list_reconciliation_items(
    _: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[ReconciliationItemPublic]:
    items = await list_open_reconciliation_items(db)
    return [ReconciliationItemPublic.model_validate(item) for item in items]


@admin_router.post("/reconciliation/{item_id}/resolve", response_model=ReconciliationItemPublic)
async def resolve_reconciliation(
    item_id: str,
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> ReconciliationItemPublic:
    item = await resolve_reconciliation_item(db, item_id, actor.user_id)
    return ReconciliationItemPublic.model_validate(item)
