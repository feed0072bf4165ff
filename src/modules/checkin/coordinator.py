"""Front-desk check-in and payment saga.

Registering the patient's arrival and capturing the visit payment are two
calls to independent services with no shared transaction. The coordinator
runs them in order (check-in first, payment second), persists progress on a
``SagaAttempt`` row after every step, and voids the check-in when the payment
cannot be captured. The idempotency key is both the de-duplication token sent
to the external services and the primary key of the attempt, so a retried
request resumes where the previous one stopped instead of repeating work.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import NoReturn

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.exceptions import (
    CompensationFailed,
    NotFound,
    RemoteCallError,
    SagaInProgress,
    StepFailed,
    ValidationError,
)
from src.modules.appointments.models import Appointment
from src.modules.appointments.store import appointment_lock
from src.modules.checkin.clients import CheckInStore, NotificationEmitter, PaymentProcessor
from src.modules.checkin.models import ReconciliationItem, SagaAttempt
from src.modules.checkin.schemas import (
    DEFAULT_PAYMENT_DESCRIPTION,
    CheckIn,
    CheckInRequest,
    Payment,
    SagaResult,
)
from src.shared.enums import PaymentStatus, SagaState
from src.shared.models import as_utc, utcnow
from src.shared.ulid import generate_ulid

logger = structlog.get_logger(__name__)

MAX_KEY_LENGTH = 64

_LANES: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()


@asynccontextmanager
async def _exclusive_lane(key: str) -> AsyncIterator[None]:
    lock = _LANES.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _LANES[key] = lock
    if lock.locked():
        raise SagaInProgress()
    async with lock:
        yield


class CheckInCoordinator:
    def __init__(
        self,
        db: AsyncSession,
        check_ins: CheckInStore,
        payments: PaymentProcessor,
        notifier: NotificationEmitter,
        *,
        checkin_timeout: float | None = None,
        payment_timeout: float | None = None,
        payment_supports_idempotency: bool | None = None,
        notify_timeout: float | None = None,
    ):
        self.db = db
        self.check_ins = check_ins
        self.payments = payments
        self.notifier = notifier
        self.checkin_timeout = checkin_timeout or settings.checkin_timeout_seconds
        self.payment_timeout = payment_timeout or settings.payment_timeout_seconds
        if payment_supports_idempotency is None:
            payment_supports_idempotency = settings.payment_supports_idempotency
        self.payment_supports_idempotency = payment_supports_idempotency
        self.notify_timeout = notify_timeout or settings.notify_timeout_seconds
        self.owner = generate_ulid()

    async def run(self, request: CheckInRequest, idempotency_key: str | None = None) -> SagaResult:
        """Check the patient in and capture the payment as one logical unit.

        Raises:
            ValidationError: the request is incomplete; nothing was done.
            SagaInProgress: another call holds this idempotency key.
            StepFailed: a step failed and no partial state remains.
            CompensationFailed: partial state remains and has been queued for
                manual reconciliation.
        """
        self._validate(request)
        key = (idempotency_key or "").strip() or generate_ulid()
        if len(key) > MAX_KEY_LENGTH:
            raise ValidationError("Idempotency key is too long", field="idempotency_key")

        log = logger.bind(idempotency_key=key, patient_id=request.patient_id)
        async with _exclusive_lane(key):
            attempt, created = await self._claim(key, request)
            if attempt.state.is_resolved:
                log.info("saga_replayed", state=attempt.state.value)
                return await self._replay(attempt)
            try:
                return await self._drive(attempt, request, resumed=not created)
            finally:
                await self._release(key)

    async def resume(self, idempotency_key: str) -> SagaResult:
        """Re-drive an attempt from its stored request (operator action)."""
        attempt = await self.get_attempt(idempotency_key)
        request = CheckInRequest.model_validate(attempt.request_payload)
        return await self.run(request, idempotency_key)

    async def get_attempt(self, idempotency_key: str) -> SagaAttempt:
        attempt = await self.db.get(SagaAttempt, idempotency_key, populate_existing=True)
        if attempt is None:
            raise NotFound("Check-in attempt not found")
        return attempt

    @staticmethod
    def _validate(request: CheckInRequest) -> None:
        missing = [
            name
            for name in ("patient_id", "department", "reason_for_visit")
            if not getattr(request, name).strip()
        ]
        for name in ("check_in_time", "amount", "payment_method"):
            if getattr(request, name) is None:
                missing.append(name)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", field=missing[0])
        if request.amount <= 0:
            raise ValidationError("Amount must be greater than zero", field="amount")

    async def _claim(self, key: str, request: CheckInRequest) -> tuple[SagaAttempt, bool]:
        """Load or create the attempt and take its lease; return (attempt, created)."""
        fingerprint = request.fingerprint()
        now = utcnow()
        lease_until = now + timedelta(seconds=settings.saga_lease_seconds)

        attempt = await self.db.get(SagaAttempt, key, populate_existing=True)
        if attempt is None:
            if request.appointment_id is None:
                return await self._start(key, request, lease_until), True
            # Cancellation checks for in-flight attempts under the same lock.
            async with appointment_lock(request.appointment_id):
                await self._ensure_appointment_open(request.appointment_id)
                return await self._start(key, request, lease_until), True

        if attempt.request_fingerprint != fingerprint:
            raise ValidationError(
                "This idempotency key was already used for a different check-in request",
                field="idempotency_key",
            )
        if attempt.state.is_resolved:
            return attempt, False

        stmt = (
            update(SagaAttempt)
            .where(
                SagaAttempt.idempotency_key == key,
                or_(SagaAttempt.lease_owner.is_(None), SagaAttempt.lease_expires_at < now),
            )
            .values(lease_owner=self.owner, lease_expires_at=lease_until)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            await self.db.rollback()
            raise SagaInProgress()
        await self.db.commit()
        await self.db.refresh(attempt)
        logger.info("saga_resumed", idempotency_key=key, state=attempt.state.value)
        return attempt, False

    async def _start(self, key: str, request: CheckInRequest, lease_until: datetime) -> SagaAttempt:
        attempt = SagaAttempt(
            idempotency_key=key,
            patient_id=request.patient_id,
            appointment_id=request.appointment_id,
            request_payload=request.model_dump(mode="json"),
            request_fingerprint=request.fingerprint(),
            state=SagaState.STARTED,
            lease_owner=self.owner,
            lease_expires_at=lease_until,
        )
        self.db.add(attempt)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise SagaInProgress() from exc
        logger.info("saga_started", idempotency_key=key, patient_id=request.patient_id)
        return attempt

    async def _ensure_appointment_open(self, appointment_id: str) -> None:
        appointment = await self.db.get(Appointment, appointment_id, populate_existing=True)
        if appointment is None:
            raise ValidationError("Appointment not found", field="appointment_id")
        if appointment.status.is_terminal:
            raise ValidationError(
                f"Cannot check in against a {appointment.status.value} appointment",
                field="appointment_id",
            )

    async def _release(self, key: str) -> None:
        await self.db.execute(
            update(SagaAttempt)
            .where(SagaAttempt.idempotency_key == key, SagaAttempt.lease_owner == self.owner)
            .values(lease_owner=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _drive(self, attempt: SagaAttempt, request: CheckInRequest, resumed: bool) -> SagaResult:
        if attempt.state == SagaState.STARTED:
            await self._check_in(attempt, request, resumed)
            resumed = False
        return await self._pay(attempt, request, resumed)

    async def _check_in(self, attempt: SagaAttempt, request: CheckInRequest, resumed: bool) -> None:
        key = attempt.idempotency_key
        check_in: CheckIn | None = None
        if resumed:
            check_in = await self._lookup_check_in(attempt)

        if check_in is None:
            logger.info("saga_step_started", idempotency_key=key, step="check_in")
            try:
                check_in = await asyncio.wait_for(
                    self.check_ins.create(
                        request.patient_id,
                        request.check_in_time,
                        request.department.strip(),
                        request.reason_for_visit.strip(),
                        key,
                    ),
                    timeout=self.checkin_timeout,
                )
            except (RemoteCallError, TimeoutError) as exc:
                reason = _describe(exc, "check-in store")
                logger.warning("saga_step_failed", idempotency_key=key, step="check_in", reason=reason)
                # The create may have landed even though we saw an error.
                check_in = await self._lookup_check_in(attempt)
                if check_in is None:
                    await self._mark(attempt, SagaState.FAILED, reason)
                    await self._notify("checkin.failed", attempt)
                    raise StepFailed("check_in", reason) from exc

        attempt.check_in_id = check_in.id
        await self._mark(attempt, SagaState.CHECKED_IN)
        logger.info("saga_checked_in", idempotency_key=key, check_in_id=check_in.id)

    async def _lookup_check_in(self, attempt: SagaAttempt) -> CheckIn | None:
        try:
            return await asyncio.wait_for(
                self.check_ins.find_by_reference(attempt.idempotency_key),
                timeout=self.checkin_timeout,
            )
        except (RemoteCallError, TimeoutError) as exc:
            # The check-in may exist; a fresh key could create a second one.
            await self._fail_for_reconciliation(
                attempt, "check-in outcome unknown: " + _describe(exc, "check-in store")
            )

    async def _pay(self, attempt: SagaAttempt, request: CheckInRequest, resumed: bool) -> SagaResult:
        key = attempt.idempotency_key
        payment: Payment | None = None
        reason = "payment was not captured"
        if resumed:
            payment = await self._reconcile_payment(attempt, request)

        if payment is None:
            logger.info("saga_step_started", idempotency_key=key, step="payment")
            try:
                captured = await asyncio.wait_for(
                    self.payments.capture(
                        request.patient_id,
                        request.amount,
                        request.payment_method,
                        request.description or DEFAULT_PAYMENT_DESCRIPTION,
                        key,
                        attempt.check_in_id,
                    ),
                    timeout=self.payment_timeout,
                )
            except (RemoteCallError, TimeoutError) as exc:
                reason = _describe(exc, "payment processor")
                logger.warning("saga_step_failed", idempotency_key=key, step="payment", reason=reason)
                payment = await self._reconcile_payment(attempt, request)
            else:
                if captured.status == PaymentStatus.FAILED:
                    reason = "payment was declined"
                    logger.warning("saga_step_failed", idempotency_key=key, step="payment", reason=reason)
                else:
                    payment = captured

        if payment is None:
            await self._compensate(attempt, reason)

        attempt.payment_id = payment.id
        await self._mark(attempt, SagaState.PAID)
        logger.info("saga_paid", idempotency_key=key, check_in_id=attempt.check_in_id, payment_id=payment.id)
        await self._notify("checkin.paid", attempt)
        return await self._replay(attempt)

    async def _reconcile_payment(self, attempt: SagaAttempt, request: CheckInRequest) -> Payment | None:
        """Find a payment that was captured for this attempt despite an error.

        Raises CompensationFailed when the processor cannot be asked, since
        voiding the check-in without knowing whether money moved is unsafe.
        """
        try:
            if self.payment_supports_idempotency:
                payment = await asyncio.wait_for(
                    self.payments.find_by_idempotency_key(attempt.idempotency_key),
                    timeout=self.payment_timeout,
                )
                candidates = [payment] if payment is not None else []
            else:
                since = as_utc(attempt.created_at) - timedelta(minutes=settings.payment_reconcile_window_minutes)
                recent = await asyncio.wait_for(
                    self.payments.list_recent(attempt.patient_id, since),
                    timeout=self.payment_timeout,
                )
                candidates = [
                    payment
                    for payment in recent
                    if payment.amount == request.amount
                    and payment.payment_method == request.payment_method
                    and (payment.check_in_id == attempt.check_in_id or payment.reference == attempt.idempotency_key)
                ]
        except (RemoteCallError, TimeoutError) as exc:
            await self._fail_for_reconciliation(
                attempt, "payment outcome unknown: " + _describe(exc, "payment processor")
            )

        for payment in candidates:
            if payment.status != PaymentStatus.FAILED:
                logger.info(
                    "saga_payment_reconciled",
                    idempotency_key=attempt.idempotency_key,
                    payment_id=payment.id,
                )
                return payment
        return None

    async def _compensate(self, attempt: SagaAttempt, reason: str) -> NoReturn:
        key = attempt.idempotency_key
        logger.info("saga_compensating", idempotency_key=key, check_in_id=attempt.check_in_id)
        try:
            await asyncio.wait_for(self.check_ins.void(attempt.check_in_id), timeout=self.checkin_timeout)
        except (RemoteCallError, TimeoutError) as exc:
            await self._fail_for_reconciliation(
                attempt,
                f"{reason}; voiding check-in {attempt.check_in_id} failed: {_describe(exc, 'check-in store')}",
            )

        await self._mark(attempt, SagaState.COMPENSATED, reason)
        logger.info("saga_compensated", idempotency_key=key, check_in_id=attempt.check_in_id)
        await self._notify("checkin.compensated", attempt)
        raise StepFailed("payment", reason, compensated=True)

    async def _fail_for_reconciliation(self, attempt: SagaAttempt, reason: str) -> NoReturn:
        await self._queue_for_reconciliation(attempt, reason)
        await self._mark(attempt, SagaState.FAILED, reason)
        await self._notify("checkin.needs_reconciliation", attempt)
        raise CompensationFailed(attempt.idempotency_key, attempt.check_in_id, reason)

    async def _queue_for_reconciliation(self, attempt: SagaAttempt, reason: str) -> None:
        self.db.add(
            ReconciliationItem(
                idempotency_key=attempt.idempotency_key,
                patient_id=attempt.patient_id,
                check_in_id=attempt.check_in_id,
                reason=reason,
            )
        )
        logger.error(
            "saga_compensation_failed",
            idempotency_key=attempt.idempotency_key,
            patient_id=attempt.patient_id,
            check_in_id=attempt.check_in_id,
            reason=reason,
        )

    async def _mark(self, attempt: SagaAttempt, state: SagaState, error: str | None = None) -> None:
        attempt.state = state
        if error is not None:
            attempt.last_error = error
        await self.db.commit()

    async def _notify(self, event: str, attempt: SagaAttempt) -> None:
        payload = {
            "idempotency_key": attempt.idempotency_key,
            "patient_id": attempt.patient_id,
            "appointment_id": attempt.appointment_id,
            "state": attempt.state.value,
        }
        try:
            await asyncio.wait_for(self.notifier.emit(event, payload), timeout=self.notify_timeout)
        except Exception as exc:  # noqa: BLE001 - notifications never affect the saga
            logger.warning("notification_failed", notification=event, error=_describe(exc, "notifications"))

    async def _replay(self, attempt: SagaAttempt) -> SagaResult:
        if attempt.state == SagaState.PAID:
            return SagaResult(
                idempotency_key=attempt.idempotency_key,
                check_in_id=attempt.check_in_id,
                payment_id=attempt.payment_id,
            )
        reason = attempt.last_error or "previous attempt failed"
        if attempt.state == SagaState.COMPENSATED:
            raise StepFailed("payment", reason, compensated=True)
        if attempt.check_in_id is None and not await self._needs_reconciliation(attempt.idempotency_key):
            raise StepFailed("check_in", reason)
        raise CompensationFailed(attempt.idempotency_key, attempt.check_in_id, reason)

    async def _needs_reconciliation(self, idempotency_key: str) -> bool:
        result = await self.db.execute(
            select(ReconciliationItem.item_id)
            .where(ReconciliationItem.idempotency_key == idempotency_key)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None


async def list_open_reconciliation_items(db: AsyncSession) -> list[ReconciliationItem]:
    result = await db.execute(
        select(ReconciliationItem)
        .where(ReconciliationItem.resolved.is_(False))
        .order_by(ReconciliationItem.created_at)
    )
    return list(result.scalars().all())


async def resolve_reconciliation_item(db: AsyncSession, item_id: str, resolved_by: str) -> ReconciliationItem:
    item = await db.get(ReconciliationItem, item_id)
    if item is None:
        raise NotFound("Reconciliation item not found")
    if not item.resolved:
        item.resolved = True
        item.resolved_by = resolved_by
        item.resolved_at = utcnow()
        await db.commit()
        logger.info("reconciliation_item_resolved", item_id=item_id, resolved_by=resolved_by)
    return item


def _describe(exc: BaseException, service: str) -> str:
    if isinstance(exc, TimeoutError):
        return f"{service} timed out"
    return str(exc)
