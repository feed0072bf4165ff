from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from src.core.exceptions import StepFailed
from src.modules.appointments.schemas import AppointmentCreate
from src.modules.appointments.service import AppointmentLifecycleService
from src.modules.checkin.schemas import CheckInRequest
from src.modules.checkin.service import FrontDeskService
from src.shared.enums import PaymentMethod

CLINIC_DAY = date(2026, 11, 2)


async def _book(service: AppointmentLifecycleService, actor, at: datetime, patient_id: str = "P7"):
    payload = AppointmentCreate(patient_id=patient_id, doctor_id="D1", scheduled_at=at, location="Room 4")
    return await service.book_appointment(payload, actor)


def _request(appointment_id: str | None = None, patient_id: str = "P7", **overrides) -> CheckInRequest:
    values = {
        "patient_id": patient_id,
        "check_in_time": datetime(2026, 11, 2, 9, 10, tzinfo=timezone.utc),
        "department": "Cardiology",
        "reason_for_visit": "Follow-up",
        "amount": Decimal("1500"),
        "payment_method": PaymentMethod.CASH,
        "appointment_id": appointment_id,
    }
    values.update(overrides)
    return CheckInRequest(**values)


@pytest.mark.asyncio
async def test_pending_lists_the_days_open_appointments_not_yet_paid(db_session, coordinator, staff, nurse):
    appointments = AppointmentLifecycleService(db_session)
    waiting = await _book(appointments, staff, datetime(2026, 11, 2, 11, 0, tzinfo=timezone.utc), "P8")
    confirmed = await _book(appointments, staff, datetime(2026, 11, 2, 8, 0, tzinfo=timezone.utc), "P9")
    await appointments.confirm(confirmed.appointment_id, nurse)
    arrived = await _book(appointments, staff, datetime(2026, 11, 2, 9, 30, tzinfo=timezone.utc))
    cancelled = await _book(appointments, staff, datetime(2026, 11, 2, 10, 0, tzinfo=timezone.utc), "P10")
    await appointments.cancel(cancelled.appointment_id, staff)
    await _book(appointments, staff, datetime(2026, 11, 3, 9, 0, tzinfo=timezone.utc), "P11")

    await coordinator.run(_request(arrived.appointment_id), "visit-1")

    pending = await FrontDeskService(db_session).pending_check_ins(CLINIC_DAY)

    assert [item.appointment_id for item in pending] == [confirmed.appointment_id, waiting.appointment_id]


@pytest.mark.asyncio
async def test_pending_keeps_appointments_whose_check_in_was_rolled_back(
    db_session, coordinator, payment_processor, staff
):
    appointments = AppointmentLifecycleService(db_session)
    booked = await _book(appointments, staff, datetime(2026, 11, 2, 9, 30, tzinfo=timezone.utc))
    payment_processor.decline = True

    with pytest.raises(StepFailed):
        await coordinator.run(_request(booked.appointment_id), "visit-2")

    pending = await FrontDeskService(db_session).pending_check_ins(CLINIC_DAY)
    assert [item.appointment_id for item in pending] == [booked.appointment_id]
    assert await FrontDeskService(db_session).checked_in_patients() == []


@pytest.mark.asyncio
async def test_checked_in_patients_come_from_paid_attempts(db_session, coordinator, payment_processor):
    await coordinator.run(_request(), "visit-3")
    await coordinator.run(
        _request(patient_id="P8", check_in_time=datetime(2026, 11, 3, 7, 55, tzinfo=timezone.utc)),
        "visit-4",
    )
    payment_processor.decline = True
    with pytest.raises(StepFailed):
        await coordinator.run(_request(patient_id="P9"), "visit-5")

    front_desk = FrontDeskService(db_session)
    everyone = await front_desk.checked_in_patients()
    assert {patient.idempotency_key for patient in everyone} == {"visit-3", "visit-4"}

    [today] = await front_desk.checked_in_patients(CLINIC_DAY)
    assert today.patient_id == "P7"
    assert today.department == "Cardiology"
    assert today.payment_method == PaymentMethod.CASH
    assert today.check_in_id and today.payment_id
