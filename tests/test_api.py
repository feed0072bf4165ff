import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from main import create_app
from src.core.database import get_db
from src.core.security import create_access_token
from src.modules.checkin.coordinator import CheckInCoordinator
from src.modules.checkin.router import get_coordinator
from src.shared.enums import UserRole
from tests.fakes import network_error


def _auth(user_id: str, role: UserRole) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, role.value)}"}


PATIENT = _auth("P7", UserRole.PATIENT)
NURSE = _auth("N1", UserRole.NURSE)
STAFF = _auth("S1", UserRole.STAFF)
ADMIN = _auth("A1", UserRole.ADMIN)

CHECK_IN_FORM = {
    "patient_id": "P7",
    "check_in_time": "2026-10-19T08:45:00Z",
    "department": "Cardiology",
    "reason_for_visit": "Follow-up after stress test",
    "amount": "1500",
    "payment_method": "credit_card",
}


@pytest_asyncio.fixture
async def client(db_session, check_in_store, payment_processor, notifier):
    app = create_app()

    async def override_db():
        yield db_session

    def override_coordinator():
        return CheckInCoordinator(db_session, check_in_store, payment_processor, notifier)

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_coordinator] = override_coordinator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


async def _book(client: AsyncClient) -> dict:
    resp = await client.post(
        "/api/v1/appointments",
        json={"doctor_id": "D1", "scheduled_at": "2026-11-02T09:30:00Z", "location": "Room 4"},
        headers=PATIENT,
    )
    assert resp.status_code == 201
    return resp.json()


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.json() == {"status": "ok"}
    assert "X-Process-Time" in resp.headers


@pytest.mark.asyncio
async def test_book_and_walk_the_lifecycle(client):
    booked = await _book(client)
    assert booked["status"] == "booked"
    assert booked["version"] == 1
    assert booked["patient_id"] == "P7"
    assert booked["available_actions"] == ["cancelled", "rescheduled"]

    confirm = await client.post(f"/api/v1/appointments/{booked['id']}/confirm", json={"version": 1}, headers=NURSE)
    confirm.raise_for_status()
    assert confirm.json() == {"id": booked["id"], "status": "confirmed", "version": 2}

    mine = await client.get("/api/v1/appointments/me", headers=PATIENT)
    assert [item["status"] for item in mine.json()] == ["confirmed"]


@pytest.mark.asyncio
async def test_errors_use_the_shared_envelope(client):
    booked = await _book(client)
    url = f"/api/v1/appointments/{booked['id']}"

    (await client.post(f"{url}/cancel", headers=STAFF)).raise_for_status()

    terminal = await client.post(f"{url}/confirm", headers=NURSE)
    assert terminal.status_code == 409
    assert terminal.json() == {
        "success": False,
        "code": "invalid_transition",
        "message": "This appointment is already cancelled",
        "retryable": False,
    }

    stale = await client.put(
        f"/api/v1/admin/appointments/{booked['id']}/status",
        json={"status": "booked", "version": 1},
        headers=ADMIN,
    )
    assert stale.status_code == 409
    assert stale.json()["code"] == "conflict"
    assert stale.json()["retryable"] is True

    missing = await client.get("/api/v1/appointments/01NOSUCHAPPOINTMENT0000000", headers=PATIENT)
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_admin_status_endpoint_requires_admin(client):
    booked = await _book(client)
    resp = await client.put(
        f"/api/v1/admin/appointments/{booked['id']}/status",
        json={"status": "confirmed"},
        headers=STAFF,
    )
    assert resp.status_code == 403

    resp = await client.put(
        f"/api/v1/admin/appointments/{booked['id']}/status",
        json={"status": "confirmed"},
        headers=ADMIN,
    )
    assert resp.json()["version"] == 2


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(client):
    resp = await client.get("/api/v1/appointments/me")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_check_in_is_replayed_for_the_same_key(client, check_in_store, payment_processor):
    headers = {**STAFF, "Idempotency-Key": "visit-1"}
    first = await client.post("/api/v1/staff/check-ins", json=CHECK_IN_FORM, headers=headers)
    second = await client.post("/api/v1/staff/check-ins", json=CHECK_IN_FORM, headers=headers)

    assert first.status_code == 201
    assert first.json()["success"] is True
    assert second.json()["data"] == first.json()["data"]
    assert payment_processor.capture_calls == 1
    assert check_in_store.create_calls == 1

    attempt = await client.get("/api/v1/staff/check-ins/visit-1", headers=STAFF)
    assert attempt.json()["state"] == "paid"


@pytest.mark.asyncio
async def test_check_in_errors(client, payment_processor):
    invalid = await client.post(
        "/api/v1/staff/check-ins",
        json={**CHECK_IN_FORM, "department": ""},
        headers={**STAFF, "Idempotency-Key": "visit-2"},
    )
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "validation_error"

    payment_processor.decline = True
    declined = await client.post(
        "/api/v1/staff/check-ins",
        json=CHECK_IN_FORM,
        headers={**STAFF, "Idempotency-Key": "visit-3"},
    )
    assert declined.status_code == 502
    assert declined.json()["code"] == "step_failed"

    forbidden = await client.post("/api/v1/staff/check-ins", json=CHECK_IN_FORM, headers=PATIENT)
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_reconciliation_queue(client, check_in_store, payment_processor):
    payment_processor.decline = True
    check_in_store.void_error = network_error("check-in store")
    failed = await client.post(
        "/api/v1/staff/check-ins",
        json=CHECK_IN_FORM,
        headers={**STAFF, "Idempotency-Key": "visit-4"},
    )
    assert failed.status_code == 500
    assert failed.json()["code"] == "compensation_failed"

    queue = await client.get("/api/v1/admin/reconciliation", headers=ADMIN)
    [item] = queue.json()
    assert item["idempotency_key"] == "visit-4"

    resolved = await client.post(f"/api/v1/admin/reconciliation/{item['id']}/resolve", headers=ADMIN)
    assert resolved.json()["resolved"] is True
    assert (await client.get("/api/v1/admin/reconciliation", headers=ADMIN)).json() == []


@pytest.mark.asyncio
async def test_front_desk_lists_follow_check_ins(client):
    booked = await _book(client)

    pending = await client.get("/api/v1/staff/pending-check-ins", params={"on": "2026-11-02"}, headers=STAFF)
    assert [item["id"] for item in pending.json()] == [booked["id"]]
    assert pending.json()[0]["available_actions"] == ["confirmed", "cancelled"]

    done = await client.post(
        "/api/v1/staff/check-ins",
        json={**CHECK_IN_FORM, "appointment_id": booked["id"]},
        headers={**STAFF, "Idempotency-Key": "visit-5"},
    )
    assert done.status_code == 201

    pending = await client.get("/api/v1/staff/pending-check-ins", params={"on": "2026-11-02"}, headers=STAFF)
    assert pending.json() == []
    arrived = await client.get("/api/v1/staff/checked-in-patients", headers=STAFF)
    [entry] = arrived.json()
    assert entry["appointment_id"] == booked["id"]
    assert entry["department"] == "Cardiology"

    forbidden = await client.get("/api/v1/staff/checked-in-patients", headers=PATIENT)
    assert forbidden.status_code == 403
