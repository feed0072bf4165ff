"""Clients for the services the check-in saga coordinates.

The admission (check-in) records, payments and notifications are owned by
other services. The coordinator depends only on the protocols below; the
``Http*`` classes bind them to the hospital REST API.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

import httpx
import structlog
from fastapi import status
from pydantic import ValidationError as PydanticValidationError

from src.core.config import settings
from src.core.exceptions import RemoteCallError
from src.modules.checkin.schemas import CheckIn, Payment
from src.shared.enums import PaymentMethod

logger = structlog.get_logger(__name__)


class CheckInStore(Protocol):
    async def create(
        self,
        patient_id: str,
        check_in_time: datetime,
        department: str,
        reason_for_visit: str,
        reference: str,
    ) -> CheckIn:
        ...

    async def void(self, check_in_id: str) -> None:
        ...

    async def find_by_reference(self, reference: str) -> CheckIn | None:
        ...


class PaymentProcessor(Protocol):
    async def capture(
        self,
        patient_id: str,
        amount: Decimal,
        method: PaymentMethod,
        description: str,
        idempotency_key: str,
        check_in_id: str | None = None,
    ) -> Payment:
        ...

    async def find_by_idempotency_key(self, idempotency_key: str) -> Payment | None:
        ...

    async def list_recent(self, patient_id: str, since: datetime) -> list[Payment]:
        ...


class NotificationEmitter(Protocol):
    async def emit(self, event: str, payload: dict[str, Any]) -> None:
        ...


class _HttpService:
    service_name = "remote"

    def __init__(self, base_url: str, timeout: float, client: httpx.AsyncClient | None = None):
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    async def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        created_client = False
        client = self._client
        if client is None:
            client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
            created_client = True
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteCallError(self.service_name, f"request failed: {exc.__class__.__name__}") from exc
        finally:
            if created_client:
                await client.aclose()

        if response.status_code == status.HTTP_204_NO_CONTENT:
            return None
        if not response.is_success:
            raise RemoteCallError(self.service_name, f"unexpected status {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteCallError(self.service_name, "response was not valid JSON") from exc
        # The hospital API wraps some responses as {"data": ...}.
        if isinstance(payload, dict) and "data" in payload and "id" not in payload:
            return payload["data"]
        return payload

    def _parse(self, model: type[Any], payload: Any) -> Any:
        try:
            return model.model_validate(payload)
        except PydanticValidationError as exc:
            raise RemoteCallError(self.service_name, f"malformed {model.__name__} record") from exc


def _records(payload: Any) -> list[Any]:
    if payload is None:
        return []
    if isinstance(payload, dict):
        return [payload]
    return list(payload)


def _with_patient(record: Any, patient_id: str | None = None) -> Any:
    """Flatten the embedded ``patients`` object the staff API returns."""
    if not isinstance(record, dict):
        return record
    record = dict(record)
    patient = record.pop("patients", None)
    if "patient_id" not in record:
        if isinstance(patient, dict) and patient.get("id") is not None:
            record["patient_id"] = patient["id"]
        elif patient_id is not None:
            record["patient_id"] = patient_id
    return record


class HttpCheckInStore(_HttpService):
    """Check-ins through the staff API.

    ``POST /staff/check-in/{patient_id}`` answers
    ``{"message", "patient", "checkInRecord"}``. Lookups read the
    checked-in list filtered by ``reference`` and only trust records that
    echo it back.
    """

    service_name = "check-in store"

    def __init__(self, client: httpx.AsyncClient | None = None):
        super().__init__(settings.checkin_api_base, settings.checkin_timeout_seconds, client)

    async def create(
        self,
        patient_id: str,
        check_in_time: datetime,
        department: str,
        reason_for_visit: str,
        reference: str,
    ) -> CheckIn:
        payload = await self._send(
            "POST",
            f"/staff/check-in/{patient_id}",
            json={
                "check_in_time": check_in_time.isoformat(),
                "department": department,
                "reason_for_visit": reason_for_visit,
                "reference": reference,
            },
            headers={"Idempotency-Key": reference},
        )
        if isinstance(payload, dict) and "checkInRecord" in payload:
            payload = payload["checkInRecord"]
        record = _with_patient(payload, patient_id)
        if isinstance(record, dict):
            record.setdefault("reference", reference)
        return self._parse(CheckIn, record)

    async def void(self, check_in_id: str) -> None:
        await self._send("POST", f"/staff/check-ins/{check_in_id}/void")

    async def find_by_reference(self, reference: str) -> CheckIn | None:
        payload = await self._send("GET", "/staff/checked-in-patients", params={"reference": reference})
        for record in _records(payload):
            if isinstance(record, dict) and record.get("reference") == reference:
                return self._parse(CheckIn, _with_patient(record))
        return None


class HttpPaymentProcessor(_HttpService):
    """Payments through the staff and payment APIs.

    ``POST /staff/patients/{patient_id}/confirm-payment`` answers
    ``{"message", "payment"}``; the history endpoint lists a patient's
    payments with ``payment_status``.
    """

    service_name = "payment processor"

    def __init__(self, client: httpx.AsyncClient | None = None):
        super().__init__(settings.payment_api_base, settings.payment_timeout_seconds, client)

    async def capture(
        self,
        patient_id: str,
        amount: Decimal,
        method: PaymentMethod,
        description: str,
        idempotency_key: str,
        check_in_id: str | None = None,
    ) -> Payment:
        payload = await self._send(
            "POST",
            f"/staff/patients/{patient_id}/confirm-payment",
            json={
                "amount": str(amount),
                "payment_method": method.value,
                "description": description,
                "check_in_id": check_in_id,
                "reference": idempotency_key,
            },
            headers={"Idempotency-Key": idempotency_key},
        )
        if isinstance(payload, dict) and "payment" in payload:
            payload = payload["payment"]
        record = _with_patient(payload, patient_id)
        if isinstance(record, dict):
            record.setdefault("reference", idempotency_key)
            record.setdefault("check_in_id", check_in_id)
        return self._parse(Payment, record)

    async def find_by_idempotency_key(self, idempotency_key: str) -> Payment | None:
        payload = await self._send("GET", "/staff/payments", params={"reference": idempotency_key})
        for record in _records(payload):
            if isinstance(record, dict) and record.get("reference") == idempotency_key:
                return self._parse(Payment, _with_patient(record))
        return None

    async def list_recent(self, patient_id: str, since: datetime) -> list[Payment]:
        payload = await self._send("GET", f"/payments/payment-history/{patient_id}")
        payments = [self._parse(Payment, _with_patient(record, patient_id)) for record in _records(payload)]
        return [payment for payment in payments if (_paid_at(payment) or since) >= since]


def _paid_at(payment: Payment) -> datetime | None:
    moment = payment.payment_date or payment.created_at
    if moment is not None and moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class HttpNotificationEmitter(_HttpService):
    service_name = "notifications"

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None):
        super().__init__(base_url, settings.notify_timeout_seconds, client)

    async def emit(self, event: str, payload: dict[str, Any]) -> None:
        await self._send("POST", "/notifications/events", json={"event": event, "payload": payload})


class LogNotificationEmitter:
    """Used when no notification service is configured."""

    async def emit(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("notification_event", notification=event, **payload)


def build_notification_emitter() -> NotificationEmitter:
    if settings.notify_api_base:
        return HttpNotificationEmitter(settings.notify_api_base)
    return LogNotificationEmitter()
