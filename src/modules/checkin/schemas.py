"""Check-in saga schemas and the records exchanged with external services."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from decimal import Decimal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from src.shared.enums import CheckInStatus, PaymentMethod, PaymentStatus, SagaState

DEFAULT_PAYMENT_DESCRIPTION = "Payment for medical services"


class CheckInRequest(BaseModel):
    """The combined front-desk form.

    Required-ness and the amount rule are enforced by the coordinator so that a
    bad submission is reported as one typed ``ValidationError``.
    """

    patient_id: str = ""
    check_in_time: datetime | None = None
    department: str = ""
    reason_for_visit: str = ""
    amount: Decimal | None = None
    payment_method: PaymentMethod | None = None
    description: str | None = None
    appointment_id: str | None = None

    def fingerprint(self) -> str:
        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CheckIn(BaseModel):
    # The hospital API issues numeric ids.
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str
    patient_id: str
    check_in_time: datetime
    department: str
    reason_for_visit: str
    status: CheckInStatus = CheckInStatus.ACTIVE
    reference: str | None = None


class Payment(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str
    patient_id: str
    amount: Decimal
    payment_method: PaymentMethod
    status: PaymentStatus = Field(
        PaymentStatus.COMPLETED,
        validation_alias=AliasChoices("status", "payment_status"),
    )
    payment_date: datetime | None = None
    description: str | None = None
    reference: str | None = None
    check_in_id: str | None = None
    created_at: datetime | None = None


class SagaResult(BaseModel):
    idempotency_key: str
    check_in_id: str
    payment_id: str


class CheckedInPatient(BaseModel):
    idempotency_key: str
    patient_id: str
    appointment_id: str | None = None
    check_in_id: str
    payment_id: str
    check_in_time: datetime
    department: str
    reason_for_visit: str
    amount: Decimal
    payment_method: PaymentMethod


class SagaAttemptPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    idempotency_key: str
    patient_id: str
    appointment_id: str | None = None
    state: SagaState
    check_in_id: str | None = None
    payment_id: str | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime


class ReconciliationItemPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: str = Field(serialization_alias="id")
    idempotency_key: str
    patient_id: str
    check_in_id: str | None = None
    reason: str
    resolved: bool
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime
