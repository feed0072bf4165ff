"""Appointment status transition rules.

Every surface that changes an appointment's status (patient edit/cancel, nurse
confirm/complete/cancel, doctor complete, staff front desk, admin override)
asks this table. Nothing here touches the database.
"""

from __future__ import annotations

from collections.abc import Mapping

from src.core.exceptions import InvalidTransition
from src.shared.enums import AppointmentStatus, UserRole

S = AppointmentStatus
R = UserRole

TRANSITIONS: Mapping[tuple[AppointmentStatus, AppointmentStatus], frozenset[UserRole]] = {
    (S.BOOKED, S.CONFIRMED): frozenset({R.NURSE, R.STAFF, R.ADMIN}),
    (S.BOOKED, S.CANCELLED): frozenset({R.PATIENT, R.NURSE, R.STAFF, R.ADMIN}),
    (S.BOOKED, S.RESCHEDULED): frozenset({R.PATIENT, R.ADMIN}),
    (S.CONFIRMED, S.COMPLETED): frozenset({R.NURSE, R.DOCTOR, R.ADMIN}),
    (S.CONFIRMED, S.CANCELLED): frozenset({R.NURSE, R.STAFF, R.ADMIN}),
    # Re-entry after the patient edits a rescheduled visit.
    (S.RESCHEDULED, S.BOOKED): frozenset({R.PATIENT, R.ADMIN}),
}


def is_allowed(current: AppointmentStatus, requested: AppointmentStatus, role: UserRole) -> bool:
    if current == requested:
        return True
    return role in TRANSITIONS.get((current, requested), frozenset())


def validate(current: AppointmentStatus, requested: AppointmentStatus, role: UserRole) -> None:
    """Raise InvalidTransition unless ``role`` may move ``current`` to ``requested``.

    Re-submitting the current status is accepted as a no-op.
    """
    if not is_allowed(current, requested, role):
        raise InvalidTransition(current.value, requested.value, role.value)


def allowed_targets(current: AppointmentStatus, role: UserRole) -> list[AppointmentStatus]:
    """Statuses ``role`` may move ``current`` to, in declaration order."""
    return [
        target
        for (source, target), roles in TRANSITIONS.items()
        if source == current and role in roles
    ]
