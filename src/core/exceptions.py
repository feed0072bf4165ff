"""Domain error taxonomy and the FastAPI handlers that render it."""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class BusinessLogicError(Exception):
    """Base class for every typed error the service layer raises.

    ``code`` is a stable machine-readable identifier the dashboards switch on;
    ``retryable`` tells the caller whether resubmitting the same request can
    succeed without changing it first.
    """

    code = "business_error"
    retryable = False

    def __init__(self, detail: str, status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY):
        self.detail = detail
        self.status_code = status_code
        super().__init__(detail)


class ValidationError(BusinessLogicError):
    """Bad input; nothing was written and no remote call was made."""

    code = "validation_error"

    def __init__(self, detail: str, field: str | None = None):
        self.field = field
        super().__init__(detail, status.HTTP_422_UNPROCESSABLE_ENTITY)


class NotFound(BusinessLogicError):
    code = "not_found"

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(detail, status.HTTP_404_NOT_FOUND)


class Forbidden(BusinessLogicError):
    code = "forbidden"

    def __init__(self, detail: str = "Forbidden"):
        super().__init__(detail, status.HTTP_403_FORBIDDEN)


class InvalidTransition(BusinessLogicError):
    """The requested status change is not an edge the acting role may take."""

    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str, role: str):
        self.from_status = from_status
        self.to_status = to_status
        self.role = role
        if from_status in {"completed", "cancelled"}:
            detail = f"This appointment is already {from_status}"
        else:
            detail = f"A {role} cannot move an appointment from {from_status} to {to_status}"
        super().__init__(detail, status.HTTP_409_CONFLICT)


class Conflict(BusinessLogicError):
    """The record changed since it was read; re-fetch and try again."""

    code = "conflict"
    retryable = True

    def __init__(self, appointment_id: str, expected_version: int | None = None, current_version: int | None = None):
        self.appointment_id = appointment_id
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            "This appointment was changed by someone else. Reload it and try again.",
            status.HTTP_409_CONFLICT,
        )


class SagaInProgress(BusinessLogicError):
    code = "saga_in_progress"
    retryable = True

    def __init__(self, detail: str = "This check-in is already being processed"):
        super().__init__(detail, status.HTTP_409_CONFLICT)


class StepFailed(BusinessLogicError):
    """A saga step failed and the visit was left in a clean state."""

    code = "step_failed"

    def __init__(self, step: str, reason: str, compensated: bool = False):
        self.step = step
        self.reason = reason
        self.compensated = compensated
        if step == "check_in":
            detail = f"Patient check-in failed: {reason}"
        else:
            detail = f"Payment failed and the check-in was cancelled: {reason}"
        super().__init__(detail, status.HTTP_502_BAD_GATEWAY)


class CompensationFailed(BusinessLogicError):
    """Payment failed and the check-in could not be rolled back.

    Queued for manual reconciliation; resubmitting is not safe.
    """

    code = "compensation_failed"

    def __init__(self, idempotency_key: str, check_in_id: str | None, reason: str):
        self.idempotency_key = idempotency_key
        self.check_in_id = check_in_id
        self.reason = reason
        if check_in_id is None:
            situation = "The check-in may have been recorded but could not be confirmed."
        else:
            situation = "The check-in was recorded but the payment could not be completed or rolled back."
        super().__init__(
            f"{situation} Do not resubmit; contact support with reference {idempotency_key}",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class RemoteCallError(Exception):
    """A call to an external collaborator failed or returned an unusable response."""

    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"{service}: {reason}")


def register_exception_handlers(app: FastAPI) -> None:
    """Attach shared exception handlers to the FastAPI app."""

    @app.exception_handler(BusinessLogicError)
    async def _business_error_handler(_: Request, exc: BusinessLogicError):
        return JSONResponse(
            {
                "success": False,
                "code": exc.code,
                "message": exc.detail,
                "retryable": exc.retryable,
            },
            status_code=exc.status_code,
        )
