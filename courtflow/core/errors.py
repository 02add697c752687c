"""
Domain exceptions for the reservation/payment flow.

Services raise these; the API layer turns them into JSON error responses via
``flow_error_handler``. Each carries a user-facing message, a stable code and
optional details (e.g. field-level validation messages).
"""

from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class FlowError(Exception):
    status_code: int = 500

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "details": self.details}


class SlotUnavailable(FlowError):
    """The backend refused the hold: another session already claimed the slot."""
    status_code = 409


class HoldNotFound(FlowError):
    status_code = 404


class HoldExpired(FlowError):
    status_code = 410


class CustomerInfoInvalid(FlowError):
    status_code = 422


class UnsupportedPaymentMethod(FlowError):
    status_code = 400


class SubmissionRejected(FlowError):
    """Backend rejected booking creation. The message is the backend's, verbatim."""
    status_code = 400


class ConfirmInProgress(FlowError):
    status_code = 409


class DispatchFailed(FlowError):
    """Provider checkout creation failed; the booking is kept for a retry."""
    status_code = 502


class BookingNotFound(FlowError):
    status_code = 404


class BackendUnavailable(FlowError):
    status_code = 503


class BackendError(RuntimeError):
    """Transport or HTTP-level failure talking to the backend booking API."""

    def __init__(self, message: str, status_code: int | None = None, payload: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


async def flow_error_handler(request: Request, exc: FlowError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})
