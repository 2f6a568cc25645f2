from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


DEFAULT_USER_MESSAGES = {
    "VALIDATION_ERROR": "Please check the information you entered.",
    "RECORD_NOT_FOUND": "The requested record could not be found.",
    "RENTAL_NOT_FOUND": "The rental could not be found.",
    "GAME_ALREADY_RENTED": "This game is already rented out.",
    "INVALID_OPERATION": "This action is not allowed.",
    "NOT_FOUND": "The requested API endpoint does not exist.",
    "METHOD_NOT_ALLOWED": "This action is not supported for the requested resource.",
    "HTTP_ERROR": "The request could not be processed.",
    "SERVICE_UNAVAILABLE": "The service is temporarily unavailable.",
    "INTERNAL_ERROR": "A server error occurred.",
}


class RentalServiceError(Exception):
    """Base class for errors raised by the rental and catalog services.

    Each error knows the HTTP status it maps to and renders itself into the
    ``{"error": {...}}`` envelope returned by the API.
    """

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        user_message: str | None = None,
        details: dict[str, Any] | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        if code:
            self.code = code
        self.message = message
        self.user_message = user_message or DEFAULT_USER_MESSAGES.get(self.code, DEFAULT_USER_MESSAGES["INTERNAL_ERROR"])
        self.details = details
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_payload(self) -> dict:
        body = {
            "code": self.code,
            "message": self.message,
            "userMessage": self.user_message,
            "timestamp": self.timestamp,
        }
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ValidationError(RentalServiceError):
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: str | None = None, value: Any = None, **kwargs) -> None:
        details = kwargs.pop("details", None)
        if details is None and field:
            details = {"field": field, "value": value}
        super().__init__(message, details=details, **kwargs)


class NotFoundError(RentalServiceError):
    code = "RECORD_NOT_FOUND"
    status_code = 404

    @classmethod
    def for_record(cls, resource: str, record_id: int | None = None) -> "NotFoundError":
        suffix = f" with id: {record_id}" if record_id is not None else ""
        code = "RENTAL_NOT_FOUND" if resource == "Rental" else None
        return cls(f"{resource} not found{suffix}", code=code)


class ConflictError(RentalServiceError):
    code = "GAME_ALREADY_RENTED"
    status_code = 409


class InvalidOperationError(RentalServiceError):
    code = "INVALID_OPERATION"
    status_code = 400
