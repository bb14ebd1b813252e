from __future__ import annotations

from typing import Any


class RentalError(RuntimeError):
    """Base for every rejection the rental API reports to callers.

    Each subclass carries the HTTP status it maps to and a stable ``kind``
    string used as the ``error`` field of the response body.
    """

    status_code = 400
    kind = "RentalError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.kind, "detail": self.message}


class ValidationError(RentalError):
    status_code = 400
    kind = "ValidationError"

    def __init__(self, message: str, details: dict[str, str] | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class NotFound(RentalError):
    status_code = 404
    kind = "NotFound"


class InvalidTransition(RentalError):
    status_code = 409
    kind = "InvalidTransition"


class ActiveReservationConflict(InvalidTransition):
    kind = "ActiveReservationConflict"


class InsufficientStock(RentalError):
    status_code = 409
    kind = "InsufficientStock"

    def __init__(self, item_id: str, required: int, available: int, item_name: str | None = None):
        label = item_name or item_id
        super().__init__(f"Insufficient stock for {label}. Requested: {required}, Available: {available}.")
        self.item_id = item_id
        self.required = required
        self.available = available

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload.update(
            {
                "itemId": self.item_id,
                "required": self.required,
                "available": self.available,
            }
        )
        return payload


class Unauthorized(RentalError):
    status_code = 401
    kind = "Unauthorized"


class StorageFailure(RentalError):
    """The write batch failed in the store; the caller may retry."""

    status_code = 503
    kind = "StorageFailure"
