"""Error taxonomy of the lending ledger.

Every failure the core reports to its callers is one of these classes, so
adapters can map them to precise responses (the HTTP adapter uses
``http_status``; the CLI prints the message).
"""

from typing import Optional


class LendingError(Exception):
    code = "LENDING_ERROR"
    http_status = 400

    def __init__(self, message: str, *, details: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": self.code, "detail": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(LendingError):
    code = "NOT_FOUND"
    http_status = 404


class InvalidTransition(LendingError):
    code = "INVALID_TRANSITION"
    http_status = 409


class AlreadyProcessed(InvalidTransition):
    code = "ALREADY_PROCESSED"


class OutOfStock(LendingError):
    code = "OUT_OF_STOCK"
    http_status = 409


class Unauthorized(LendingError):
    code = "UNAUTHORIZED"
    http_status = 403


class NotEligible(Unauthorized):
    """The account may not perform this action right now (fines, restriction, status)."""

    code = "NOT_ELIGIBLE"


class DuplicateRequest(LendingError):
    code = "DUPLICATE_REQUEST"
    http_status = 409


class DuplicateActiveRequest(DuplicateRequest):
    code = "DUPLICATE_ACTIVE_REQUEST"


class ValidationError(LendingError):
    code = "VALIDATION_ERROR"
    http_status = 422


class ExternalServiceError(LendingError):
    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502
