"""Payment error taxonomy, rendered to JSON by the handler in app.main."""
from __future__ import annotations

from pydantic import BaseModel


class FieldError(BaseModel):
    field: str
    message: str


class PaymentError(Exception):
    """Base for every error the payment core surfaces to callers."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message}


class ValidationError(PaymentError):
    """Malformed or out-of-range input; carries the offending fields."""

    status_code = 400

    def __init__(self, errors: list[FieldError], message: str = "Validation failed"):
        super().__init__(message)
        self.errors = list(errors)

    @property
    def fields(self) -> list[str]:
        return [e.field for e in self.errors]

    def to_dict(self) -> dict:
        return {"detail": self.message, "errors": [e.model_dump() for e in self.errors]}


class NotFound(PaymentError):
    status_code = 404


class InvalidState(PaymentError):
    status_code = 409


class MissingField(PaymentError):
    status_code = 400

    def __init__(self, field: str, message: str | None = None):
        super().__init__(message or f"{field} is required")
        self.field = field

    def to_dict(self) -> dict:
        return {"detail": self.message, "field": self.field}


class ConflictRetryable(PaymentError):
    """Concurrent write or receipt sequence collision; retry the transition."""

    status_code = 409

    def to_dict(self) -> dict:
        return {"detail": self.message, "retryable": True}


class StoreUnavailable(PaymentError):
    """Storage timed out or is unreachable; transient."""

    status_code = 503

    def to_dict(self) -> dict:
        return {"detail": self.message, "retryable": True}


class ConfigurationUnavailable(Exception):
    """Raised inside the configuration provider only; callers get defaults."""


class ReceiptNumberTaken(Exception):
    """The unique receipt index rejected a generated number."""

    def __init__(self, receipt_number: str):
        super().__init__(f"Receipt number {receipt_number} already issued")
        self.receipt_number = receipt_number
