"""Exceptions raised by the checkout and payment lifecycle."""

from typing import List, Optional

from pydantic import BaseModel


class FieldError(BaseModel):
    """A single violated request field."""
    field: str
    message: str


class CheckoutError(Exception):
    """Base exception for all checkout errors."""

    status_code: int = 500
    public_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.public_message
        super().__init__(self.message)


class ValidationError(CheckoutError):
    """Raised when a request is missing fields or has malformed values."""

    status_code = 400
    public_message = "Validation error"

    def __init__(self, errors: List[FieldError], message: Optional[str] = None):
        self.errors = list(errors)
        if message is None:
            details = "; ".join(f"{e.field}: {e.message}" for e in self.errors)
            message = f"Validation error: {details}" if details else self.public_message
        super().__init__(message)

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls([FieldError(field=field, message=message)])


class GatewayUnavailable(CheckoutError):
    """Raised when the payment processor is not configured."""

    status_code = 503
    public_message = "Payment processing is currently unavailable. Missing Stripe configuration."


class GatewayError(CheckoutError):
    """Raised when a call to the payment processor fails or times out."""

    status_code = 500
    public_message = "Payment processor request failed"

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class SignatureError(GatewayError):
    """Raised when a webhook signature is missing or does not match the body."""

    status_code = 400
    public_message = "Webhook signature verification failed"
