# schemas/orders.py
# ============================================================================
# ECHOBEATS LANDING — ORDER & CHECKOUT SCHEMAS
# ============================================================================
# Domain models (Order, Subscriber) plus the request/response payloads of the
# checkout API. JSON uses camelCase keys; Python code uses snake_case.
# ============================================================================

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from errors import FieldError, ValidationError


EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Stripe charges these currencies in whole units (no minor unit).
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})

DEFAULT_CURRENCY = "usd"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Terminal orders never change again; only pending orders move forward."""
        return self is not OrderStatus.PENDING


# =============================================================================
# DOMAIN MODELS
# =============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Order(CamelModel):
    """A single checkout attempt. Frozen: updates go through model_copy."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    product_id: str
    product_name: str
    amount: Decimal
    currency: str = DEFAULT_CURRENCY
    customer_email: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    gateway_reference: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_authorized(self) -> bool:
        return bool(self.gateway_reference)

    def with_status(self, status: OrderStatus, gateway_reference: str) -> "Order":
        return self.model_copy(update={
            "status": status,
            "gateway_reference": gateway_reference,
            "updated_at": utc_now(),
        })


class Subscriber(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    email: str
    created_at: datetime = Field(default_factory=utc_now)


class Authorization(BaseModel):
    """What the processor hands back for a new payment attempt."""
    reference: str
    client_secret: str


class CheckoutResult(BaseModel):
    order_id: int
    client_secret: str
    gateway_reference: str


# =============================================================================
# REQUESTS
# =============================================================================

class SubscribeRequest(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True
    )

    email: str = Field(..., min_length=3, max_length=320, pattern=EMAIL_PATTERN)

    @field_validator("email")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.lower()


class CreatePaymentIntentRequest(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True
    )

    product_id: str = Field(..., min_length=1, max_length=100)
    product_name: str = Field(..., min_length=1, max_length=200)
    # Declared before amount so the amount validator can see it.
    currency: str = Field(default=DEFAULT_CURRENCY, pattern=r"^[A-Za-z]{3}$")
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    customer_email: Optional[str] = Field(default=None, max_length=320, pattern=EMAIL_PATTERN)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, v: str) -> str:
        return v.lower()

    @field_validator("amount")
    @classmethod
    def _whole_units_for_zero_decimal(cls, v: Decimal, info: ValidationInfo) -> Decimal:
        currency = info.data.get("currency")
        if currency in ZERO_DECIMAL_CURRENCIES and v != v.to_integral_value():
            raise ValueError(f"amount must be a whole number for currency '{currency}'")
        return v

    @field_validator("customer_email", mode="before")
    @classmethod
    def _blank_email_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class VerifyDomainRequest(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True
    )

    domain: str = Field(..., min_length=1, max_length=2048)


# =============================================================================
# RESPONSES
# =============================================================================

class PaymentIntentResponse(CamelModel):
    client_secret: str
    order_id: int


class SubscribeResponse(CamelModel):
    success: bool = True
    message: str = "Successfully subscribed to newsletter"
    subscriber_id: int


class VerifyDomainResponse(CamelModel):
    success: bool = True
    message: str
    domain: Optional[str] = None


class WebhookAck(CamelModel):
    received: bool = True


class StripeConfigResponse(CamelModel):
    enabled: bool
    publishable_key: Optional[str] = None


class HealthResponse(CamelModel):
    status: str
    version: str
    uptime_seconds: float
    storage_backend: str
    gateway_configured: bool


class ErrorResponse(CamelModel):
    success: bool = False
    message: str
    errors: Optional[List[FieldError]] = None


# =============================================================================
# HELPERS
# =============================================================================

def field_errors_from(exc: PydanticValidationError, skip_prefix: Sequence[str] = ()) -> List[FieldError]:
    """Flatten pydantic errors into one FieldError per violated field."""
    errors: List[FieldError] = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if str(part) not in skip_prefix]
        errors.append(FieldError(field=".".join(loc) or "body", message=err.get("msg", "Invalid value")))
    return errors


def parse_request(model: type, payload: Any) -> Any:
    """Validate a raw JSON payload, raising errors.ValidationError on failure."""
    if not isinstance(payload, dict):
        raise ValidationError.for_field("body", "Request body must be a JSON object")
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(field_errors_from(exc)) from exc


def order_to_json(order: Order) -> Dict[str, Any]:
    return order.model_dump(mode="json", by_alias=True)
