# Pipeline Agents
# ===============
# Payment gateway adapter and order lifecycle controller

from .payment_gateway import (
    PaymentGateway,
    StripeGateway,
    normalize_domain,
    to_minor_units,
)
from .order_lifecycle import (
    OrderLifecycleController,
    WebhookRouter,
)

__all__ = [
    # Payment Gateway
    "PaymentGateway",
    "StripeGateway",
    "normalize_domain",
    "to_minor_units",
    # Order Lifecycle
    "OrderLifecycleController",
    "WebhookRouter",
]
