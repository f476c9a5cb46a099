"""
Payment Gateway Adapter
=======================
Every call to Stripe goes through here, so the lifecycle controller never
touches processor-specific payloads.

- PaymentIntent creation (exact minor-unit conversion, timeout, no retry)
- Webhook signature verification over the raw request body
- Payment method domain registration for wallet payments (Apple Pay)

pip install stripe structlog
"""

import asyncio
import json
from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

import stripe
import structlog

from errors import GatewayError, GatewayUnavailable, SignatureError, ValidationError
from schemas.orders import ZERO_DECIMAL_CURRENCIES, Authorization

logger = structlog.get_logger(component="payment_gateway")

SIGNATURE_HEADER = "stripe-signature"


# =============================================================================
# PURE HELPERS
# =============================================================================

def to_minor_units(amount: Decimal, currency: str) -> int:
    """
    Convert a major-unit amount into the processor's integer minor units.

    >>> to_minor_units(Decimal("19.99"), "usd")
    1999
    >>> to_minor_units(Decimal("1500"), "jpy")
    1500
    """
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    if currency.lower() not in ZERO_DECIMAL_CURRENCIES:
        value = value * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_domain(value: Optional[str]) -> str:
    """
    Reduce a URL or host string to a bare hostname.

    Scheme, credentials, port, path, query and fragment are dropped and the
    host is lowercased. "localhost" is passed through as-is.
    """
    raw = (value or "").strip()
    if raw == "localhost":
        return raw
    if not raw:
        raise ValidationError.for_field("domain", "Domain is required")

    target = raw if "://" in raw else f"//{raw}"
    try:
        hostname = urlsplit(target).hostname or ""
    except ValueError:
        hostname = ""

    hostname = hostname.rstrip(".")
    if not hostname:
        raise ValidationError.for_field("domain", f"Could not determine a hostname from '{raw}'")
    return hostname


# =============================================================================
# INTERFACE
# =============================================================================

class PaymentGateway(ABC):
    """Narrow interface over the external payment processor"""

    @abstractmethod
    def is_configured(self) -> bool:
        pass

    @abstractmethod
    async def create_authorization(
        self, amount: Decimal, currency: str, metadata: Dict[str, str]
    ) -> Authorization:
        pass

    @abstractmethod
    def verify_and_parse_webhook(
        self, raw_body: bytes, signature_header: Optional[str], endpoint_secret: Optional[str]
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def register_domain(self, domain: str) -> Dict[str, str]:
        pass


# =============================================================================
# STRIPE IMPLEMENTATION
# =============================================================================

class StripeGateway(PaymentGateway):
    """
    Stripe-backed gateway.

    The secret key is passed per request instead of being set on the global
    `stripe.api_key`, so several gateways (and test doubles) can coexist.
    stripe-python is blocking; calls run in a worker thread under a timeout.

    Example:
        gateway = StripeGateway(config.stripe_secret_key)
        auth = await gateway.create_authorization(Decimal("149"), "usd", {"orderId": "1"})
        event = gateway.verify_and_parse_webhook(body, header, config.stripe_webhook_secret)
    """

    def __init__(
        self,
        secret_key: Optional[str],
        timeout_seconds: float = 20.0,
        signature_tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ):
        self._api_key: Optional[str] = None
        self._timeout = timeout_seconds
        self._tolerance = signature_tolerance

        if not secret_key:
            logger.warning("stripe_disabled", reason="STRIPE_SECRET_KEY missing")
        elif not secret_key.startswith(("sk_", "rk_")):
            logger.error("stripe_disabled", reason="STRIPE_SECRET_KEY is not a secret or restricted key")
        else:
            self._api_key = secret_key
            logger.info("stripe_configured", live_mode=secret_key.startswith(("sk_live_", "rk_live_")))

    def is_configured(self) -> bool:
        return self._api_key is not None

    def _require_configured(self):
        if not self.is_configured():
            raise GatewayUnavailable()

    async def _call(self, operation: str, fn: Callable[..., Any], **params) -> Any:
        """Run one blocking Stripe call off the event loop, bounded by the timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, api_key=self._api_key, **params),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("stripe_timeout", operation=operation, timeout_seconds=self._timeout)
            raise GatewayError(f"Stripe {operation} timed out after {self._timeout}s", cause=e) from e

    # =========================================================================
    # AUTHORIZATION
    # =========================================================================

    async def create_authorization(
        self, amount: Decimal, currency: str, metadata: Dict[str, str]
    ) -> Authorization:
        self._require_configured()

        currency = currency.lower()
        amount_minor = to_minor_units(amount, currency)
        log = logger.bind(order_id=metadata.get("orderId"), currency=currency, amount_minor=amount_minor)

        try:
            intent = await self._call(
                "payment_intent.create",
                stripe.PaymentIntent.create,
                amount=amount_minor,
                currency=currency,
                metadata={k: str(v) for k, v in metadata.items()},
            )
        except stripe.StripeError as e:
            log.error("authorization_failed", error=str(e), error_type=type(e).__name__)
            raise GatewayError(f"Stripe rejected the payment intent: {e}", cause=e) from e

        reference = getattr(intent, "id", None)
        client_secret = getattr(intent, "client_secret", None)
        if not reference or not client_secret:
            log.error("authorization_incomplete", reference=reference)
            raise GatewayError("Stripe returned a payment intent without id or client secret")

        log.info("authorization_created", reference=reference)
        return Authorization(reference=reference, client_secret=client_secret)

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def verify_and_parse_webhook(
        self, raw_body: bytes, signature_header: Optional[str], endpoint_secret: Optional[str]
    ) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header against the untouched body, then
        parse it. The body must be the bytes exactly as received.
        """
        self._require_configured()

        if not signature_header:
            raise SignatureError("Missing Stripe-Signature header")
        if not endpoint_secret:
            raise SignatureError("Missing webhook endpoint secret")

        try:
            payload = raw_body.decode("utf-8") if isinstance(raw_body, (bytes, bytearray)) else raw_body
        except UnicodeDecodeError as e:
            raise SignatureError("Webhook body is not valid UTF-8", cause=e) from e

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, endpoint_secret, self._tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise SignatureError(f"Webhook signature verification failed: {e}", cause=e) from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise SignatureError("Webhook body is not valid JSON", cause=e) from e

        if not isinstance(event, dict) or "type" not in event:
            raise SignatureError("Webhook body is not a Stripe event")
        return event

    # =========================================================================
    # DOMAIN REGISTRATION
    # =========================================================================

    async def register_domain(self, domain: str) -> Dict[str, str]:
        self._require_configured()
        domain_name = normalize_domain(domain)
        log = logger.bind(domain=domain_name)

        try:
            result = await self._call(
                "payment_method_domain.create",
                stripe.PaymentMethodDomain.create,
                domain_name=domain_name,
            )
        except stripe.StripeError as e:
            if _is_already_registered(e):
                log.info("domain_already_registered")
                return {"domain": domain_name, "status": "already_registered"}
            log.error("domain_registration_failed", error=str(e))
            raise GatewayError(f"Failed to register domain: {e}", cause=e) from e

        registered = getattr(result, "domain_name", None) or domain_name
        log.info("domain_registered", registered=registered)
        return {"domain": registered, "status": "registered"}


def _is_already_registered(error: "stripe.StripeError") -> bool:
    code = getattr(error, "code", None)
    if code == "resource_already_exists":
        return True
    message = getattr(error, "user_message", None) or str(error)
    return "already exists" in message.lower() or "already registered" in message.lower()
