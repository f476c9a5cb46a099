"""
Order Lifecycle Controller
==========================
Checkout orchestration and webhook reconciliation:

    validate -> create order (pending) -> create authorization
             -> persist gateway reference -> return client secret

    verified webhook -> find order by gateway reference -> terminal status

Per-order transitions are serialized with an asyncio.Lock per order id and
only ever move forward. Re-applying a transition is a no-op.

pip install pydantic structlog
"""

import asyncio
import uuid
import weakref
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from config import AppConfig
from errors import GatewayUnavailable, SignatureError
from pipeline.agents.payment_gateway import PaymentGateway
from schemas.orders import (
    CheckoutResult,
    CreatePaymentIntentRequest,
    Order,
    OrderStatus,
    VerifyDomainRequest,
    parse_request,
)
from storage.order_store import IOrderStore


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[Dict[str, Any], str], Awaitable[Dict[str, Any]]]


class WebhookRouter:
    """Maps Stripe event types to handlers."""

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            return handler
        return decorator

    async def route(self, event: Dict[str, Any], correlation_id: str) -> Dict[str, Any]:
        event_type = event.get("type", "unknown")
        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.debug("no_handler", event_type=event_type, correlation_id=correlation_id)
            return {"status": "ignored", "event_type": event_type}
        return await handler(event, correlation_id)

    @property
    def supported_events(self) -> list:
        return list(self._handlers.keys())


def _intent_from(event: Dict[str, Any]) -> Dict[str, Any]:
    """The event's data.object, or an empty dict when the event carries none."""
    data = event.get("data")
    intent = data.get("object") if isinstance(data, dict) else None
    return intent if isinstance(intent, dict) else {}


# =============================================================================
# CONTROLLER
# =============================================================================

class OrderLifecycleController:
    """
    Owns every order status change.

    Example:
        controller = OrderLifecycleController(store, gateway, config)
        result = await controller.create_payment_intent({"productId": "echobeats-pro", ...})
        # client pays with result.client_secret
        await controller.handle_webhook(raw_body, signature_header)
    """

    def __init__(self, store: IOrderStore, gateway: PaymentGateway, config: AppConfig):
        self.store = store
        self.gateway = gateway
        self.config = config

        self.router = WebhookRouter()
        self._register_handlers()

        # Entries disappear once no coroutine holds the lock.
        self._order_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._order_locks_mutex = asyncio.Lock()

        self._base_logger = structlog.get_logger(component="order_lifecycle")

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(correlation_id=correlation_id or str(uuid.uuid4()))

    async def _get_order_lock(self, order_id: int) -> asyncio.Lock:
        async with self._order_locks_mutex:
            lock = self._order_locks.get(order_id)
            if lock is None:
                lock = asyncio.Lock()
                self._order_locks[order_id] = lock
            return lock

    def _require_gateway(self):
        if not self.gateway.is_configured():
            raise GatewayUnavailable()

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def transition(
        self,
        order_id: int,
        status: OrderStatus,
        gateway_reference: str,
        correlation_id: Optional[str] = None,
    ) -> Optional[Order]:
        """
        Apply a status change under the order's lock.

        Returns the resulting order (unchanged if the transition was already
        applied or is not allowed), or None when the order does not exist.
        """
        log = self._get_logger(correlation_id).bind(order_id=order_id)
        lock = await self._get_order_lock(order_id)

        async with lock:
            order = await self.store.get_order(order_id)
            if order is None:
                log.warning("transition_order_missing", target=status.value)
                return None

            if order.status == status and order.gateway_reference == gateway_reference:
                log.info("transition_already_applied", status=status.value)
                return order

            if order.status.is_terminal:
                log.warning(
                    "transition_rejected",
                    current=order.status.value,
                    target=status.value,
                )
                return order

            updated = await self.store.update_order_status(order_id, status, gateway_reference)
            log.info(
                "order_transitioned",
                previous=order.status.value,
                status=status.value,
                gateway_reference=gateway_reference,
            )
            return updated

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def create_payment_intent(self, payload: Any) -> CheckoutResult:
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        self._require_gateway()
        request = parse_request(CreatePaymentIntentRequest, payload)

        order = await self.store.create_order(
            product_id=request.product_id,
            product_name=request.product_name,
            amount=request.amount,
            currency=request.currency,
            customer_email=request.customer_email,
        )
        log = log.bind(order_id=order.id)
        log.info(
            "order_created",
            product_id=order.product_id,
            amount=str(order.amount),
            currency=order.currency,
        )

        # A GatewayError propagates as-is; the order stays pending with no
        # reference and the caller may simply retry checkout.
        authorization = await self.gateway.create_authorization(
            order.amount,
            order.currency,
            {
                "orderId": str(order.id),
                "productId": order.product_id,
                "productName": order.product_name,
            },
        )

        await self.transition(order.id, OrderStatus.PENDING, authorization.reference, correlation_id)

        log.info("checkout_ready", gateway_reference=authorization.reference)
        return CheckoutResult(
            order_id=order.id,
            client_secret=authorization.client_secret,
            gateway_reference=authorization.reference,
        )

    async def get_order(self, order_id: int) -> Optional[Order]:
        return await self.store.get_order(order_id)

    # =========================================================================
    # DOMAIN REGISTRATION
    # =========================================================================

    async def register_domain(self, payload: Any) -> Dict[str, str]:
        self._require_gateway()
        request = parse_request(VerifyDomainRequest, payload)
        return await self.gateway.register_domain(request.domain)

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify, then route a Stripe event. Unknown or unmatched events are acknowledged."""
        self._require_gateway()
        if not self.config.stripe_webhook_secret:
            self._base_logger.error("webhook_secret_missing")
            raise SignatureError("Missing signature or endpoint secret")

        event = self.gateway.verify_and_parse_webhook(
            raw_body, signature, self.config.stripe_webhook_secret
        )

        correlation_id = event.get("id") or str(uuid.uuid4())
        log = self._get_logger(correlation_id)
        log.info("webhook_received", event_type=event.get("type"))

        result = await self.router.route(event, correlation_id)
        log.info("webhook_processed", event_type=event.get("type"), result=result.get("status"))
        return {"received": True}

    def _register_handlers(self):

        @self.router.register("payment_intent.succeeded")
        async def handle_succeeded(event: Dict[str, Any], correlation_id: str):
            return await self._settle(event, OrderStatus.COMPLETED, correlation_id)

        @self.router.register("payment_intent.canceled")
        async def handle_canceled(event: Dict[str, Any], correlation_id: str):
            return await self._settle(event, OrderStatus.CANCELLED, correlation_id)

        @self.router.register("payment_intent.payment_failed")
        async def handle_payment_failed(event: Dict[str, Any], correlation_id: str):
            return await self._on_payment_failed(event, correlation_id)

    async def _settle(
        self, event: Dict[str, Any], status: OrderStatus, correlation_id: str
    ) -> Dict[str, Any]:
        log = self._get_logger(correlation_id)
        intent = _intent_from(event)
        reference = intent.get("id") or ""
        metadata = intent.get("metadata")

        order = await self.store.get_order_by_gateway_reference(reference)
        if order is None:
            log.warning(
                "webhook_order_not_found",
                event_type=event.get("type"),
                gateway_reference=reference,
                metadata_order_id=metadata.get("orderId") if isinstance(metadata, dict) else None,
            )
            return {"status": "no_match"}

        updated = await self.transition(order.id, status, reference, correlation_id)
        if updated is None:
            return {"status": "no_match"}
        return {"status": "applied", "order_id": order.id, "order_status": updated.status.value}

    async def _on_payment_failed(self, event: Dict[str, Any], correlation_id: str) -> Dict[str, Any]:
        """The intent stays usable for another attempt, so the order stays pending."""
        log = self._get_logger(correlation_id)
        intent = _intent_from(event)
        error = intent.get("last_payment_error")
        if not isinstance(error, dict):
            error = {}

        log.warning(
            "payment_failed",
            gateway_reference=intent.get("id"),
            error_code=error.get("code"),
            decline_code=error.get("decline_code"),
        )
        return {"status": "logged", "error_code": error.get("code")}
