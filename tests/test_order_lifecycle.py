"""Tests for checkout orchestration and webhook reconciliation."""

import asyncio
import json
from decimal import Decimal

import pytest

from errors import GatewayError, GatewayUnavailable, SignatureError, ValidationError
from pipeline.agents.order_lifecycle import OrderLifecycleController, WebhookRouter
from schemas.orders import OrderStatus
from storage.order_store import InMemoryStore

from conftest import FakeGateway, payment_intent_event

CHECKOUT = {
    "productId": "echobeats-pro",
    "productName": "EchoBeats Pro",
    "amount": 149,
    "currency": "usd",
}


def make_controller(config, configured=True):
    store = InMemoryStore()
    gateway = FakeGateway(configured=configured, store=store)
    return OrderLifecycleController(store, gateway, config), store, gateway


def event_body(event_type, reference, **extra):
    return payment_intent_event(event_type, reference, **extra)


class TestCreatePaymentIntent:
    def test_creates_pending_order_then_authorizes(self, config):
        controller, store, gateway = make_controller(config)

        async def scenario():
            result = await controller.create_payment_intent(dict(CHECKOUT))
            return result, await store.get_order(result.order_id)

        result, order = asyncio.run(scenario())
        assert result.client_secret == "pi_fake_1_secret"
        assert order.status == OrderStatus.PENDING
        assert order.gateway_reference == "pi_fake_1"
        assert order.amount == Decimal("149")

        # The order existed, pending and unauthorized, before the gateway call.
        seen = gateway.orders_seen[0]
        assert len(seen) == 1
        assert seen[0].status == OrderStatus.PENDING
        assert seen[0].gateway_reference == ""

    def test_metadata_carries_order_id(self, config):
        controller, _, gateway = make_controller(config)
        result = asyncio.run(controller.create_payment_intent(dict(CHECKOUT)))
        assert gateway.calls[0]["metadata"]["orderId"] == str(result.order_id)
        assert gateway.calls[0]["metadata"]["productId"] == "echobeats-pro"

    def test_currency_defaults_to_usd(self, config):
        controller, store, _ = make_controller(config)
        payload = {k: v for k, v in CHECKOUT.items() if k != "currency"}

        async def scenario():
            result = await controller.create_payment_intent(payload)
            return await store.get_order(result.order_id)

        assert asyncio.run(scenario()).currency == "usd"

    def test_unconfigured_gateway_creates_nothing(self, config):
        controller, store, gateway = make_controller(config, configured=False)

        async def scenario():
            with pytest.raises(GatewayUnavailable):
                await controller.create_payment_intent(dict(CHECKOUT))
            return await store.list_orders()

        assert asyncio.run(scenario()) == []
        assert gateway.calls == []

    def test_validation_reports_every_field(self, config):
        controller, store, gateway = make_controller(config)

        async def scenario():
            with pytest.raises(ValidationError) as exc_info:
                await controller.create_payment_intent({"amount": -5})
            return exc_info.value, await store.list_orders()

        error, orders = asyncio.run(scenario())
        fields = {e.field for e in error.errors}
        assert {"productId", "productName", "amount"} <= fields
        assert orders == []
        assert gateway.calls == []

    @pytest.mark.parametrize("payload", [
        {**CHECKOUT, "amount": 0},
        {**CHECKOUT, "amount": "abc"},
        {**CHECKOUT, "amount": "1.999"},
        {**CHECKOUT, "currency": "dollars"},
        {**CHECKOUT, "currency": "jpy", "amount": "10.5"},
        {**CHECKOUT, "customerEmail": "not-an-email"},
        {**CHECKOUT, "productId": ""},
    ])
    def test_rejects_malformed_values(self, config, payload):
        controller, _, gateway = make_controller(config)
        with pytest.raises(ValidationError):
            asyncio.run(controller.create_payment_intent(payload))
        assert gateway.calls == []

    def test_non_object_body_rejected(self, config):
        controller, _, _ = make_controller(config)
        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(controller.create_payment_intent(["not", "a", "dict"]))
        assert exc_info.value.errors[0].field == "body"

    def test_gateway_failure_leaves_order_pending_without_reference(self, config):
        controller, store, gateway = make_controller(config)
        gateway.error = GatewayError("card network down")

        async def scenario():
            with pytest.raises(GatewayError):
                await controller.create_payment_intent(dict(CHECKOUT))
            return await store.list_orders()

        orders = asyncio.run(scenario())
        assert len(orders) == 1
        assert orders[0].status == OrderStatus.PENDING
        assert orders[0].gateway_reference == ""
        assert len(gateway.calls) == 1


class TestHandleWebhook:
    def _checkout(self, controller):
        return controller.create_payment_intent(dict(CHECKOUT))

    def test_succeeded_completes_order(self, config):
        controller, store, _ = make_controller(config)

        async def scenario():
            result = await self._checkout(controller)
            ack = await controller.handle_webhook(
                event_body("payment_intent.succeeded", result.gateway_reference), "valid"
            )
            return ack, await store.get_order(result.order_id)

        ack, order = asyncio.run(scenario())
        assert ack == {"received": True}
        assert order.status == OrderStatus.COMPLETED
        assert order.gateway_reference == "pi_fake_1"

    def test_duplicate_delivery_is_idempotent(self, config):
        controller, store, _ = make_controller(config)

        async def scenario():
            result = await self._checkout(controller)
            body = event_body("payment_intent.succeeded", result.gateway_reference)
            await controller.handle_webhook(body, "valid")
            first = await store.get_order(result.order_id)
            await controller.handle_webhook(body, "valid")
            second = await store.get_order(result.order_id)
            return first, second

        first, second = asyncio.run(scenario())
        assert first == second

    def test_concurrent_deliveries_complete_once(self, config):
        controller, store, _ = make_controller(config)

        async def scenario():
            result = await self._checkout(controller)
            body = event_body("payment_intent.succeeded", result.gateway_reference)
            await asyncio.gather(*[controller.handle_webhook(body, "valid") for _ in range(10)])
            return await store.get_order(result.order_id)

        assert asyncio.run(scenario()).status == OrderStatus.COMPLETED

    def test_unknown_reference_is_acknowledged(self, config):
        controller, store, _ = make_controller(config)

        async def scenario():
            result = await self._checkout(controller)
            ack = await controller.handle_webhook(
                event_body("payment_intent.succeeded", "pi_unknown"), "valid"
            )
            return ack, await store.get_order(result.order_id)

        ack, order = asyncio.run(scenario())
        assert ack == {"received": True}
        assert order.status == OrderStatus.PENDING

    def test_unhandled_event_type_is_acknowledged(self, config):
        controller, _, _ = make_controller(config)
        body = json.dumps({"id": "evt_1", "type": "charge.refunded", "data": {"object": {}}}).encode()
        assert asyncio.run(controller.handle_webhook(body, "valid")) == {"received": True}

    def test_canceled_cancels_pending_order(self, config):
        controller, store, _ = make_controller(config)

        async def scenario():
            result = await self._checkout(controller)
            await controller.handle_webhook(
                event_body("payment_intent.canceled", result.gateway_reference), "valid"
            )
            return await store.get_order(result.order_id)

        assert asyncio.run(scenario()).status == OrderStatus.CANCELLED

    def test_payment_failed_keeps_order_pending(self, config):
        controller, store, _ = make_controller(config)

        async def scenario():
            result = await self._checkout(controller)
            await controller.handle_webhook(
                event_body(
                    "payment_intent.payment_failed",
                    result.gateway_reference,
                    last_payment_error={"code": "card_declined", "decline_code": "insufficient_funds"},
                ),
                "valid",
            )
            return await store.get_order(result.order_id)

        assert asyncio.run(scenario()).status == OrderStatus.PENDING

    def test_completed_order_never_moves_back(self, config):
        controller, store, _ = make_controller(config)

        async def scenario():
            result = await self._checkout(controller)
            ref = result.gateway_reference
            await controller.handle_webhook(event_body("payment_intent.succeeded", ref), "valid")
            await controller.handle_webhook(event_body("payment_intent.canceled", ref), "valid")
            return await store.get_order(result.order_id)

        assert asyncio.run(scenario()).status == OrderStatus.COMPLETED

    def test_bad_signature_raises(self, config):
        controller, _, _ = make_controller(config)
        body = event_body("payment_intent.succeeded", "pi_1")
        with pytest.raises(SignatureError):
            asyncio.run(controller.handle_webhook(body, "forged"))

    def test_missing_endpoint_secret_raises(self, config):
        controller, _, _ = make_controller(config.model_copy(update={"stripe_webhook_secret": None}))
        body = event_body("payment_intent.succeeded", "pi_1")
        with pytest.raises(SignatureError):
            asyncio.run(controller.handle_webhook(body, "valid"))

    def test_unconfigured_gateway_raises(self, config):
        controller, _, _ = make_controller(config, configured=False)
        body = event_body("payment_intent.succeeded", "pi_1")
        with pytest.raises(GatewayUnavailable):
            asyncio.run(controller.handle_webhook(body, "valid"))


class TestTransition:
    def test_missing_order(self, config):
        controller, _, _ = make_controller(config)
        assert asyncio.run(controller.transition(99, OrderStatus.COMPLETED, "pi_1")) is None

    def test_rejected_transition_returns_current_order(self, config):
        controller, store, _ = make_controller(config)

        async def scenario():
            order = await store.create_order("p", "P", Decimal("10"))
            await controller.transition(order.id, OrderStatus.COMPLETED, "pi_1")
            return await controller.transition(order.id, OrderStatus.PENDING, "pi_2")

        order = asyncio.run(scenario())
        assert order.status == OrderStatus.COMPLETED
        assert order.gateway_reference == "pi_1"


class TestRegisterDomain:
    def test_normalizes_domain(self, config):
        controller, _, _ = make_controller(config)
        result = asyncio.run(controller.register_domain({"domain": "https://shop.example.com/x"}))
        assert result["domain"] == "shop.example.com"

    def test_missing_domain(self, config):
        controller, _, _ = make_controller(config)
        with pytest.raises(ValidationError):
            asyncio.run(controller.register_domain({}))

    def test_unconfigured_gateway(self, config):
        controller, _, _ = make_controller(config, configured=False)
        with pytest.raises(GatewayUnavailable):
            asyncio.run(controller.register_domain({"domain": "shop.example.com"}))


class TestWebhookRouter:
    def test_routes_registered_type(self):
        router = WebhookRouter()

        @router.register("payment_intent.succeeded")
        async def handler(event, correlation_id):
            return {"status": "handled", "id": event["id"]}

        result = asyncio.run(router.route({"id": "evt_1", "type": "payment_intent.succeeded"}, "c1"))
        assert result == {"status": "handled", "id": "evt_1"}
        assert router.supported_events == ["payment_intent.succeeded"]

    def test_unknown_type_is_ignored(self):
        result = asyncio.run(WebhookRouter().route({"type": "customer.created"}, "c1"))
        assert result["status"] == "ignored"


class TestMalformedEvents:
    @pytest.mark.parametrize("data", [None, [], {"object": None}, {"object": "pi_1"}])
    @pytest.mark.parametrize("event_type", [
        "payment_intent.succeeded",
        "payment_intent.canceled",
        "payment_intent.payment_failed",
    ])
    def test_missing_intent_is_acknowledged(self, config, event_type, data):
        controller, _, _ = make_controller(config)
        body = json.dumps({"id": "evt_1", "type": event_type, "data": data}).encode()
        assert asyncio.run(controller.handle_webhook(body, "valid")) == {"received": True}

    def test_non_dict_metadata_on_unmatched_event(self, config):
        controller, _, _ = make_controller(config)
        body = event_body("payment_intent.succeeded", "pi_unknown", metadata=["x"])
        assert asyncio.run(controller.handle_webhook(body, "valid")) == {"received": True}

    def test_non_dict_payment_error(self, config):
        controller, _, _ = make_controller(config)
        body = event_body("payment_intent.payment_failed", "pi_unknown", last_payment_error="declined")
        assert asyncio.run(controller.handle_webhook(body, "valid")) == {"received": True}


class TestOrderLocks:
    def test_locks_are_released_after_transitions(self, config):
        controller, _, _ = make_controller(config)

        async def scenario():
            results = await asyncio.gather(*[
                controller.create_payment_intent(dict(CHECKOUT)) for _ in range(20)
            ])
            await asyncio.gather(*[
                controller.handle_webhook(
                    event_body("payment_intent.succeeded", r.gateway_reference), "valid"
                )
                for r in results
            ])
            return len(controller._order_locks)

        assert asyncio.run(scenario()) == 0

    def test_same_order_shares_one_lock_while_held(self, config):
        controller, _, _ = make_controller(config)

        async def scenario():
            first = await controller._get_order_lock(1)
            second = await controller._get_order_lock(1)
            other = await controller._get_order_lock(2)
            return first is second, first is other

        assert asyncio.run(scenario()) == (True, False)


@pytest.mark.parametrize("status,terminal", [
    (OrderStatus.PENDING, False),
    (OrderStatus.COMPLETED, True),
    (OrderStatus.FAILED, True),
    (OrderStatus.CANCELLED, True),
])
def test_terminal_statuses(status, terminal):
    assert status.is_terminal is terminal
