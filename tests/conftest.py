"""Pytest fixtures for the checkout backend tests."""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe
from fastapi.testclient import TestClient

from api.server import create_app
from config import AppConfig
from errors import SignatureError
from pipeline.agents.payment_gateway import PaymentGateway, StripeGateway, normalize_domain
from schemas.orders import Authorization
from storage.order_store import InMemoryStore

SECRET_KEY = "sk_test_123"
WEBHOOK_SECRET = "whsec_test_secret"
PUBLISHABLE_KEY = "pk_test_123"


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header for the given raw body."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def payment_intent_event(event_type: str, reference: str, order_id: int = None, **extra) -> bytes:
    intent = {"id": reference, "object": "payment_intent", "metadata": {}}
    if order_id is not None:
        intent["metadata"]["orderId"] = str(order_id)
    intent.update(extra)
    event = {
        "id": f"evt_{reference}_{event_type.rsplit('.', 1)[-1]}",
        "object": "event",
        "type": event_type,
        "data": {"object": intent},
    }
    return json.dumps(event).encode()


class FakeStripe:
    """Records calls made to the patched stripe resources."""

    def __init__(self):
        self.intent_calls = []
        self.domain_calls = []
        self.intent_responses = []
        self.intent_error = None
        self.domain_error = None

    def create_payment_intent(self, **params):
        self.intent_calls.append(params)
        if self.intent_error is not None:
            raise self.intent_error
        if self.intent_responses:
            reference, secret = self.intent_responses.pop(0)
        else:
            n = len(self.intent_calls)
            reference, secret = f"pi_test_{n}", f"pi_test_{n}_secret_{n}"
        return SimpleNamespace(id=reference, client_secret=secret)

    def create_domain(self, **params):
        self.domain_calls.append(params)
        if self.domain_error is not None:
            raise self.domain_error
        return SimpleNamespace(id="pmd_test", domain_name=params["domain_name"])


class FakeGateway(PaymentGateway):
    """In-process gateway double for controller tests."""

    def __init__(self, configured: bool = True, store=None):
        self.configured = configured
        self.store = store
        self.calls = []
        self.orders_seen = []
        self.error = None

    def is_configured(self) -> bool:
        return self.configured

    async def create_authorization(self, amount, currency, metadata):
        if self.store is not None:
            self.orders_seen.append(await self.store.list_orders())
        self.calls.append({"amount": amount, "currency": currency, "metadata": metadata})
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        return Authorization(reference=f"pi_fake_{n}", client_secret=f"pi_fake_{n}_secret")

    def verify_and_parse_webhook(self, raw_body, signature_header, endpoint_secret):
        if signature_header != "valid":
            raise SignatureError("bad signature")
        return json.loads(raw_body)

    async def register_domain(self, domain):
        return {"domain": normalize_domain(domain), "status": "registered"}


@pytest.fixture
def config():
    return AppConfig(
        stripe_secret_key=SECRET_KEY,
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_publishable_key=PUBLISHABLE_KEY,
        storage_backend="memory",
        log_level="WARNING",
        domain_verification_enabled=False,
    )


@pytest.fixture
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(stripe.PaymentIntent, "create", fake.create_payment_intent)
    monkeypatch.setattr(stripe.PaymentMethodDomain, "create", fake.create_domain)
    return fake


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def gateway(fake_stripe):
    return StripeGateway(SECRET_KEY, timeout_seconds=5)


@pytest.fixture
def client(config, store, gateway):
    app = create_app(config, store=store, gateway=gateway)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def unconfigured_client(config, store, fake_stripe):
    app = create_app(config, store=store, gateway=StripeGateway(None))
    with TestClient(app) as test_client:
        yield test_client
