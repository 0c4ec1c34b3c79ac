"""Pytest fixtures for storefront tests."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from storefront.dependencies import get_notifier, get_payment_gateway
from storefront.errors import PaymentGatewayError
from storefront.main import app
from storefront.payments.gateway import PaymentIntent, StripeGateway, to_minor_units

WEBHOOK_SECRET = "whsec_test_secret"

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
SHIPPING_ADDRESS = {
    "full_name": "Jane Doe",
    "street": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "postal_code": "62701",
    "country": "US",
}


class FakeNotifier:
    """Collects published events instead of sending them."""

    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)

    def types(self) -> list[str]:
        return [type(e).__name__ for e in self.events]


class FakeGateway:
    """In-memory payment provider. Webhook verification goes through the real stripe SDK."""

    def __init__(self):
        self.intents: dict[str, PaymentIntent] = {}
        self.refunds: list[dict] = []
        self._verifier = StripeGateway("sk_test", WEBHOOK_SECRET)

    async def create_payment_intent(self, amount, currency, metadata):
        intent_id = f"pi_test_{len(self.intents) + 1}"
        intent = PaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=to_minor_units(amount),
            currency=currency,
            client_secret=f"{intent_id}_secret",
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        return intent

    async def retrieve_payment_intent(self, payment_intent_id):
        if payment_intent_id not in self.intents:
            raise PaymentGatewayError(f"No such payment_intent: {payment_intent_id}")
        return self.intents[payment_intent_id]

    async def create_refund(self, payment_intent_id, amount, reason=None):
        refund = {
            "id": f"re_test_{len(self.refunds) + 1}",
            "payment_intent": payment_intent_id,
            "amount": to_minor_units(amount),
            "status": "succeeded",
        }
        self.refunds.append(refund)
        return refund

    def verify_webhook(self, payload, signature):
        return self._verifier.verify_webhook(payload, signature)

    def succeed(self, payment_intent_id):
        self.intents[payment_intent_id].status = "succeeded"


def customer(user_id: str = "user-1") -> dict:
    return {"X-User-Id": user_id, "X-User-Role": "customer"}


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(tmp_path, monkeypatch, notifier, gateway):
    """App client backed by a fresh SQLite database, redis disabled."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    monkeypatch.setenv("REDIS_ENABLED", "false")
    monkeypatch.setenv("TAX_RATE", "0.08")
    monkeypatch.setenv("FREE_SHIPPING_THRESHOLD", "40")
    monkeypatch.setenv("DEFAULT_SHIPPING_COST", "5.99")
    monkeypatch.setenv("LOW_STOCK_THRESHOLD", "10")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)

    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(client):
    """Factory creating an active product through the API."""
    counter = itertools.count(1)

    def _make(name="Widget", price=10.0, quantity=10, status="active", **extra):
        n = next(counter)
        resp = client.post(
            "/products",
            json={
                "name": name,
                "sku": f"sku-{n:03d}",
                "price": price,
                "quantity": quantity,
                "status": status,
                **extra,
            },
            headers=ADMIN,
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _make


@pytest.fixture
def make_coupon(client):
    def _make(code="SAVE10", type="percentage", value=10, **extra):
        now = datetime.now(timezone.utc)
        body = {
            "code": code,
            "type": type,
            "value": value,
            "start_date": (now - timedelta(days=1)).isoformat(),
            "end_date": (now + timedelta(days=30)).isoformat(),
            **extra,
        }
        resp = client.post("/coupons", json=body, headers=ADMIN)
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _make


@pytest.fixture
def get_product(client):
    def _get(product_id):
        resp = client.get(f"/products/{product_id}")
        assert resp.status_code == 200
        return resp.json()

    return _get


@pytest.fixture
def place_order(client):
    """Fill the user's cart and check out."""

    def _place(lines, user_id="user-1", payment_method="card", **extra):
        headers = customer(user_id)
        for product_id, quantity in lines:
            resp = client.post(
                "/cart/items", json={"product_id": product_id, "quantity": quantity}, headers=headers
            )
            assert resp.status_code == 200, resp.text
        return client.post(
            "/orders",
            json={"shipping_address": SHIPPING_ADDRESS, "payment_method": payment_method, **extra},
            headers=headers,
        )

    return _place
