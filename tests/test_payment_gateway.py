"""Tests for the Stripe gateway: SDK calls and webhook signatures."""

import asyncio
import hashlib
import hmac
import json
import time

import pytest
import stripe

from storefront.errors import PaymentGatewayError, SignatureVerificationError
from storefront.payments.gateway import StripeGateway

SECRET = "whsec_unit"


def stripe_signature(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


class TestWebhookSignature:
    def setup_method(self):
        self.gateway = StripeGateway("sk_test_123", SECRET)
        self.payload = json.dumps(
            {"id": "evt_1", "object": "event", "type": "payment_intent.succeeded", "data": {}}
        ).encode()

    def test_valid_signature(self):
        event = self.gateway.verify_webhook(self.payload, stripe_signature(self.payload, SECRET))
        assert event["type"] == "payment_intent.succeeded"

    def test_wrong_secret(self):
        with pytest.raises(SignatureVerificationError):
            self.gateway.verify_webhook(self.payload, stripe_signature(self.payload, "other"))

    def test_tampered_payload(self):
        header = stripe_signature(self.payload, SECRET)
        with pytest.raises(SignatureVerificationError):
            self.gateway.verify_webhook(self.payload + b" ", header)

    def test_stale_timestamp(self):
        header = stripe_signature(self.payload, SECRET, timestamp=int(time.time()) - 3600)
        with pytest.raises(SignatureVerificationError):
            self.gateway.verify_webhook(self.payload, header)

    def test_signed_garbage_body(self):
        payload = b"not json"
        with pytest.raises(SignatureVerificationError):
            self.gateway.verify_webhook(payload, stripe_signature(payload, SECRET))

    @pytest.mark.parametrize("header", [None, "", "garbage", "t=123"])
    def test_missing_or_malformed_header(self, header):
        with pytest.raises(SignatureVerificationError):
            self.gateway.verify_webhook(self.payload, header)

    def test_no_webhook_secret_configured(self):
        gateway = StripeGateway("sk_test_123", "")
        with pytest.raises(SignatureVerificationError):
            gateway.verify_webhook(self.payload, stripe_signature(self.payload, ""))


class TestStripeRequests:
    def setup_method(self):
        self.gateway = StripeGateway("sk_test_123", SECRET)

    def test_create_payment_intent_sends_cents(self, monkeypatch):
        seen = {}

        async def create_async(**params):
            seen.update(params)
            return {
                "id": "pi_123",
                "status": "requires_payment_method",
                "amount": params["amount"],
                "currency": params["currency"],
                "client_secret": "pi_123_secret",
                "metadata": params["metadata"],
            }

        monkeypatch.setattr(stripe.PaymentIntent, "create_async", create_async)

        intent = asyncio.run(
            self.gateway.create_payment_intent(43.2, "usd", {"order_id": "o-1", "note": None})
        )

        assert intent.id == "pi_123"
        assert intent.client_secret == "pi_123_secret"
        assert intent.metadata == {"order_id": "o-1"}
        assert seen["api_key"] == "sk_test_123"
        assert seen["amount"] == 4320

    def test_retrieve_uses_secret_key(self, monkeypatch):
        seen = {}

        async def retrieve_async(intent_id, **params):
            seen["id"] = intent_id
            seen.update(params)
            return {"id": intent_id, "status": "succeeded", "amount": 500, "currency": "usd"}

        monkeypatch.setattr(stripe.PaymentIntent, "retrieve_async", retrieve_async)

        intent = asyncio.run(self.gateway.retrieve_payment_intent("pi_9"))

        assert intent.status == "succeeded"
        assert intent.metadata == {}
        assert seen == {"id": "pi_9", "api_key": "sk_test_123"}

    def test_refund_sends_cents_and_reason(self, monkeypatch):
        seen = {}

        async def create_async(**params):
            seen.update(params)
            return {
                "id": "re_1",
                "status": "succeeded",
                "amount": params["amount"],
                "payment_intent": params["payment_intent"],
            }

        monkeypatch.setattr(stripe.Refund, "create_async", create_async)

        refund = asyncio.run(self.gateway.create_refund("pi_123", 10.5, "damaged"))

        assert refund == {"id": "re_1", "status": "succeeded", "amount": 1050, "payment_intent": "pi_123"}
        assert seen["metadata"] == {"reason": "damaged"}
        assert seen["reason"] == "requested_by_customer"

    def test_card_error_wrapped(self, monkeypatch):
        async def create_async(**params):
            raise stripe.CardError("Your card was declined.", "amount", "card_declined")

        monkeypatch.setattr(stripe.Refund, "create_async", create_async)

        with pytest.raises(PaymentGatewayError):
            asyncio.run(self.gateway.create_refund("pi_123", 10.0))

    def test_connection_error_wrapped(self, monkeypatch):
        async def retrieve_async(intent_id, **params):
            raise stripe.APIConnectionError("Network unreachable")

        monkeypatch.setattr(stripe.PaymentIntent, "retrieve_async", retrieve_async)

        with pytest.raises(PaymentGatewayError):
            asyncio.run(self.gateway.retrieve_payment_intent("pi_123"))
