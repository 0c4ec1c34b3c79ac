"""
Payments — 決済ゲートウェイ

Stripe SDK (stripe-python) の非同期 API を呼ぶ。金額は最小通貨単位（セント）で送る。
Webhook は stripe.Webhook.construct_event で Stripe-Signature を検証してから本文を読む。
SDK の例外はドメイン例外に変換し、呼び出し側は stripe に依存しない。
"""

import logging
from dataclasses import dataclass, field
from typing import Protocol

import stripe

from ..errors import PaymentGatewayError, SignatureVerificationError

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE = 300


@dataclass
class PaymentIntent:
    id: str
    status: str
    amount: int
    currency: str
    client_secret: str | None = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj) -> "PaymentIntent":
        return cls(
            id=obj["id"],
            status=obj["status"],
            amount=obj["amount"],
            currency=obj["currency"],
            client_secret=obj.get("client_secret"),
            metadata=dict(obj.get("metadata") or {}),
        )


class PaymentGateway(Protocol):
    async def create_payment_intent(
        self, amount: float, currency: str, metadata: dict
    ) -> PaymentIntent: ...

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent: ...

    async def create_refund(
        self, payment_intent_id: str, amount: float, reason: str | None = None
    ) -> dict: ...

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict: ...


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class StripeGateway:
    def __init__(self, secret_key: str, webhook_secret: str):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    async def create_payment_intent(
        self, amount: float, currency: str, metadata: dict
    ) -> PaymentIntent:
        try:
            intent = await stripe.PaymentIntent.create_async(
                api_key=self.secret_key,
                amount=to_minor_units(amount),
                currency=currency,
                metadata={k: str(v) for k, v in metadata.items() if v is not None},
            )
        except stripe.StripeError as e:
            logger.error("Stripe payment intent creation failed: %s", e)
            raise PaymentGatewayError(f"Payment provider rejected the request: {e}") from e
        return PaymentIntent.from_stripe(intent)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        try:
            intent = await stripe.PaymentIntent.retrieve_async(
                payment_intent_id, api_key=self.secret_key
            )
        except stripe.StripeError as e:
            logger.error("Stripe payment intent %s lookup failed: %s", payment_intent_id, e)
            raise PaymentGatewayError(f"Payment provider rejected the request: {e}") from e
        return PaymentIntent.from_stripe(intent)

    async def create_refund(
        self, payment_intent_id: str, amount: float, reason: str | None = None
    ) -> dict:
        params = {
            "payment_intent": payment_intent_id,
            "amount": to_minor_units(amount),
            "reason": "requested_by_customer",
        }
        if reason:
            params["metadata"] = {"reason": reason}
        try:
            refund = await stripe.Refund.create_async(api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe refund for %s failed: %s", payment_intent_id, e)
            raise PaymentGatewayError(f"Payment provider rejected the refund: {e}") from e
        return {
            "id": refund["id"],
            "status": refund["status"],
            "amount": refund["amount"],
            "payment_intent": refund.get("payment_intent"),
        }

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict:
        """署名を検証して Webhook イベントを返す。"""
        if not signature or not self.webhook_secret:
            raise SignatureVerificationError("Missing webhook signature")
        try:
            return stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret, tolerance=SIGNATURE_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError(f"Webhook signature does not match: {e}") from e
        except ValueError as e:
            raise SignatureVerificationError("Webhook payload is not valid JSON") from e
