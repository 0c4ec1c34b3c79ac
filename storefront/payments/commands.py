"""
Payments — コマンドハンドラ

決済ゲートウェイの結果を注文の状態遷移につなぐ。
    PaymentIntent 作成   注文合計をセントで確保、intent id を注文に保存
    確認 / Webhook       succeeded → paid + confirmed,  payment_failed → failed
    返金                 累計が合計未満なら partially_refunded、合計に達したら refunded

Webhook は同じイベントが何度届いてもよいように、支払い済みの注文には何もしない。
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import Principal
from ..config import Settings
from ..errors import InvalidStateError, NotFoundError
from ..notifications import Notifier
from ..orders.aggregate import PARTIALLY_REFUNDED, PENDING, REFUNDED
from ..orders.commands import (
    attach_payment_intent,
    load_order,
    mark_order_failed,
    mark_order_paid,
    record_refund,
)
from .gateway import PaymentGateway

logger = logging.getLogger(__name__)

SUCCEEDED = "payment_intent.succeeded"
FAILED = "payment_intent.payment_failed"


async def create_payment_intent(
    session: AsyncSession,
    gateway: PaymentGateway,
    settings: Settings,
    order_id: str,
    principal: Principal,
) -> dict:
    order = await load_order(session, order_id)
    principal.ensure_owner(order.user_id, allow_admin=False)
    if order.payment_status == "paid":
        raise InvalidStateError("Order already paid")
    if order.status != PENDING:
        raise InvalidStateError(f"Order is not awaiting payment: {order.status}")

    intent = await gateway.create_payment_intent(
        order.pricing.total,
        settings.stripe_currency,
        metadata={"order_id": order.id, "user_id": order.user_id},
    )
    await attach_payment_intent(session, order, intent.id)
    logger.info("Payment intent %s created for order %s", intent.id, order.order_number)
    return {"client_secret": intent.client_secret, "payment_intent_id": intent.id}


async def confirm_payment(
    session: AsyncSession,
    notifier: Notifier,
    gateway: PaymentGateway,
    order_id: str,
    payment_intent_id: str,
    principal: Principal,
) -> dict:
    """クライアント側で決済完了後に呼ばれる。ゲートウェイに状態を問い合わせてから反映する。"""
    order = await load_order(session, order_id)
    principal.ensure_owner(order.user_id)

    intent = await gateway.retrieve_payment_intent(payment_intent_id)
    if intent.id != order.payment_intent_id or intent.metadata.get("order_id") != order.id:
        raise InvalidStateError("Payment intent does not belong to this order")
    if intent.status != "succeeded":
        raise InvalidStateError("Payment not successful")

    order = await mark_order_paid(session, notifier, order.id, intent.id)
    return order.to_dict()


async def handle_webhook(
    session: AsyncSession,
    notifier: Notifier,
    gateway: PaymentGateway,
    payload: bytes,
    signature: str | None,
) -> dict:
    event = gateway.verify_webhook(payload, signature)
    event_type = event.get("type")
    intent = (event.get("data") or {}).get("object") or {}
    order_id = (intent.get("metadata") or {}).get("order_id")

    if event_type not in (SUCCEEDED, FAILED):
        logger.info("Unhandled webhook event type %s", event_type)
        return {"received": True}
    if not order_id:
        logger.warning("Webhook %s without order_id metadata", event_type)
        return {"received": True}

    try:
        if event_type == SUCCEEDED:
            await mark_order_paid(session, notifier, order_id, intent["id"])
        else:
            await mark_order_failed(session, notifier, order_id)
    except NotFoundError:
        logger.warning("Webhook %s for unknown order %s", event_type, order_id)
    return {"received": True}


async def refund_payment(
    session: AsyncSession,
    notifier: Notifier,
    gateway: PaymentGateway,
    order_id: str,
    principal: Principal,
    amount: float | None = None,
    reason: str | None = None,
) -> dict:
    """返金（管理者）。amount 省略時は未返金の残額すべて。"""
    order = await load_order(session, order_id)
    if order.payment_status == REFUNDED:
        raise InvalidStateError("Order already fully refunded")
    if order.payment_status not in ("paid", PARTIALLY_REFUNDED):
        raise InvalidStateError("Order has not been paid")

    remaining = order.refundable_amount
    amount = remaining if amount is None else round(amount, 2)
    if amount <= 0:
        raise InvalidStateError("Refund amount must be positive")
    if amount > remaining:
        raise InvalidStateError(f"Refund amount exceeds refundable balance: {remaining:.2f}")

    transaction_id = (order.payment_details or {}).get("transaction_id") or order.payment_intent_id
    if not transaction_id:
        raise InvalidStateError("Order has no payment transaction to refund")

    refund = await gateway.create_refund(transaction_id, amount, reason)
    order = await record_refund(
        session, notifier, order, amount, updated_by=principal.user_id, reason=reason
    )
    return {"refund": refund, "order": order.to_dict()}
