"""
Orders — コマンドハンドラ (Write 側)

注文作成はカート・在庫・クーポンをまたぐ複数ステップの処理:

    1. 全明細の在庫を確認
    2. 価格計算（クーポンは再評価）
    3. 注文を保存 (pending / pending)
    4. 明細ごとに在庫を引き当て
    5. クーポン利用を記録
    6. カートを空にする
    7. 代引き (cod) なら即 confirmed

これらを 1 つの DB トランザクションで行い、途中で失敗したら全体を
ロールバックする（部分的な注文・引き当ては残らない）。
通知はコミット後に発行し、失敗しても注文状態は巻き戻さない。

在庫との連動:
    pending → confirmed   引き当て分を実在庫から差し引く (deduct)
    キャンセル             未確定なら引き当て解放、確定済みなら在庫に戻す
    決済失敗               引き当て解放
"""

import logging
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import Principal
from ..cart.commands import load_cart, save_cart
from ..config import Settings
from ..coupons.commands import find_coupon, record_usage, release_usage
from ..database import order_items, orders, utcnow
from ..errors import (
    ConcurrentUpdateError,
    CouponIneligibleError,
    EmptyCartError,
    InvalidStateError,
    NotFoundError,
    OutOfStockError,
)
from ..inventory.aggregate import InventoryAggregate
from ..inventory.commands import (
    deduct_stock,
    load_product,
    release_stock,
    reserve_stock,
    restore_stock,
)
from ..inventory.events import LowStockDetected
from ..notifications import Notifier, notify
from . import timeline
from .aggregate import (
    CONFIRMED,
    FAILED,
    PARTIALLY_REFUNDED,
    PENDING,
    OrderAggregate,
    OrderItem,
    calculate_pricing,
    generate_order_number,
)
from .events import (
    OrderCancelled,
    OrderCreated,
    OrderEvent,
    OrderRefunded,
    OrderStatusChanged,
    PaymentFailed,
    PaymentSucceeded,
    ReturnStatusChanged,
)

logger = logging.getLogger(__name__)


# ── 読み込み / 保存 ──────────────────────────────


async def hydrate_orders(session: AsyncSession, rows) -> list[OrderAggregate]:
    """注文行に明細とタイムラインを付けて集約にする。"""
    ids = [row.id for row in rows]
    if not ids:
        return []
    result = await session.execute(
        select(order_items).where(order_items.c.order_id.in_(ids)).order_by(order_items.c.id)
    )
    items_by_order: dict[str, list] = {order_id: [] for order_id in ids}
    for item in result.fetchall():
        items_by_order[item.order_id].append(item)
    timelines = await timeline.load_timelines(session, ids)
    return [
        OrderAggregate.from_rows(row, items_by_order[row.id], timelines[row.id])
        for row in rows
    ]


async def load_order(session: AsyncSession, order_id: str) -> OrderAggregate:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        raise NotFoundError("Order", order_id)
    return (await hydrate_orders(session, [row]))[0]


async def _insert_order(session: AsyncSession, order: OrderAggregate) -> None:
    pricing = order.pricing
    await session.execute(
        insert(orders).values(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            subtotal=pricing.subtotal,
            tax=pricing.tax,
            tax_rate=pricing.tax_rate,
            shipping_cost=pricing.shipping_cost,
            discount=pricing.discount,
            total=pricing.total,
            coupon_code=order.coupon_code,
            shipping_address=order.shipping_address,
            billing_address=order.billing_address,
            payment_method=order.payment_method,
            payment_status=order.payment_status,
            shipping_method=order.shipping_method,
            status=order.status,
            stock_committed=order.stock_committed,
            customer_note=order.customer_note,
            return_requested=False,
            return_status=order.return_status,
            created_at=order.created_at,
            updated_at=order.created_at,
        )
    )
    await session.execute(
        insert(order_items),
        [
            {
                "order_id": order.id,
                "product_id": item.product_id,
                "name": item.name,
                "sku": item.sku,
                "image": item.image,
                "variant_name": (item.variant or {}).get("name"),
                "variant_value": (item.variant or {}).get("value"),
                "quantity": item.quantity,
                "price": item.price,
                "total": item.total,
            }
            for item in order.items
        ],
    )
    await timeline.append_entries(session, order.id, order.new_entries)
    order.new_entries.clear()


async def _save_order(session: AsyncSession, order: OrderAggregate) -> None:
    await session.execute(
        update(orders)
        .where(orders.c.id == order.id)
        .values(
            status=order.status,
            payment_status=order.payment_status,
            payment_details=order.payment_details,
            payment_intent_id=order.payment_intent_id,
            refunded_amount=order.refunded_amount,
            tracking_number=order.tracking_number,
            carrier=order.carrier,
            stock_committed=order.stock_committed,
            paid_at=order.paid_at,
            shipped_at=order.shipped_at,
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
            cancellation_reason=order.cancellation_reason,
            return_requested=order.return_requested,
            return_reason=order.return_reason,
            return_status=order.return_status,
            updated_at=utcnow(),
        )
    )
    await timeline.append_entries(session, order.id, order.new_entries)
    order.new_entries.clear()


async def _commit(session: AsyncSession, order: OrderAggregate) -> None:
    try:
        await _save_order(session, order)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ConcurrentUpdateError(order.id)


# ── 在庫連動 ─────────────────────────────────────


async def _commit_stock(session: AsyncSession, order: OrderAggregate) -> list[InventoryAggregate]:
    """引き当てを販売に変える。閾値を下回った商品を返す。"""
    low_stock = []
    for item in order.items:
        product = await deduct_stock(session, item.product_id, item.quantity)
        if product.is_low_stock:
            low_stock.append(product)
    order.stock_committed = True
    return low_stock


async def _return_stock(session: AsyncSession, order: OrderAggregate) -> None:
    for item in order.items:
        if order.stock_committed:
            await restore_stock(session, item.product_id, item.quantity)
        else:
            await release_stock(session, item.product_id, item.quantity)


async def _apply_status(
    session: AsyncSession,
    order: OrderAggregate,
    status: str,
    note: str | None = None,
    updated_by: str | None = None,
) -> list[InventoryAggregate]:
    previous = order.set_status(status, note=note, updated_by=updated_by)
    if previous == PENDING and status == CONFIRMED and not order.stock_committed:
        return await _commit_stock(session, order)
    return []


def _event(cls: type[OrderEvent], order: OrderAggregate, **fields) -> OrderEvent:
    return cls(
        order_id=order.id,
        order_number=order.order_number,
        user_id=order.user_id,
        timestamp=utcnow(),
        **fields,
    )


def _low_stock_events(products: list[InventoryAggregate]) -> list[BaseModel]:
    return [
        LowStockDetected(
            product_id=p.id,
            name=p.name,
            available=p.available,
            threshold=p.low_stock_threshold,
            timestamp=utcnow(),
        )
        for p in products
    ]


# ── コマンド ─────────────────────────────────────


async def create_order(
    session: AsyncSession,
    notifier: Notifier,
    settings: Settings,
    user_id: str,
    *,
    shipping_address: dict,
    payment_method: str,
    billing_address: dict | None = None,
    shipping_method: str = "standard",
    customer_note: str | None = None,
) -> OrderAggregate:
    """注文作成コマンド（カートから）"""
    try:
        cart = await load_cart(session, user_id, settings.cart_ttl_days)
        if cart.is_empty:
            raise EmptyCartError()

        # 1. 在庫確認: バリエーション違いの行も商品ごとに合算する。1 件でも足りなければ何も作らない
        wanted: dict[str, int] = {}
        for line in cart.items:
            wanted[line.product_id] = wanted.get(line.product_id, 0) + line.quantity
        catalog: dict[str, InventoryAggregate] = {}
        for product_id, quantity in wanted.items():
            product = await load_product(session, product_id)
            if not product.is_in_stock(quantity):
                raise OutOfStockError(product.id, product.name, quantity, product.available)
            catalog[product_id] = product

        # 2. 価格計算
        subtotal = cart.subtotal
        discount = 0.0
        coupon = None
        if cart.coupon:
            coupon = await find_coupon(session, cart.coupon["code"])
            if coupon is None:
                raise CouponIneligibleError(cart.coupon["code"], "coupon no longer exists")
            reason = coupon.ineligibility(user_id, subtotal)
            if reason:
                raise CouponIneligibleError(coupon.code, reason)
            discount = coupon.calculate_discount(subtotal)
        pricing = calculate_pricing(subtotal, discount, shipping_method, settings)

        # 3. 明細のスナップショットを作って保存
        now = utcnow()
        order = OrderAggregate()
        order.id = str(uuid4())
        order.order_number = generate_order_number(now)
        order.user_id = user_id
        order.pricing = pricing
        order.coupon_code = coupon.code if coupon else None
        order.shipping_address = shipping_address
        order.billing_address = billing_address or shipping_address
        order.payment_method = payment_method
        order.shipping_method = shipping_method
        order.customer_note = customer_note
        order.created_at = now
        order.items = [
            OrderItem(
                product_id=line.product_id,
                name=catalog[line.product_id].name,
                quantity=line.quantity,
                price=line.price,
                sku=catalog[line.product_id].sku,
                image=catalog[line.product_id].image_url,
                variant=line.variant,
            )
            for line in cart.items
        ]
        order.set_status(PENDING, note="Order placed", updated_by=user_id, now=now)
        await _insert_order(session, order)

        # 4. 在庫引き当て（条件付き UPDATE。競合で負けたらここで失敗する）
        for item in order.items:
            await reserve_stock(session, item.product_id, item.quantity)

        # 5. クーポン利用記録
        if coupon:
            await record_usage(session, coupon.id, coupon.code, user_id)

        # 6. カートを空にする
        cart.clear()
        await save_cart(session, cart)

        # 7. 代引きは決済ゲートウェイを通らずに確定
        low_stock = []
        if payment_method == "cod":
            low_stock = await _apply_status(session, order, CONFIRMED, note="Cash on delivery")
        await _save_order(session, order)
        await session.commit()
    except Exception:
        await session.rollback()
        logger.warning("Checkout rolled back for user %s", user_id)
        raise

    logger.info("Order created: %s (%s) total=%.2f", order.order_number, order.id, pricing.total)
    events: list[BaseModel] = [
        _event(
            OrderCreated,
            order,
            total=pricing.total,
            payment_method=payment_method,
            status=order.status,
        )
    ]
    if order.status == CONFIRMED:
        events.append(
            _event(OrderStatusChanged, order, previous_status=PENDING, status=CONFIRMED)
        )
    events.extend(_low_stock_events(low_stock))
    await notify(notifier, *events)
    return order


async def cancel_order(
    session: AsyncSession,
    notifier: Notifier,
    settings: Settings,
    order_id: str,
    principal: Principal,
    reason: str | None = None,
) -> OrderAggregate:
    """
    注文キャンセルコマンド

    pending / confirmed / processing のときだけ可能。明細ごとの在庫を戻す。
    """
    order = await load_order(session, order_id)
    principal.ensure_owner(order.user_id)
    order.cancel(reason, updated_by=principal.user_id)

    await _return_stock(session, order)
    if settings.coupon_release_on_cancel and order.coupon_code:
        await release_usage(session, order.coupon_code, order.user_id)
    await _commit(session, order)

    logger.info("Order cancelled: %s", order.order_number)
    await notify(notifier, _event(OrderCancelled, order, reason=reason))
    return order


async def request_return(
    session: AsyncSession,
    notifier: Notifier,
    settings: Settings,
    order_id: str,
    principal: Principal,
    reason: str | None = None,
) -> OrderAggregate:
    """返品申請コマンド（配達から返品期限内のみ）"""
    order = await load_order(session, order_id)
    principal.ensure_owner(order.user_id, allow_admin=False)
    order.request_return(reason, settings.order_return_window)
    await _commit(session, order)

    logger.info("Return requested: %s", order.order_number)
    await notify(
        notifier, _event(ReturnStatusChanged, order, return_status=order.return_status, reason=reason)
    )
    return order


async def update_return_status(
    session: AsyncSession,
    notifier: Notifier,
    order_id: str,
    return_status: str,
) -> OrderAggregate:
    """返品審査コマンド（管理者）: requested → approved | rejected, approved → completed"""
    order = await load_order(session, order_id)
    order.set_return_status(return_status)
    await _commit(session, order)

    await notify(notifier, _event(ReturnStatusChanged, order, return_status=return_status))
    return order


async def update_order_status(
    session: AsyncSession,
    notifier: Notifier,
    order_id: str,
    principal: Principal,
    status: str,
    tracking_number: str | None = None,
    carrier: str | None = None,
    note: str | None = None,
) -> OrderAggregate:
    """
    ステータス更新コマンド（管理者 / 出品者）

    任意のステータスへ書き換えられる。在庫と連動するのは
    pending → confirmed（引き当てを販売に変える）だけ。
    """
    order = await load_order(session, order_id)
    previous = order.status
    low_stock = []
    if status != previous or note:
        low_stock = await _apply_status(
            session, order, status, note=note, updated_by=principal.user_id
        )
    if tracking_number:
        order.tracking_number = tracking_number
    if carrier:
        order.carrier = carrier
    await _commit(session, order)

    events: list[BaseModel] = []
    if status != previous:
        logger.info("Order %s: %s -> %s", order.order_number, previous, status)
        events.append(
            _event(OrderStatusChanged, order, previous_status=previous, status=status, note=note)
        )
    events.extend(_low_stock_events(low_stock))
    await notify(notifier, *events)
    return order


# ── 決済イベントからの遷移 ───────────────────────


async def attach_payment_intent(
    session: AsyncSession, order: OrderAggregate, payment_intent_id: str
) -> None:
    order.payment_intent_id = payment_intent_id
    await _commit(session, order)


async def mark_order_paid(
    session: AsyncSession,
    notifier: Notifier,
    order_id: str,
    transaction_id: str,
    provider: str = "stripe",
) -> OrderAggregate:
    """決済成功: paid にして pending の注文を確定する。二重通知は無視する。"""
    order = await load_order(session, order_id)
    if order.payment_status == "paid":
        logger.info("Order %s already paid", order.order_number)
        return order

    order.mark_paid(transaction_id, provider)
    previous = order.status
    low_stock = []
    if previous == PENDING:
        low_stock = await _apply_status(session, order, CONFIRMED, note="Payment received")
    else:
        logger.warning("Payment received for order %s in status %s", order.order_number, previous)
    await _commit(session, order)

    logger.info("Payment succeeded for order %s", order.order_number)
    events: list[BaseModel] = [
        _event(PaymentSucceeded, order, transaction_id=transaction_id, amount=order.pricing.total)
    ]
    if order.status != previous:
        events.append(
            _event(OrderStatusChanged, order, previous_status=previous, status=order.status)
        )
    events.extend(_low_stock_events(low_stock))
    await notify(notifier, *events)
    return order


async def mark_order_failed(
    session: AsyncSession, notifier: Notifier, order_id: str
) -> OrderAggregate:
    """決済失敗: failed にして引き当てを解放する。"""
    order = await load_order(session, order_id)
    if order.payment_status == "paid" or order.status != PENDING:
        logger.warning(
            "Ignoring payment failure for order %s (status=%s, payment=%s)",
            order.order_number, order.status, order.payment_status,
        )
        return order

    await _return_stock(session, order)
    order.payment_status = "failed"
    order.set_status(FAILED, note="Payment failed")
    await _commit(session, order)

    logger.error("Payment failed for order %s", order.order_number)
    await notify(notifier, _event(PaymentFailed, order))
    return order


async def record_refund(
    session: AsyncSession,
    notifier: Notifier,
    order: OrderAggregate,
    amount: float,
    updated_by: str | None = None,
    reason: str | None = None,
) -> OrderAggregate:
    """返金を記録する。ゲートウェイ呼び出しは payments 側で済ませておく。"""
    if order.payment_status not in ("paid", PARTIALLY_REFUNDED):
        raise InvalidStateError("Order has not been paid")
    refund_status = order.apply_refund(amount)
    order.payment_status = refund_status
    order.set_status(refund_status, note=reason, updated_by=updated_by)
    await _commit(session, order)

    logger.info("Refund %.2f recorded for order %s", amount, order.order_number)
    await notify(
        notifier, _event(OrderRefunded, order, amount=amount, payment_status=refund_status)
    )
    return order
