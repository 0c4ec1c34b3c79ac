"""
Cart — コマンドハンドラ

カートは初回アクセス時に作成する。期限切れのカートは空として扱う。
各コマンドは変更後のカートを dict で返す。
"""

import logging

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..coupons.commands import load_coupon
from ..database import cart_items, carts, utcnow
from ..errors import (
    CouponIneligibleError,
    EmptyCartError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
)
from ..inventory.commands import load_product
from .aggregate import CartAggregate

logger = logging.getLogger(__name__)


async def load_cart(session: AsyncSession, user_id: str, ttl_days: int = 30) -> CartAggregate:
    """カートを読み込む。なければ作成する（コミットは呼び出し側）。"""
    result = await session.execute(select(carts).where(carts.c.user_id == user_id))
    row = result.fetchone()
    now = utcnow()
    if not row:
        agg = CartAggregate(user_id)
        agg.touch(ttl_days, now)
        await session.execute(
            insert(carts).values(
                user_id=user_id, expires_at=agg.expires_at, created_at=now, updated_at=now
            )
        )
        return agg

    items = await session.execute(
        select(cart_items).where(cart_items.c.user_id == user_id).order_by(cart_items.c.id)
    )
    agg = CartAggregate.from_rows(row, items.fetchall())
    if agg.is_expired(now):
        logger.info("Cart expired for user %s", user_id)
        agg.clear()
        agg.touch(ttl_days, now)
        await save_cart(session, agg)
    return agg


async def save_cart(session: AsyncSession, cart: CartAggregate) -> None:
    """カート行と明細を書き戻す。明細は入れ替える。"""
    coupon = cart.coupon or {}
    await session.execute(
        update(carts)
        .where(carts.c.user_id == cart.user_id)
        .values(
            coupon_code=coupon.get("code"),
            coupon_discount=coupon.get("discount"),
            coupon_type=coupon.get("type"),
            coupon_maximum_discount=coupon.get("maximum_discount"),
            coupon_minimum_purchase=coupon.get("minimum_purchase"),
            expires_at=cart.expires_at,
            updated_at=utcnow(),
        )
    )
    await session.execute(delete(cart_items).where(cart_items.c.user_id == cart.user_id))
    if cart.items:
        await session.execute(
            insert(cart_items),
            [
                {
                    "user_id": cart.user_id,
                    "product_id": item.product_id,
                    "variant_name": (item.variant or {}).get("name"),
                    "variant_value": (item.variant or {}).get("value"),
                    "quantity": item.quantity,
                    "price": item.price,
                    "added_at": item.added_at,
                }
                for item in cart.items
            ],
        )


async def _commit(session: AsyncSession, cart: CartAggregate, ttl_days: int) -> dict:
    cart.touch(ttl_days)
    await save_cart(session, cart)
    await session.commit()
    return cart.to_dict()


async def get_cart(session: AsyncSession, user_id: str, ttl_days: int = 30) -> dict:
    cart = await load_cart(session, user_id, ttl_days)
    await session.commit()
    return cart.to_dict()


async def add_to_cart(
    session: AsyncSession,
    user_id: str,
    product_id: str,
    quantity: int = 1,
    variant: dict | None = None,
    ttl_days: int = 30,
) -> dict:
    """商品をカートに追加する。価格はこの時点の商品価格で固定。"""
    product = await load_product(session, product_id)
    cart = await load_cart(session, user_id, ttl_days)

    existing = cart.find_item(product_id, variant)
    wanted = quantity + (existing.quantity if existing else 0)
    if not product.is_in_stock(wanted):
        raise InsufficientStockError(product_id, wanted, product.available)

    cart.add_item(product_id, quantity, variant, product.price)
    return await _commit(session, cart, ttl_days)


async def update_cart_item(
    session: AsyncSession,
    user_id: str,
    product_id: str,
    quantity: int,
    variant: dict | None = None,
    ttl_days: int = 30,
) -> dict:
    """数量変更。0 以下なら明細を削除する。"""
    if quantity < 0:
        raise InvalidStateError("Quantity must be positive")
    if quantity > 0:
        try:
            product = await load_product(session, product_id)
        except NotFoundError:
            product = None
        if product and not product.is_in_stock(quantity):
            raise InsufficientStockError(product_id, quantity, product.available)

    cart = await load_cart(session, user_id, ttl_days)
    cart.update_item_quantity(product_id, quantity, variant)
    return await _commit(session, cart, ttl_days)


async def remove_from_cart(
    session: AsyncSession,
    user_id: str,
    product_id: str,
    variant: dict | None = None,
    ttl_days: int = 30,
) -> dict:
    cart = await load_cart(session, user_id, ttl_days)
    cart.remove_item(product_id, variant)
    return await _commit(session, cart, ttl_days)


async def clear_cart(session: AsyncSession, user_id: str, ttl_days: int = 30) -> dict:
    cart = await load_cart(session, user_id, ttl_days)
    cart.clear()
    return await _commit(session, cart, ttl_days)


async def apply_coupon(
    session: AsyncSession, user_id: str, code: str, ttl_days: int = 30
) -> dict:
    """
    クーポン適用コマンド

    クーポンの有効性・ユーザーごとの利用回数・最低購入額を確認してから
    カートにスナップショットを保存する。
    """
    coupon = await load_coupon(session, code)
    cart = await load_cart(session, user_id, ttl_days)
    if cart.is_empty:
        raise EmptyCartError()

    reason = coupon.ineligibility(user_id, cart.subtotal)
    if reason:
        raise CouponIneligibleError(coupon.code, reason)

    cart.apply_coupon(
        coupon.code,
        coupon.value,
        coupon.type,
        coupon.maximum_discount,
        coupon.minimum_purchase,
    )
    logger.info("Coupon %s applied to cart of %s", coupon.code, user_id)
    return await _commit(session, cart, ttl_days)


async def remove_coupon(session: AsyncSession, user_id: str, ttl_days: int = 30) -> dict:
    cart = await load_cart(session, user_id, ttl_days)
    cart.remove_coupon()
    return await _commit(session, cart, ttl_days)
