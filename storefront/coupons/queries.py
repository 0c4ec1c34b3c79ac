"""
Coupons — クエリハンドラ (Read 側)
"""

from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import CouponIneligibleError
from .commands import load_coupon


async def get_coupon(session: AsyncSession, code: str) -> dict:
    coupon = await load_coupon(session, code)
    return coupon.to_dict()


async def validate_coupon(
    session: AsyncSession, code: str, user_id: str, subtotal: float
) -> dict:
    """カートに適用せずに、この小計で使えるかと割引額だけを返す。"""
    coupon = await load_coupon(session, code)
    reason = coupon.ineligibility(user_id, subtotal)
    if reason:
        raise CouponIneligibleError(coupon.code, reason)
    return {
        "code": coupon.code,
        "type": coupon.type,
        "value": coupon.value,
        "discount": coupon.calculate_discount(subtotal),
    }
