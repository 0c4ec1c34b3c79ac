"""
Coupons — コマンドハンドラ (Write 側)

record_usage / release_usage はコミットしない（注文のトランザクションに含める）。
"""

import logging
from datetime import datetime
from uuid import uuid4

from sqlalchemy import case, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import as_utc, coupon_usages, coupons, utcnow
from ..errors import CouponIneligibleError, InvalidStateError, NotFoundError
from .aggregate import CouponAggregate

logger = logging.getLogger(__name__)


async def find_coupon(session: AsyncSession, code: str) -> CouponAggregate | None:
    result = await session.execute(select(coupons).where(coupons.c.code == code.strip().upper()))
    row = result.fetchone()
    if not row:
        return None
    usages = await session.execute(
        select(coupon_usages).where(coupon_usages.c.coupon_id == row.id)
    )
    return CouponAggregate.from_row(row, usages.fetchall())


async def load_coupon(session: AsyncSession, code: str) -> CouponAggregate:
    agg = await find_coupon(session, code)
    if agg is None:
        raise NotFoundError("Coupon", code.strip().upper())
    return agg


async def create_coupon(
    session: AsyncSession,
    *,
    code: str,
    coupon_type: str,
    value: float,
    start_date: datetime,
    end_date: datetime,
    description: str | None = None,
    minimum_purchase: float = 0,
    maximum_discount: float | None = None,
    usage_limit: int | None = None,
    usage_limit_per_user: int = 1,
    is_active: bool = True,
    created_by: str | None = None,
) -> CouponAggregate:
    """クーポン作成コマンド（管理者）"""
    code = code.strip().upper()
    start_date, end_date = as_utc(start_date), as_utc(end_date)
    if end_date <= start_date:
        raise InvalidStateError("end_date must be after start_date")
    if await find_coupon(session, code) is not None:
        raise InvalidStateError(f"Coupon code already exists: {code}")

    await session.execute(
        insert(coupons).values(
            id=str(uuid4()),
            code=code,
            description=description,
            type=coupon_type,
            value=value,
            minimum_purchase=minimum_purchase,
            maximum_discount=maximum_discount,
            usage_limit=usage_limit,
            usage_limit_per_user=usage_limit_per_user,
            usage_count=0,
            start_date=start_date,
            end_date=end_date,
            is_active=is_active,
            created_by=created_by,
            created_at=utcnow(),
        )
    )
    await session.commit()
    logger.info("Coupon created: %s", code)
    return await load_coupon(session, code)


async def record_usage(session: AsyncSession, coupon_id: str, code: str, user_id: str) -> None:
    """
    クーポン利用を記録する。

    usage_limit に達していたら更新せずに CouponIneligibleError。
    """
    now = utcnow()
    result = await session.execute(
        update(coupons)
        .where(coupons.c.id == coupon_id)
        .where(or_(coupons.c.usage_limit.is_(None), coupons.c.usage_count < coupons.c.usage_limit))
        .values(usage_count=coupons.c.usage_count + 1)
    )
    if result.rowcount == 0:
        raise CouponIneligibleError(code, "usage limit reached")

    result = await session.execute(
        update(coupon_usages)
        .where(coupon_usages.c.coupon_id == coupon_id)
        .where(coupon_usages.c.user_id == user_id)
        .values(count=coupon_usages.c.count + 1, last_used_at=now)
    )
    if result.rowcount == 0:
        await session.execute(
            insert(coupon_usages).values(
                coupon_id=coupon_id, user_id=user_id, count=1, last_used_at=now
            )
        )


async def release_usage(session: AsyncSession, code: str, user_id: str) -> None:
    """利用記録を 1 回分戻す（COUPON_RELEASE_ON_CANCEL 有効時のみ使う）。"""
    agg = await find_coupon(session, code)
    if agg is None or agg.usage_by(user_id) == 0:
        return
    await session.execute(
        update(coupons)
        .where(coupons.c.id == agg.id)
        .values(
            usage_count=case((coupons.c.usage_count > 0, coupons.c.usage_count - 1), else_=0)
        )
    )
    await session.execute(
        update(coupon_usages)
        .where(coupon_usages.c.coupon_id == agg.id)
        .where(coupon_usages.c.user_id == user_id)
        .values(count=coupon_usages.c.count - 1)
    )
