"""
Orders — クエリハンドラ (Read 側)
"""

from datetime import datetime
from math import ceil

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import Principal
from ..database import orders
from .aggregate import CANCELLED, DELIVERED, PENDING
from .commands import hydrate_orders, load_order


async def get_order(session: AsyncSession, order_id: str, principal: Principal) -> dict:
    """注文詳細。本人か管理者のみ。"""
    order = await load_order(session, order_id)
    principal.ensure_owner(order.user_id)
    return order.to_dict()


async def list_user_orders(
    session: AsyncSession,
    user_id: str,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    """ユーザーの注文一覧（新しい順、ページング付き）"""
    page = max(page, 1)
    limit = max(limit, 1)

    stmt = select(orders).where(orders.c.user_id == user_id)
    count_stmt = select(func.count()).select_from(orders).where(orders.c.user_id == user_id)
    if status:
        stmt = stmt.where(orders.c.status == status)
        count_stmt = count_stmt.where(orders.c.status == status)

    total = (await session.execute(count_stmt)).scalar_one()
    result = await session.execute(
        stmt.order_by(orders.c.created_at.desc()).limit(limit).offset((page - 1) * limit)
    )
    aggregates = await hydrate_orders(session, result.fetchall())
    return {
        "orders": [agg.to_dict() for agg in aggregates],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": ceil(total / limit) if total else 0,
        },
    }


async def order_stats(
    session: AsyncSession,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> dict:
    """注文統計（管理者）"""
    stmt = select(
        orders.c.status,
        func.count(),
        func.coalesce(func.sum(orders.c.total), 0),
    ).group_by(orders.c.status)
    if start_date:
        stmt = stmt.where(orders.c.created_at >= start_date)
    if end_date:
        stmt = stmt.where(orders.c.created_at <= end_date)

    breakdown = [
        {"status": status, "count": count, "revenue": round(float(revenue), 2)}
        for status, count, revenue in (await session.execute(stmt)).fetchall()
    ]
    counts = {entry["status"]: entry["count"] for entry in breakdown}
    total_orders = sum(counts.values())
    total_revenue = round(sum(entry["revenue"] for entry in breakdown), 2)
    return {
        "total_orders": total_orders,
        "total_revenue": total_revenue,
        "average_order_value": round(total_revenue / total_orders, 2) if total_orders else 0,
        "pending_orders": counts.get(PENDING, 0),
        "completed_orders": counts.get(DELIVERED, 0),
        "cancelled_orders": counts.get(CANCELLED, 0),
        "status_breakdown": breakdown,
    }
