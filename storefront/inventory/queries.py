"""
Inventory — クエリハンドラ (Read 側)
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import products
from .aggregate import InventoryAggregate
from .commands import load_product


async def get_product(session: AsyncSession, product_id: str) -> dict:
    agg = await load_product(session, product_id)
    return agg.to_dict()


async def list_products(
    session: AsyncSession,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict]:
    stmt = select(products).order_by(products.c.created_at.desc()).limit(limit).offset(offset)
    if status:
        stmt = stmt.where(products.c.status == status)
    result = await session.execute(stmt)
    return [InventoryAggregate.from_row(row).to_dict() for row in result.fetchall()]


async def list_low_stock(session: AsyncSession, threshold: int) -> list[dict]:
    """販売中で在庫数が閾値以下の商品"""
    result = await session.execute(
        select(products)
        .where(products.c.status == "active")
        .where(products.c.stock_quantity <= threshold)
        .order_by(products.c.stock_quantity.asc())
    )
    return [InventoryAggregate.from_row(row).to_dict() for row in result.fetchall()]


async def inventory_report(session: AsyncSession) -> dict:
    """在庫レポート（管理者）"""
    counts = await session.execute(
        select(products.c.status, func.count()).group_by(products.c.status)
    )
    by_status = {status: count for status, count in counts.fetchall()}

    value = await session.execute(
        select(func.coalesce(func.sum(products.c.price * products.c.stock_quantity), 0))
        .where(products.c.status == "active")
    )
    return {
        "total_products": sum(by_status.values()),
        "active_products": by_status.get("active", 0),
        "out_of_stock": by_status.get("out_of_stock", 0),
        "total_inventory_value": round(float(value.scalar_one()), 2),
    }
