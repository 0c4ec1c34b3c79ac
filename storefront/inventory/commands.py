"""
Inventory — コマンドハンドラ (Write 側)

在庫の引き当て(Reserve)・解放(Release)・確定(Deduct)・補充(Restock)。

「確認してから更新」の 2 往復だと同時注文で売り越しが起きるため、
各操作は条件付き UPDATE 1 文で行う:

    UPDATE products SET stock_reserved = stock_reserved + :n
    WHERE id = :id AND stock_quantity - stock_reserved >= :n

更新件数 0 のときだけ行を読み直して失敗理由を判定する。
reserve / release / deduct / restore はコミットしない。
呼び出し側 (注文コマンド) のトランザクションにまとめるため。
"""

import logging
from uuid import uuid4

from sqlalchemy import and_, case, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import products, utcnow
from ..errors import (
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    OverDeductionError,
)
from .aggregate import InventoryAggregate

logger = logging.getLogger(__name__)


async def load_product(session: AsyncSession, product_id: str) -> InventoryAggregate:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.fetchone()
    if not row:
        raise NotFoundError("Product", product_id)
    return InventoryAggregate.from_row(row)


async def create_product(
    session: AsyncSession,
    *,
    name: str,
    sku: str,
    price: float,
    quantity: int = 0,
    low_stock_threshold: int = 10,
    status: str = "draft",
    image_url: str | None = None,
    seller_id: str | None = None,
) -> InventoryAggregate:
    """商品登録コマンド"""
    sku = sku.upper()
    existing = await session.execute(select(products.c.id).where(products.c.sku == sku))
    if existing.first():
        raise InvalidStateError(f"SKU already exists: {sku}")

    now = utcnow()
    product_id = str(uuid4())
    await session.execute(
        insert(products).values(
            id=product_id,
            name=name,
            sku=sku,
            price=price,
            image_url=image_url,
            status=status,
            stock_quantity=quantity,
            stock_reserved=0,
            low_stock_threshold=low_stock_threshold,
            sales=0,
            seller_id=seller_id,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()
    logger.info("Product created: %s (%s)", product_id, sku)
    return await load_product(session, product_id)


async def reserve_stock(session: AsyncSession, product_id: str, quantity: int) -> None:
    """在庫引き当て: available >= quantity のときだけ reserved を増やす。"""
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .where(products.c.stock_quantity - products.c.stock_reserved >= quantity)
        .values(
            stock_reserved=products.c.stock_reserved + quantity,
            updated_at=utcnow(),
        )
    )
    if result.rowcount == 0:
        agg = await load_product(session, product_id)
        raise InsufficientStockError(product_id, quantity, agg.available)


async def release_stock(session: AsyncSession, product_id: str, quantity: int) -> None:
    """引き当て解放（補償）: reserved は 0 を下回らない。"""
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(
            stock_reserved=case(
                (products.c.stock_reserved > quantity, products.c.stock_reserved - quantity),
                else_=0,
            ),
            updated_at=utcnow(),
        )
    )
    if result.rowcount == 0:
        raise NotFoundError("Product", product_id)


async def deduct_stock(
    session: AsyncSession, product_id: str, quantity: int
) -> InventoryAggregate:
    """
    在庫確定: 引き当て済みの数量を実在庫から差し引き、販売数に加える。

    reserved < quantity なら何も変えずに OverDeductionError。
    """
    remaining = products.c.stock_quantity - quantity
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .where(products.c.stock_reserved >= quantity)
        .values(
            stock_quantity=remaining,
            stock_reserved=products.c.stock_reserved - quantity,
            sales=products.c.sales + quantity,
            status=case((remaining <= 0, "out_of_stock"), else_=products.c.status),
            updated_at=utcnow(),
        )
    )
    agg = await load_product(session, product_id)
    if result.rowcount == 0:
        raise OverDeductionError(product_id, quantity, agg.reserved)
    return agg


async def restore_stock(session: AsyncSession, product_id: str, quantity: int) -> None:
    """確定済み在庫を戻す。品切れ商品は販売中に戻る。"""
    refilled = products.c.stock_quantity + quantity
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(
            stock_quantity=refilled,
            status=case(
                (and_(products.c.status == "out_of_stock", refilled > 0), "active"),
                else_=products.c.status,
            ),
            updated_at=utcnow(),
        )
    )
    if result.rowcount == 0:
        raise NotFoundError("Product", product_id)


async def restock_product(
    session: AsyncSession, product_id: str, quantity: int
) -> InventoryAggregate:
    """在庫補充コマンド（管理者）"""
    await restore_stock(session, product_id, quantity)
    await session.commit()
    agg = await load_product(session, product_id)
    logger.info("Restocked %s with %d units (quantity=%d)", agg.name, quantity, agg.quantity)
    return agg
