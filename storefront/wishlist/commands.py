"""
Wishlist — コマンドハンドラ

1 行 = (user_id, product_id)。主キーで重複追加を防ぐ。
"""

import logging

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import products, utcnow, wishlist_items
from ..errors import InvalidStateError
from ..inventory.aggregate import InventoryAggregate
from ..inventory.commands import load_product
from .aggregate import WishlistAggregate

logger = logging.getLogger(__name__)


async def load_wishlist(session: AsyncSession, user_id: str) -> WishlistAggregate:
    result = await session.execute(
        select(wishlist_items)
        .where(wishlist_items.c.user_id == user_id)
        .order_by(wishlist_items.c.added_at.desc())
    )
    return WishlistAggregate.from_rows(user_id, result.fetchall())


async def _catalog(session: AsyncSession, wishlist: WishlistAggregate) -> dict:
    ids = [item.product_id for item in wishlist.items]
    if not ids:
        return {}
    result = await session.execute(select(products).where(products.c.id.in_(ids)))
    return {row.id: InventoryAggregate.from_row(row) for row in result.fetchall()}


async def get_wishlist(session: AsyncSession, user_id: str) -> dict:
    wishlist = await load_wishlist(session, user_id)
    return wishlist.to_dict(await _catalog(session, wishlist))


async def add_to_wishlist(
    session: AsyncSession, user_id: str, product_id: str, note: str | None = None
) -> dict:
    await load_product(session, product_id)
    wishlist = await load_wishlist(session, user_id)
    item = wishlist.add_item(product_id, note)
    try:
        await session.execute(
            insert(wishlist_items).values(
                user_id=user_id, product_id=product_id, note=note, added_at=item.added_at
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise InvalidStateError("Product already in wishlist")
    logger.info("Product %s added to wishlist of %s", product_id, user_id)
    return await get_wishlist(session, user_id)


async def remove_from_wishlist(session: AsyncSession, user_id: str, product_id: str) -> dict:
    """入っていなくてもエラーにしない。"""
    wishlist = await load_wishlist(session, user_id)
    wishlist.remove_item(product_id)
    await session.execute(
        delete(wishlist_items)
        .where(wishlist_items.c.user_id == user_id)
        .where(wishlist_items.c.product_id == product_id)
    )
    await session.commit()
    return wishlist.to_dict(await _catalog(session, wishlist))


async def clear_wishlist(session: AsyncSession, user_id: str) -> dict:
    wishlist = await load_wishlist(session, user_id)
    wishlist.clear()
    await session.execute(delete(wishlist_items).where(wishlist_items.c.user_id == user_id))
    await session.commit()
    return wishlist.to_dict()


async def check_product(session: AsyncSession, user_id: str, product_id: str) -> dict:
    wishlist = await load_wishlist(session, user_id)
    return {"product_id": product_id, "in_wishlist": wishlist.has_product(product_id)}
