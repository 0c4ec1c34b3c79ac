"""
Reviews — クエリハンドラ (Read 側)
"""

from math import ceil

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import reviews
from ..inventory.commands import load_product
from .aggregate import APPROVED, RATING_MAX, RATING_MIN, ReviewAggregate

SORT_COLUMNS = {
    "newest": reviews.c.created_at.desc(),
    "helpful": reviews.c.helpful.desc(),
    "rating": reviews.c.rating.desc(),
}


def _pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": ceil(total / limit) if total else 0,
    }


async def list_product_reviews(
    session: AsyncSession,
    product_id: str,
    rating: int | None = None,
    sort: str = "newest",
    page: int = 1,
    limit: int = 10,
) -> dict:
    """商品の公開レビュー一覧。評価ごとの件数と平均も返す。"""
    product = await load_product(session, product_id)
    page = max(page, 1)
    limit = max(limit, 1)

    public = (reviews.c.product_id == product_id) & (reviews.c.status == APPROVED)
    stmt = select(reviews).where(public)
    count_stmt = select(func.count()).select_from(reviews).where(public)
    if rating is not None:
        stmt = stmt.where(reviews.c.rating == rating)
        count_stmt = count_stmt.where(reviews.c.rating == rating)

    total = (await session.execute(count_stmt)).scalar_one()
    result = await session.execute(
        stmt.order_by(SORT_COLUMNS.get(sort, SORT_COLUMNS["newest"]), reviews.c.id)
        .limit(limit)
        .offset((page - 1) * limit)
    )

    counts = await session.execute(
        select(reviews.c.rating, func.count()).where(public).group_by(reviews.c.rating)
    )
    by_rating = dict(counts.fetchall())
    return {
        "reviews": [ReviewAggregate.from_row(row).to_dict() for row in result.fetchall()],
        "ratings": {
            "average": product.rating_average,
            "count": product.rating_count,
            "distribution": [
                {"rating": value, "count": by_rating.get(value, 0)}
                for value in range(RATING_MAX, RATING_MIN - 1, -1)
            ],
        },
        "pagination": _pagination(page, limit, total),
    }


async def list_user_reviews(
    session: AsyncSession, user_id: str, page: int = 1, limit: int = 10
) -> dict:
    """自分のレビュー一覧（審査中・却下を含む）"""
    page = max(page, 1)
    limit = max(limit, 1)

    total = (
        await session.execute(
            select(func.count()).select_from(reviews).where(reviews.c.user_id == user_id)
        )
    ).scalar_one()
    result = await session.execute(
        select(reviews)
        .where(reviews.c.user_id == user_id)
        .order_by(reviews.c.created_at.desc(), reviews.c.id)
        .limit(limit)
        .offset((page - 1) * limit)
    )
    return {
        "reviews": [ReviewAggregate.from_row(row).to_dict() for row in result.fetchall()],
        "pagination": _pagination(page, limit, total),
    }
