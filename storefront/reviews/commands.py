"""
Reviews — コマンドハンドラ (Write 側)

公開状態 (approved) が変わりうる操作のあとは、同じトランザクションで
商品の rating_average / rating_count を承認済みレビューから計算し直す。
"""

import logging
from uuid import uuid4

from sqlalchemy import case, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import Principal
from ..database import order_items, orders, products, review_votes, reviews, utcnow
from ..errors import ForbiddenError, InvalidStateError, NotFoundError
from ..inventory.commands import load_product
from ..orders.aggregate import DELIVERED
from .aggregate import APPROVED, UP, ReviewAggregate, rating_summary, validate_rating

logger = logging.getLogger(__name__)


async def load_review(session: AsyncSession, review_id: str) -> ReviewAggregate:
    result = await session.execute(select(reviews).where(reviews.c.id == review_id))
    row = result.fetchone()
    if not row:
        raise NotFoundError("Review", review_id)
    votes = await session.execute(
        select(review_votes).where(review_votes.c.review_id == review_id)
    )
    return ReviewAggregate.from_row(row, votes.fetchall())


async def refresh_product_rating(session: AsyncSession, product_id: str) -> tuple[float, int]:
    """承認済みレビューの平均と件数を商品に書き戻す。コミットはしない。"""
    result = await session.execute(
        select(reviews.c.rating)
        .where(reviews.c.product_id == product_id)
        .where(reviews.c.status == APPROVED)
    )
    average, count = rating_summary([rating for (rating,) in result.fetchall()])
    await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(rating_average=average, rating_count=count, updated_at=utcnow())
    )
    return average, count


async def _is_verified_purchase(
    session: AsyncSession, user_id: str, product_id: str, order_id: str | None
) -> bool:
    """本人の配達済み注文にその商品が含まれていれば購入済みとみなす。"""
    if not order_id:
        return False
    result = await session.execute(
        select(orders.c.id)
        .select_from(orders.join(order_items, order_items.c.order_id == orders.c.id))
        .where(orders.c.id == order_id)
        .where(orders.c.user_id == user_id)
        .where(orders.c.status == DELIVERED)
        .where(order_items.c.product_id == product_id)
        .limit(1)
    )
    return result.first() is not None


async def _save_review(session: AsyncSession, review: ReviewAggregate) -> None:
    await session.execute(
        update(reviews)
        .where(reviews.c.id == review.id)
        .values(
            rating=review.rating,
            title=review.title,
            comment=review.comment,
            status=review.status,
            is_edited=review.is_edited,
            response_comment=review.response_comment,
            responded_by=review.responded_by,
            responded_at=review.responded_at,
            updated_at=utcnow(),
        )
    )


async def create_review(
    session: AsyncSession,
    user_id: str,
    *,
    product_id: str,
    rating: int,
    comment: str,
    title: str | None = None,
    order_id: str | None = None,
) -> ReviewAggregate:
    """レビュー投稿コマンド。承認されるまで公開しない。"""
    await load_product(session, product_id)
    existing = await session.execute(
        select(reviews.c.id)
        .where(reviews.c.product_id == product_id)
        .where(reviews.c.user_id == user_id)
    )
    if existing.first() is not None:
        raise InvalidStateError("You have already reviewed this product")

    now = utcnow()
    review = ReviewAggregate()
    review.id = str(uuid4())
    review.product_id = product_id
    review.user_id = user_id
    review.order_id = order_id
    review.rating = validate_rating(rating)
    review.title = title
    review.comment = comment
    review.is_verified_purchase = await _is_verified_purchase(
        session, user_id, product_id, order_id
    )
    review.created_at = review.updated_at = now

    try:
        await session.execute(
            insert(reviews).values(
                id=review.id,
                product_id=review.product_id,
                user_id=review.user_id,
                order_id=review.order_id,
                rating=review.rating,
                title=review.title,
                comment=review.comment,
                status=review.status,
                is_verified_purchase=review.is_verified_purchase,
                is_edited=False,
                helpful=0,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise InvalidStateError("You have already reviewed this product")

    logger.info("Review %s submitted for product %s by %s", review.id, product_id, user_id)
    return review


async def update_review(
    session: AsyncSession,
    review_id: str,
    principal: Principal,
    rating: int | None = None,
    title: str | None = None,
    comment: str | None = None,
) -> ReviewAggregate:
    """投稿者本人のみ。編集後は再審査待ち。"""
    review = await load_review(session, review_id)
    principal.ensure_owner(review.user_id, allow_admin=False)
    was_public = review.is_public

    review.edit(rating=rating, title=title, comment=comment)
    await _save_review(session, review)
    if was_public:
        await refresh_product_rating(session, review.product_id)
    await session.commit()
    return review


async def delete_review(session: AsyncSession, review_id: str, principal: Principal) -> None:
    """投稿者本人か管理者。"""
    review = await load_review(session, review_id)
    principal.ensure_owner(review.user_id)

    await session.execute(delete(review_votes).where(review_votes.c.review_id == review.id))
    await session.execute(delete(reviews).where(reviews.c.id == review.id))
    if review.is_public:
        await refresh_product_rating(session, review.product_id)
    await session.commit()
    logger.info("Review %s deleted by %s", review.id, principal.user_id)


async def vote_review(
    session: AsyncSession, review_id: str, principal: Principal, vote: str
) -> ReviewAggregate:
    """参考になった / ならなかった。同じ票を 2 度送ると取り消し。"""
    review = await load_review(session, review_id)
    previous = review.votes.get(principal.user_id)
    current = review.vote(principal.user_id, vote)

    key = (review_votes.c.review_id == review.id) & (review_votes.c.user_id == principal.user_id)
    if current is None:
        await session.execute(delete(review_votes).where(key))
    elif previous is None:
        await session.execute(
            insert(review_votes).values(
                review_id=review.id, user_id=principal.user_id, vote=current
            )
        )
    else:
        await session.execute(update(review_votes).where(key).values(vote=current))

    # 集計列は投票行から数え直す
    score = (
        select(func.coalesce(func.sum(case((review_votes.c.vote == UP, 1), else_=-1)), 0))
        .where(review_votes.c.review_id == review.id)
        .scalar_subquery()
    )
    await session.execute(update(reviews).where(reviews.c.id == review.id).values(helpful=score))
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise InvalidStateError("Vote was already recorded, retry the request")
    return review


async def respond_to_review(
    session: AsyncSession, review_id: str, principal: Principal, comment: str
) -> ReviewAggregate:
    """商品の出品者か管理者が返信する。"""
    review = await load_review(session, review_id)
    product = await load_product(session, review.product_id)
    if not principal.is_admin and principal.user_id != product.seller_id:
        raise ForbiddenError("Only the product seller can respond to this review")

    review.respond(comment, principal.user_id)
    await _save_review(session, review)
    await session.commit()
    return review


async def moderate_review(session: AsyncSession, review_id: str, status: str) -> ReviewAggregate:
    """承認 / 却下（管理者）"""
    review = await load_review(session, review_id)
    review.moderate(status)
    await _save_review(session, review)
    await refresh_product_rating(session, review.product_id)
    await session.commit()
    logger.info("Review %s %s", review.id, status)
    return review
