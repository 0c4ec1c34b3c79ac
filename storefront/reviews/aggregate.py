"""
Reviews — レビュー集約 (Review Aggregate)

商品 × ユーザーで 1 件。投稿・編集されたレビューは pending に戻り、
管理者が approved にしたものだけが公開され、商品の評価平均に数えられる。

参考になった投票 (helpful) はユーザーごとに up / down のどちらか 1 票:
    同じ票をもう一度   取り消し      (up なら -1, down なら +1)
    反対の票          付け替え      (±2)
    初めての票        追加          (±1)
"""

from datetime import datetime

from ..database import as_utc, utcnow
from ..errors import InvalidStateError

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
REVIEW_STATUSES = (PENDING, APPROVED, REJECTED)

UP = "up"
DOWN = "down"

RATING_MIN = 1
RATING_MAX = 5


def validate_rating(rating: int) -> int:
    if not RATING_MIN <= rating <= RATING_MAX:
        raise InvalidStateError(f"Rating must be between {RATING_MIN} and {RATING_MAX}")
    return rating


def rating_summary(ratings: list[int]) -> tuple[float, int]:
    """(平均 小数 1 桁, 件数)。レビューがなければ (0, 0)。"""
    if not ratings:
        return 0.0, 0
    return round(sum(ratings) / len(ratings), 1), len(ratings)


def _score(vote: str | None) -> int:
    if vote == UP:
        return 1
    if vote == DOWN:
        return -1
    return 0


class ReviewAggregate:
    def __init__(self) -> None:
        self.id: str | None = None
        self.product_id: str = ""
        self.user_id: str = ""
        self.order_id: str | None = None
        self.rating: int = RATING_MAX
        self.title: str | None = None
        self.comment: str = ""
        self.status: str = PENDING
        self.is_verified_purchase: bool = False
        self.is_edited: bool = False
        self.helpful: int = 0
        self.votes: dict[str, str] = {}
        self.response_comment: str | None = None
        self.responded_by: str | None = None
        self.responded_at: datetime | None = None
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None

    @property
    def is_public(self) -> bool:
        return self.status == APPROVED

    # ── 操作 ─────────────────────────────────────────

    def edit(
        self,
        rating: int | None = None,
        title: str | None = None,
        comment: str | None = None,
    ) -> None:
        """本文を書き換え、再審査待ちに戻す。"""
        if rating is not None:
            self.rating = validate_rating(rating)
        if title is not None:
            self.title = title
        if comment is not None:
            self.comment = comment
        self.is_edited = True
        self.status = PENDING
        self.updated_at = utcnow()

    def vote(self, user_id: str, vote: str) -> str | None:
        """投票を反映し、そのユーザーの投票後の状態を返す（取り消しなら None）。"""
        if vote not in (UP, DOWN):
            raise InvalidStateError(f"Vote must be '{UP}' or '{DOWN}'")
        previous = self.votes.get(user_id)
        current = None if previous == vote else vote
        self.helpful += _score(current) - _score(previous)
        if current is None:
            del self.votes[user_id]
        else:
            self.votes[user_id] = current
        return current

    def moderate(self, status: str) -> None:
        if status not in (APPROVED, REJECTED):
            raise InvalidStateError(f"Unknown moderation status: {status}")
        self.status = status
        self.updated_at = utcnow()

    def respond(self, comment: str, responded_by: str, now: datetime | None = None) -> None:
        self.response_comment = comment
        self.responded_by = responded_by
        self.responded_at = now or utcnow()

    # ── 変換 ─────────────────────────────────────────

    @classmethod
    def from_row(cls, row, vote_rows=()) -> "ReviewAggregate":
        agg = cls()
        agg.id = row.id
        agg.product_id = row.product_id
        agg.user_id = row.user_id
        agg.order_id = row.order_id
        agg.rating = row.rating
        agg.title = row.title
        agg.comment = row.comment
        agg.status = row.status
        agg.is_verified_purchase = bool(row.is_verified_purchase)
        agg.is_edited = bool(row.is_edited)
        agg.helpful = row.helpful
        agg.votes = {v.user_id: v.vote for v in vote_rows}
        agg.response_comment = row.response_comment
        agg.responded_by = row.responded_by
        agg.responded_at = as_utc(row.responded_at)
        agg.created_at = as_utc(row.created_at)
        agg.updated_at = as_utc(row.updated_at)
        return agg

    def to_dict(self) -> dict:
        response = None
        if self.response_comment is not None:
            response = {
                "comment": self.response_comment,
                "responded_by": self.responded_by,
                "responded_at": self.responded_at.isoformat() if self.responded_at else None,
            }
        return {
            "id": self.id,
            "product_id": self.product_id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "rating": self.rating,
            "title": self.title,
            "comment": self.comment,
            "status": self.status,
            "is_verified_purchase": self.is_verified_purchase,
            "is_edited": self.is_edited,
            "helpful": self.helpful,
            "response": response,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
