"""
Coupons — クーポン集約

有効性の判定と割引額の計算を行う。
usage_count は used_by の count 合計と常に一致する。
"""

from datetime import datetime

from ..database import as_utc, utcnow

PERCENTAGE = "percentage"
FIXED = "fixed"


def discount_for(
    subtotal: float,
    coupon_type: str,
    value: float,
    maximum_discount: float | None = None,
) -> float:
    """割引額。0 以上、かつ小計を超えない。"""
    if coupon_type == PERCENTAGE:
        discount = subtotal * value / 100
        if maximum_discount is not None:
            discount = min(discount, maximum_discount)
    else:
        discount = value
    return round(max(0.0, min(discount, subtotal)), 2)


class CouponAggregate:
    def __init__(self) -> None:
        self.id: str | None = None
        self.code: str = ""
        self.description: str | None = None
        self.type: str = PERCENTAGE
        self.value: float = 0
        self.minimum_purchase: float = 0
        self.maximum_discount: float | None = None
        self.usage_limit: int | None = None
        self.usage_limit_per_user: int = 1
        self.usage_count: int = 0
        self.used_by: dict[str, dict] = {}
        self.start_date: datetime | None = None
        self.end_date: datetime | None = None
        self.is_active: bool = True

    def is_valid(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        if not self.is_active:
            return False
        if self.start_date and now < self.start_date:
            return False
        if self.end_date and now > self.end_date:
            return False
        if self.usage_limit is not None and self.usage_count >= self.usage_limit:
            return False
        return True

    def usage_by(self, user_id: str) -> int:
        return self.used_by.get(user_id, {}).get("count", 0)

    def can_be_used_by(self, user_id: str, now: datetime | None = None) -> bool:
        if not self.is_valid(now):
            return False
        return self.usage_by(user_id) < self.usage_limit_per_user

    def calculate_discount(self, subtotal: float) -> float:
        if subtotal < self.minimum_purchase:
            return 0.0
        return discount_for(subtotal, self.type, self.value, self.maximum_discount)

    def ineligibility(
        self, user_id: str, subtotal: float, now: datetime | None = None
    ) -> str | None:
        """利用できない理由。利用できるなら None。"""
        if not self.is_valid(now):
            return "expired or inactive"
        if not self.can_be_used_by(user_id, now):
            return "usage limit exceeded for this user"
        if subtotal < self.minimum_purchase:
            return f"minimum purchase of {self.minimum_purchase:.2f} required"
        return None

    def record_usage(self, user_id: str, now: datetime | None = None) -> None:
        usage = self.used_by.setdefault(user_id, {"count": 0, "last_used_at": None})
        usage["count"] += 1
        usage["last_used_at"] = now or utcnow()
        self.usage_count += 1

    # ── 変換 ─────────────────────────────────────────

    @classmethod
    def from_row(cls, row, usages=()) -> "CouponAggregate":
        agg = cls()
        agg.id = row.id
        agg.code = row.code
        agg.description = row.description
        agg.type = row.type
        agg.value = row.value
        agg.minimum_purchase = row.minimum_purchase
        agg.maximum_discount = row.maximum_discount
        agg.usage_limit = row.usage_limit
        agg.usage_limit_per_user = row.usage_limit_per_user
        agg.usage_count = row.usage_count
        agg.start_date = as_utc(row.start_date)
        agg.end_date = as_utc(row.end_date)
        agg.is_active = bool(row.is_active)
        agg.used_by = {
            u.user_id: {"count": u.count, "last_used_at": as_utc(u.last_used_at)}
            for u in usages
        }
        return agg

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "type": self.type,
            "value": self.value,
            "minimum_purchase": self.minimum_purchase,
            "maximum_discount": self.maximum_discount,
            "usage_limit": self.usage_limit,
            "usage_limit_per_user": self.usage_limit_per_user,
            "usage_count": self.usage_count,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "is_active": self.is_active,
        }
