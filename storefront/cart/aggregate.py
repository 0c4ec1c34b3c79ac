"""
Cart — カート集約

ユーザーごとに 1 つ。価格は追加時点で固定し、後から商品価格を引き直さない。
(product_id, variant) ごとに 1 行だけ持ち、同じ組み合わせの追加は数量を加算する。

subtotal / discount_amount / total は保存せず、毎回行から計算する。
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ..coupons.aggregate import discount_for
from ..database import as_utc, utcnow
from ..errors import ItemNotFoundError


def _variant_key(variant: dict | None) -> tuple | None:
    if not variant:
        return None
    return (variant.get("name"), variant.get("value"))


@dataclass
class CartLine:
    product_id: str
    quantity: int
    price: float
    variant: dict | None = None
    added_at: datetime = field(default_factory=utcnow)

    def matches(self, product_id: str, variant: dict | None) -> bool:
        return self.product_id == product_id and _variant_key(self.variant) == _variant_key(variant)

    @property
    def total(self) -> float:
        return round(self.price * self.quantity, 2)


class CartAggregate:
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self.items: list[CartLine] = []
        self.coupon: dict | None = None
        self.expires_at: datetime | None = None

    # ── 派生値 ───────────────────────────────────────

    @property
    def subtotal(self) -> float:
        return round(sum(item.price * item.quantity for item in self.items), 2)

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def discount_amount(self) -> float:
        if not self.coupon:
            return 0.0
        # 最低購入額を下回ったら割引しない（クーポン自体はカートに残す）
        if self.subtotal < (self.coupon.get("minimum_purchase") or 0):
            return 0.0
        return discount_for(
            self.subtotal,
            self.coupon["type"],
            self.coupon["discount"],
            self.coupon.get("maximum_discount"),
        )

    @property
    def total(self) -> float:
        return round(max(0.0, self.subtotal - self.discount_amount), 2)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def find_item(self, product_id: str, variant: dict | None = None) -> CartLine | None:
        for item in self.items:
            if item.matches(product_id, variant):
                return item
        return None

    # ── 変更操作 ─────────────────────────────────────

    def add_item(
        self,
        product_id: str,
        quantity: int = 1,
        variant: dict | None = None,
        price: float = 0,
    ) -> CartLine:
        existing = self.find_item(product_id, variant)
        if existing:
            existing.quantity += quantity
            return existing
        line = CartLine(product_id=product_id, quantity=quantity, price=price, variant=variant)
        self.items.append(line)
        return line

    def update_item_quantity(
        self, product_id: str, quantity: int, variant: dict | None = None
    ) -> None:
        item = self.find_item(product_id, variant)
        if item is None:
            raise ItemNotFoundError(product_id)
        if quantity <= 0:
            self.items.remove(item)
        else:
            item.quantity = quantity

    def remove_item(self, product_id: str, variant: dict | None = None) -> None:
        self.items = [item for item in self.items if not item.matches(product_id, variant)]

    def clear(self) -> None:
        self.items = []
        self.coupon = None

    def apply_coupon(
        self,
        code: str,
        discount: float,
        coupon_type: str,
        maximum_discount: float | None = None,
        minimum_purchase: float = 0,
    ) -> None:
        # 利用可否の判定は呼び出し側 (CouponAggregate) の責務
        self.coupon = {
            "code": code,
            "discount": discount,
            "type": coupon_type,
            "maximum_discount": maximum_discount,
            "minimum_purchase": minimum_purchase,
        }

    def remove_coupon(self) -> None:
        self.coupon = None

    # ── 有効期限 ─────────────────────────────────────

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at is not None and (now or utcnow()) > self.expires_at

    def touch(self, ttl_days: int, now: datetime | None = None) -> None:
        self.expires_at = (now or utcnow()) + timedelta(days=ttl_days)

    # ── 変換 ─────────────────────────────────────────

    @classmethod
    def from_rows(cls, row, item_rows) -> "CartAggregate":
        agg = cls(row.user_id)
        agg.expires_at = as_utc(row.expires_at)
        if row.coupon_code:
            agg.coupon = {
                "code": row.coupon_code,
                "discount": row.coupon_discount,
                "type": row.coupon_type,
                "maximum_discount": row.coupon_maximum_discount,
                "minimum_purchase": row.coupon_minimum_purchase or 0,
            }
        for item in item_rows:
            variant = None
            if item.variant_name is not None or item.variant_value is not None:
                variant = {"name": item.variant_name, "value": item.variant_value}
            agg.items.append(
                CartLine(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    price=item.price,
                    variant=variant,
                    added_at=as_utc(item.added_at),
                )
            )
        return agg

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "items": [
                {
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "variant": item.variant,
                    "price": item.price,
                    "total": item.total,
                    "added_at": item.added_at.isoformat(),
                }
                for item in self.items
            ],
            "coupon": self.coupon,
            "subtotal": self.subtotal,
            "discount_amount": self.discount_amount,
            "total": self.total,
            "total_items": self.total_items,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
