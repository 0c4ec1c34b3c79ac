"""
Orders — 注文集約 (Order Aggregate)

カートから作られる注文のスナップショット。商品名・価格などは値でコピーし、
後から商品マスタが変わっても過去の注文は変わらない。

状態遷移:
    pending → confirmed → processing → shipped → delivered
    pending | confirmed | processing → cancelled
    決済イベントから failed / refunded / partially_refunded

返品は本体のステータスとは独立したサブ状態:
    none → requested → approved | rejected,  approved → completed

ステータスを書くたびに timeline に 1 件追記する。
"""

import random
from dataclasses import dataclass
from datetime import datetime

from ..config import Settings
from ..database import as_utc, utcnow
from ..errors import InvalidStateError

PENDING = "pending"
CONFIRMED = "confirmed"
PROCESSING = "processing"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"
REFUNDED = "refunded"
PARTIALLY_REFUNDED = "partially_refunded"
FAILED = "failed"

ORDER_STATUSES = (
    PENDING,
    CONFIRMED,
    PROCESSING,
    SHIPPED,
    DELIVERED,
    CANCELLED,
    REFUNDED,
    PARTIALLY_REFUNDED,
    FAILED,
)
CANCELLABLE_STATUSES = (PENDING, CONFIRMED, PROCESSING)

PAYMENT_METHODS = ("card", "paypal", "cod", "bank_transfer")
SHIPPING_METHODS = ("standard", "express", "overnight")

RETURN_TRANSITIONS = {
    "none": ("requested",),
    "requested": ("approved", "rejected"),
    "approved": ("completed",),
}


# ── 価格計算 ─────────────────────────────────────


@dataclass(frozen=True)
class Pricing:
    subtotal: float
    tax: float
    tax_rate: float
    shipping_cost: float
    discount: float
    total: float


def calculate_pricing(
    subtotal: float, discount: float, shipping_method: str, settings: Settings
) -> Pricing:
    """total = subtotal + tax + shipping - discount（0 未満にはしない）"""
    tax = round(subtotal * settings.tax_rate, 2)
    shipping_cost = 0.0
    if subtotal < settings.free_shipping_threshold:
        shipping_cost = settings.shipping_cost_for(shipping_method)
    total = round(max(0.0, subtotal + tax + shipping_cost - discount), 2)
    return Pricing(
        subtotal=round(subtotal, 2),
        tax=tax,
        tax_rate=settings.tax_rate,
        shipping_cost=shipping_cost,
        discount=round(discount, 2),
        total=total,
    )


def generate_order_number(now: datetime | None = None) -> str:
    """ORD- + ミリ秒タイムスタンプ末尾 8 桁 + 乱数 3 桁"""
    millis = int((now or utcnow()).timestamp() * 1000)
    return f"ORD-{str(millis)[-8:]}{random.randint(0, 999):03d}"


# ── 集約 ─────────────────────────────────────────


@dataclass
class OrderItem:
    product_id: str
    name: str
    quantity: int
    price: float
    sku: str | None = None
    image: str | None = None
    variant: dict | None = None

    @property
    def total(self) -> float:
        return round(self.price * self.quantity, 2)


@dataclass
class TimelineEntry:
    seq: int
    status: str
    timestamp: datetime
    note: str | None = None
    updated_by: str | None = None


class OrderAggregate:
    def __init__(self) -> None:
        self.id: str | None = None
        self.order_number: str = ""
        self.user_id: str = ""
        self.items: list[OrderItem] = []
        self.pricing: Pricing | None = None
        self.coupon_code: str | None = None
        self.shipping_address: dict = {}
        self.billing_address: dict = {}
        self.payment_method: str = "card"
        self.payment_status: str = PENDING
        self.payment_details: dict | None = None
        self.payment_intent_id: str | None = None
        self.refunded_amount: float = 0
        self.shipping_method: str = "standard"
        self.tracking_number: str | None = None
        self.carrier: str | None = None
        self.status: str = PENDING
        self.stock_committed: bool = False
        self.paid_at: datetime | None = None
        self.shipped_at: datetime | None = None
        self.delivered_at: datetime | None = None
        self.cancelled_at: datetime | None = None
        self.cancellation_reason: str | None = None
        self.customer_note: str | None = None
        self.return_requested: bool = False
        self.return_reason: str | None = None
        self.return_status: str = "none"
        self.created_at: datetime | None = None
        self.timeline: list[TimelineEntry] = []
        # まだ保存していない timeline エントリ
        self.new_entries: list[TimelineEntry] = []

    # ── 判定 ─────────────────────────────────────────

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    def can_be_cancelled(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    def can_be_returned(self, window_days: int, now: datetime | None = None) -> bool:
        if self.status != DELIVERED or self.delivered_at is None:
            return False
        elapsed = (now or utcnow()) - self.delivered_at
        return elapsed.days <= window_days

    # ── 状態遷移 ─────────────────────────────────────

    def set_status(
        self,
        status: str,
        note: str | None = None,
        updated_by: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """ステータスを書き、timeline に追記する。変更前のステータスを返す。"""
        if status not in ORDER_STATUSES:
            raise InvalidStateError(f"Unknown order status: {status}")
        now = now or utcnow()
        previous = self.status
        self.status = status

        entry = TimelineEntry(
            seq=len(self.timeline) + 1,
            status=status,
            timestamp=now,
            note=note,
            updated_by=updated_by,
        )
        self.timeline.append(entry)
        self.new_entries.append(entry)

        if status == SHIPPED and not self.shipped_at:
            self.shipped_at = now
        elif status == DELIVERED and not self.delivered_at:
            self.delivered_at = now
        elif status == CANCELLED and not self.cancelled_at:
            self.cancelled_at = now
        return previous

    def cancel(
        self, reason: str | None, updated_by: str | None = None, now: datetime | None = None
    ) -> None:
        if not self.can_be_cancelled():
            raise InvalidStateError("Order cannot be cancelled at this stage")
        self.cancellation_reason = reason
        self.set_status(CANCELLED, note=reason, updated_by=updated_by, now=now)

    def request_return(self, reason: str | None, window_days: int, now: datetime | None = None) -> None:
        if not self.can_be_returned(window_days, now):
            raise InvalidStateError(
                "Return period has expired or order is not eligible for return"
            )
        if self.return_status != "none":
            raise InvalidStateError(f"Return already {self.return_status}")
        self.return_requested = True
        self.return_reason = reason
        self.return_status = "requested"

    def set_return_status(self, return_status: str) -> None:
        allowed = RETURN_TRANSITIONS.get(self.return_status, ())
        if return_status not in allowed:
            raise InvalidStateError(
                f"Cannot move return from {self.return_status} to {return_status}"
            )
        self.return_status = return_status

    def mark_paid(self, transaction_id: str, provider: str, now: datetime | None = None) -> None:
        now = now or utcnow()
        self.payment_status = "paid"
        self.paid_at = now
        self.payment_details = {
            "transaction_id": transaction_id,
            "provider": provider,
            "paid_at": now.isoformat(),
        }

    @property
    def refundable_amount(self) -> float:
        total = self.pricing.total if self.pricing else 0
        return round(max(0.0, total - self.refunded_amount), 2)

    def apply_refund(self, amount: float) -> str:
        """返金額を累積し、合計に達したら refunded、未満なら partially_refunded を返す。"""
        if amount <= 0:
            raise InvalidStateError("Refund amount must be positive")
        if amount > self.refundable_amount:
            raise InvalidStateError(
                f"Refund amount exceeds refundable balance: {self.refundable_amount:.2f}"
            )
        self.refunded_amount = round(self.refunded_amount + amount, 2)
        return PARTIALLY_REFUNDED if self.refundable_amount > 0 else REFUNDED

    # ── 変換 ─────────────────────────────────────────

    @classmethod
    def from_rows(cls, row, item_rows, timeline_rows) -> "OrderAggregate":
        agg = cls()
        agg.id = row.id
        agg.order_number = row.order_number
        agg.user_id = row.user_id
        agg.pricing = Pricing(
            subtotal=row.subtotal,
            tax=row.tax,
            tax_rate=row.tax_rate,
            shipping_cost=row.shipping_cost,
            discount=row.discount,
            total=row.total,
        )
        agg.coupon_code = row.coupon_code
        agg.shipping_address = row.shipping_address
        agg.billing_address = row.billing_address
        agg.payment_method = row.payment_method
        agg.payment_status = row.payment_status
        agg.payment_details = row.payment_details
        agg.payment_intent_id = row.payment_intent_id
        agg.refunded_amount = row.refunded_amount or 0
        agg.shipping_method = row.shipping_method
        agg.tracking_number = row.tracking_number
        agg.carrier = row.carrier
        agg.status = row.status
        agg.stock_committed = bool(row.stock_committed)
        agg.paid_at = as_utc(row.paid_at)
        agg.shipped_at = as_utc(row.shipped_at)
        agg.delivered_at = as_utc(row.delivered_at)
        agg.cancelled_at = as_utc(row.cancelled_at)
        agg.cancellation_reason = row.cancellation_reason
        agg.customer_note = row.customer_note
        agg.return_requested = bool(row.return_requested)
        agg.return_reason = row.return_reason
        agg.return_status = row.return_status
        agg.created_at = as_utc(row.created_at)
        for item in item_rows:
            variant = None
            if item.variant_name is not None or item.variant_value is not None:
                variant = {"name": item.variant_name, "value": item.variant_value}
            agg.items.append(
                OrderItem(
                    product_id=item.product_id,
                    name=item.name,
                    quantity=item.quantity,
                    price=item.price,
                    sku=item.sku,
                    image=item.image,
                    variant=variant,
                )
            )
        agg.timeline = [
            TimelineEntry(
                seq=t.seq,
                status=t.status,
                timestamp=as_utc(t.timestamp),
                note=t.note,
                updated_by=t.updated_by,
            )
            for t in timeline_rows
        ]
        return agg

    def to_dict(self) -> dict:
        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        pricing = self.pricing
        return {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "items": [
                {
                    "product_id": item.product_id,
                    "name": item.name,
                    "sku": item.sku,
                    "image": item.image,
                    "variant": item.variant,
                    "quantity": item.quantity,
                    "price": item.price,
                    "total": item.total,
                }
                for item in self.items
            ],
            "total_items": self.total_items,
            "subtotal": pricing.subtotal if pricing else 0,
            "tax": pricing.tax if pricing else 0,
            "tax_rate": pricing.tax_rate if pricing else 0,
            "shipping_cost": pricing.shipping_cost if pricing else 0,
            "discount": pricing.discount if pricing else 0,
            "total": pricing.total if pricing else 0,
            "coupon_code": self.coupon_code,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "payment_details": self.payment_details,
            "refunded_amount": self.refunded_amount,
            "shipping_method": self.shipping_method,
            "tracking_number": self.tracking_number,
            "carrier": self.carrier,
            "status": self.status,
            "timeline": [
                {
                    "status": t.status,
                    "note": t.note,
                    "timestamp": iso(t.timestamp),
                    "updated_by": t.updated_by,
                }
                for t in self.timeline
            ],
            "paid_at": iso(self.paid_at),
            "shipped_at": iso(self.shipped_at),
            "delivered_at": iso(self.delivered_at),
            "cancelled_at": iso(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "customer_note": self.customer_note,
            "return_requested": self.return_requested,
            "return_reason": self.return_reason,
            "return_status": self.return_status,
            "created_at": iso(self.created_at),
        }
