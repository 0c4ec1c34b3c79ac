"""
Inventory — 在庫集約 (Inventory Aggregate)

商品ごとの在庫数 (quantity) と引き当て数 (reserved) を保持する。
available = quantity - reserved で算出。

状態遷移:
    reserve  : reserved += n            (注文作成時の仮押さえ)
    release  : reserved -= n (0 下限)    (キャンセル時の返却)
    deduct   : quantity -= n, reserved -= n, sales += n  (注文確定で販売に変わる)
    restock  : quantity += n

永続化は commands.py の条件付き UPDATE が同じ規則で行う。
"""

from ..errors import InsufficientStockError, OverDeductionError


class InventoryAggregate:
    def __init__(self) -> None:
        self.id: str | None = None
        self.name: str = ""
        self.sku: str = ""
        self.price: float = 0
        self.image_url: str | None = None
        self.status: str = "draft"
        self.quantity: int = 0
        self.reserved: int = 0
        self.low_stock_threshold: int = 10
        self.sales: int = 0
        self.seller_id: str | None = None
        self.rating_average: float = 0
        self.rating_count: int = 0

    @property
    def available(self) -> int:
        return self.quantity - self.reserved

    @property
    def is_low_stock(self) -> bool:
        return self.available <= self.low_stock_threshold

    def is_in_stock(self, quantity: int = 1) -> bool:
        return self.available >= quantity

    # ── 在庫操作 ─────────────────────────────────────

    def reserve_stock(self, quantity: int) -> None:
        if not self.is_in_stock(quantity):
            raise InsufficientStockError(self.id, quantity, self.available)
        self.reserved += quantity

    def release_stock(self, quantity: int) -> None:
        # 二重解放でも負にならない
        self.reserved = max(0, self.reserved - quantity)

    def deduct_stock(self, quantity: int) -> None:
        if self.reserved < quantity:
            raise OverDeductionError(self.id, quantity, self.reserved)
        self.quantity -= quantity
        self.reserved -= quantity
        self.sales += quantity
        if self.quantity <= 0:
            self.status = "out_of_stock"

    def restock(self, quantity: int) -> None:
        self.quantity += quantity
        if self.quantity > 0 and self.status == "out_of_stock":
            self.status = "active"

    # ── 変換 ─────────────────────────────────────────

    @classmethod
    def from_row(cls, row) -> "InventoryAggregate":
        agg = cls()
        agg.id = row.id
        agg.name = row.name
        agg.sku = row.sku
        agg.price = row.price
        agg.image_url = row.image_url
        agg.status = row.status
        agg.quantity = row.stock_quantity
        agg.reserved = row.stock_reserved
        agg.low_stock_threshold = row.low_stock_threshold
        agg.sales = row.sales
        agg.seller_id = row.seller_id
        agg.rating_average = row.rating_average or 0
        agg.rating_count = row.rating_count or 0
        return agg

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sku": self.sku,
            "price": self.price,
            "image_url": self.image_url,
            "status": self.status,
            "stock": {
                "quantity": self.quantity,
                "reserved": self.reserved,
                "available": self.available,
                "low_stock_threshold": self.low_stock_threshold,
            },
            "sales": self.sales,
            "seller_id": self.seller_id,
            "ratings": {"average": self.rating_average, "count": self.rating_count},
        }
