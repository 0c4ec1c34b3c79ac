"""
Wishlist — ウィッシュリスト集約

ユーザーごとに 1 つ。同じ商品は 1 度しか入らない。
価格や在庫は保存せず、表示のたびに商品から引き直す。
"""

from dataclasses import dataclass, field
from datetime import datetime

from ..database import as_utc, utcnow
from ..errors import InvalidStateError
from ..inventory.aggregate import InventoryAggregate


@dataclass
class WishlistItem:
    product_id: str
    note: str | None = None
    added_at: datetime = field(default_factory=utcnow)


class WishlistAggregate:
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self.items: list[WishlistItem] = []

    def has_product(self, product_id: str) -> bool:
        return any(item.product_id == product_id for item in self.items)

    def add_item(self, product_id: str, note: str | None = None) -> WishlistItem:
        if self.has_product(product_id):
            raise InvalidStateError("Product already in wishlist")
        item = WishlistItem(product_id=product_id, note=note)
        self.items.append(item)
        return item

    def remove_item(self, product_id: str) -> None:
        self.items = [item for item in self.items if item.product_id != product_id]

    def clear(self) -> None:
        self.items = []

    @classmethod
    def from_rows(cls, user_id: str, item_rows) -> "WishlistAggregate":
        agg = cls(user_id)
        agg.items = [
            WishlistItem(product_id=row.product_id, note=row.note, added_at=as_utc(row.added_at))
            for row in item_rows
        ]
        return agg

    def to_dict(self, catalog: dict[str, InventoryAggregate] | None = None) -> dict:
        catalog = catalog or {}
        items = []
        for item in self.items:
            product = catalog.get(item.product_id)
            items.append(
                {
                    "product_id": item.product_id,
                    "note": item.note,
                    "added_at": item.added_at.isoformat(),
                    "product": {
                        "name": product.name,
                        "price": product.price,
                        "image_url": product.image_url,
                        "status": product.status,
                        "available": product.available,
                        "ratings": {
                            "average": product.rating_average,
                            "count": product.rating_count,
                        },
                    }
                    if product
                    else None,
                }
            )
        return {"user_id": self.user_id, "items": items, "total_items": len(items)}
