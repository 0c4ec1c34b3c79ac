"""
Inventory — イベント定義
"""

from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel


class LowStockDetected(BaseModel):
    """在庫確定の結果、利用可能数が閾値以下になった"""
    channel: ClassVar[str] = "inventory_events"

    product_id: str
    name: str
    available: int
    threshold: int
    timestamp: datetime
