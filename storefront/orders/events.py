"""
Orders — イベント定義

注文・決済で発生した事実。過去形で命名し、不変として扱う。
コミット後に Notifier 経由で order_events チャネルへ発行し、
メール / SMS 送信などは購読側が行う。
"""

from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel


class OrderEvent(BaseModel):
    channel: ClassVar[str] = "order_events"

    order_id: str
    order_number: str
    user_id: str
    timestamp: datetime


class OrderCreated(OrderEvent):
    """注文が作成された"""
    total: float
    payment_method: str
    status: str


class OrderStatusChanged(OrderEvent):
    """ステータスが変わった（確定・発送・配達など）"""
    previous_status: str
    status: str
    note: str | None = None


class OrderCancelled(OrderEvent):
    """注文がキャンセルされた（引き当て在庫は返却済み）"""
    reason: str | None = None


class ReturnStatusChanged(OrderEvent):
    """返品のサブ状態が変わった"""
    return_status: str
    reason: str | None = None


class PaymentSucceeded(OrderEvent):
    """決済が完了した"""
    transaction_id: str
    amount: float


class PaymentFailed(OrderEvent):
    """決済が失敗した（引き当て在庫は解放済み）"""


class OrderRefunded(OrderEvent):
    """返金された（全額 / 一部）"""
    amount: float
    refunded_amount: float
    payment_status: str
