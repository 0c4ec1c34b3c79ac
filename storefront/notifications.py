"""
Storefront — 通知の発行

状態変更をイベントとして Redis Pub/Sub に発行する。
メール / SMS は購読側のサービスが送る。

通知は fire-and-forget: 発行に失敗してもログに残すだけで、
呼び出し元の注文処理は巻き戻さない。
"""

import json
import logging
from typing import Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def publish(self, event: BaseModel) -> None: ...


class RedisNotifier:
    """イベントのクラスが持つ channel に JSON で発行する。"""

    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def publish(self, event: BaseModel) -> None:
        await self.redis.publish(
            event.channel,
            json.dumps(
                {
                    "event_type": type(event).__name__,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )


class LogNotifier:
    """Redis 無効時の代替。イベントをログに出すだけ。"""

    async def publish(self, event: BaseModel) -> None:
        logger.info("Event %s: %s", type(event).__name__, event.model_dump(mode="json"))


async def notify(notifier: Notifier, *events: BaseModel) -> None:
    for event in events:
        try:
            await notifier.publish(event)
        except Exception:
            logger.exception("Failed to publish %s", type(event).__name__)
