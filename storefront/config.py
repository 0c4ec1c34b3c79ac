"""
Storefront — 設定

環境変数から設定値を読み込む。起動時に一度だけ読み、以降は不変として扱う。
"""

import os
from dataclasses import dataclass


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"
    redis_enabled: bool = True
    cache_ttl: int = 300

    # 価格計算
    tax_rate: float = 0.08
    free_shipping_threshold: float = 50.0
    default_shipping_cost: float = 5.99
    express_shipping_cost: float = 14.99
    overnight_shipping_cost: float = 29.99

    # 在庫・注文・カート
    low_stock_threshold: int = 10
    order_return_window: int = 30
    cart_ttl_days: int = 30
    coupon_release_on_cancel: bool = False

    # 決済
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_currency: str = "usd"

    log_level: str = "INFO"

    def shipping_cost_for(self, method: str) -> float:
        """配送方法ごとの固定送料"""
        return {
            "express": self.express_shipping_cost,
            "overnight": self.overnight_shipping_cost,
        }.get(method, self.default_shipping_cost)


def load_settings() -> Settings:
    env = os.environ
    return Settings(
        database_url=env["DATABASE_URL"],
        redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
        redis_enabled=_bool(env.get("REDIS_ENABLED", "true")),
        cache_ttl=int(env.get("CACHE_TTL", "300")),
        tax_rate=float(env.get("TAX_RATE", "0.08")),
        free_shipping_threshold=float(env.get("FREE_SHIPPING_THRESHOLD", "50")),
        default_shipping_cost=float(env.get("DEFAULT_SHIPPING_COST", "5.99")),
        express_shipping_cost=float(env.get("EXPRESS_SHIPPING_COST", "14.99")),
        overnight_shipping_cost=float(env.get("OVERNIGHT_SHIPPING_COST", "29.99")),
        low_stock_threshold=int(env.get("LOW_STOCK_THRESHOLD", "10")),
        order_return_window=int(env.get("ORDER_RETURN_WINDOW", "30")),
        cart_ttl_days=int(env.get("CART_TTL_DAYS", "30")),
        coupon_release_on_cancel=_bool(env.get("COUPON_RELEASE_ON_CANCEL", "false")),
        stripe_secret_key=env.get("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET", ""),
        stripe_currency=env.get("STRIPE_CURRENCY", "usd"),
        log_level=env.get("LOG_LEVEL", "INFO"),
    )
