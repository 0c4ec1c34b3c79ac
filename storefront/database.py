"""
Storefront — データベース定義

SQLAlchemy Core のテーブル定義と非同期エンジンの生成。
本番は PostgreSQL (asyncpg)、テストは SQLite (aiosqlite) で同じ定義を使う。
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

metadata = MetaData()


# ── 商品と在庫 ───────────────────────────────────
# available = stock_quantity - stock_reserved

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("sku", String(64), nullable=False, unique=True),
    Column("price", Float, nullable=False),
    Column("image_url", String(500)),
    Column("status", String(20), nullable=False, default="draft"),
    Column("stock_quantity", Integer, nullable=False, default=0),
    Column("stock_reserved", Integer, nullable=False, default=0),
    Column("low_stock_threshold", Integer, nullable=False, default=10),
    Column("sales", Integer, nullable=False, default=0),
    Column("seller_id", String(64)),
    # 承認済みレビューから再計算する
    Column("rating_average", Float, nullable=False, default=0),
    Column("rating_count", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("stock_quantity >= 0", name="ck_products_quantity"),
    CheckConstraint("stock_reserved >= 0", name="ck_products_reserved"),
    CheckConstraint("stock_reserved <= stock_quantity", name="ck_products_reserved_le_quantity"),
)


# ── クーポン ─────────────────────────────────────

coupons = Table(
    "coupons",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("description", String(500)),
    Column("type", String(20), nullable=False),
    Column("value", Float, nullable=False),
    Column("minimum_purchase", Float, nullable=False, default=0),
    Column("maximum_discount", Float),
    Column("usage_limit", Integer),
    Column("usage_limit_per_user", Integer, nullable=False, default=1),
    Column("usage_count", Integer, nullable=False, default=0),
    Column("start_date", DateTime(timezone=True), nullable=False),
    Column("end_date", DateTime(timezone=True), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_by", String(64)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

# usage_count = SUM(coupon_usages.count)
coupon_usages = Table(
    "coupon_usages",
    metadata,
    Column("coupon_id", String(36), ForeignKey("coupons.id"), primary_key=True),
    Column("user_id", String(64), primary_key=True),
    Column("count", Integer, nullable=False, default=0),
    Column("last_used_at", DateTime(timezone=True)),
)


# ── カート ───────────────────────────────────────

carts = Table(
    "carts",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("coupon_code", String(64)),
    Column("coupon_discount", Float),
    Column("coupon_type", String(20)),
    Column("coupon_maximum_discount", Float),
    Column("coupon_minimum_purchase", Float),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

cart_items = Table(
    "cart_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), ForeignKey("carts.user_id"), nullable=False, index=True),
    Column("product_id", String(36), nullable=False),
    Column("variant_name", String(100)),
    Column("variant_value", String(100)),
    Column("quantity", Integer, nullable=False),
    Column("price", Float, nullable=False),
    Column("added_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity >= 1", name="ck_cart_items_quantity"),
)


# ── 注文 ─────────────────────────────────────────

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_number", String(32), nullable=False, unique=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("subtotal", Float, nullable=False),
    Column("tax", Float, nullable=False, default=0),
    Column("tax_rate", Float, nullable=False, default=0),
    Column("shipping_cost", Float, nullable=False, default=0),
    Column("discount", Float, nullable=False, default=0),
    Column("total", Float, nullable=False),
    Column("coupon_code", String(64)),
    Column("shipping_address", JSON, nullable=False),
    Column("billing_address", JSON, nullable=False),
    Column("payment_method", String(20), nullable=False),
    Column("payment_status", String(20), nullable=False, default="pending"),
    Column("payment_details", JSON),
    Column("payment_intent_id", String(255)),
    Column("refunded_amount", Float, nullable=False, default=0),
    Column("shipping_method", String(20), nullable=False, default="standard"),
    Column("tracking_number", String(100)),
    Column("carrier", String(100)),
    Column("status", String(20), nullable=False, default="pending", index=True),
    Column("stock_committed", Boolean, nullable=False, default=False),
    Column("paid_at", DateTime(timezone=True)),
    Column("shipped_at", DateTime(timezone=True)),
    Column("delivered_at", DateTime(timezone=True)),
    Column("cancelled_at", DateTime(timezone=True)),
    Column("cancellation_reason", Text),
    Column("customer_note", Text),
    Column("return_requested", Boolean, nullable=False, default=False),
    Column("return_reason", Text),
    Column("return_status", String(20), nullable=False, default="none"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", String(36), nullable=False),
    Column("name", String(200), nullable=False),
    Column("sku", String(64)),
    Column("image", String(500)),
    Column("variant_name", String(100)),
    Column("variant_value", String(100)),
    Column("quantity", Integer, nullable=False),
    Column("price", Float, nullable=False),
    Column("total", Float, nullable=False),
)

# (order_id, seq) の主キーで同一注文への同時書き込みを検知する
order_timeline = Table(
    "order_timeline",
    metadata,
    Column("order_id", String(36), ForeignKey("orders.id"), primary_key=True),
    Column("seq", Integer, primary_key=True),
    Column("status", String(20), nullable=False),
    Column("note", Text),
    Column("updated_by", String(64)),
    Column("timestamp", DateTime(timezone=True), nullable=False),
)


# ── レビュー ─────────────────────────────────────
# 商品 × ユーザーで 1 件

reviews = Table(
    "reviews",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False, index=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("order_id", String(36)),
    Column("rating", Integer, nullable=False),
    Column("title", String(100)),
    Column("comment", Text, nullable=False),
    Column("status", String(20), nullable=False, default="pending"),
    Column("is_verified_purchase", Boolean, nullable=False, default=False),
    Column("is_edited", Boolean, nullable=False, default=False),
    Column("helpful", Integer, nullable=False, default=0),
    Column("response_comment", Text),
    Column("responded_by", String(64)),
    Column("responded_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("product_id", "user_id", name="uq_reviews_product_user"),
    CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating"),
)

# helpful = up の数 - down の数
review_votes = Table(
    "review_votes",
    metadata,
    Column("review_id", String(36), ForeignKey("reviews.id"), primary_key=True),
    Column("user_id", String(64), primary_key=True),
    Column("vote", String(10), nullable=False),
)


# ── ウィッシュリスト ─────────────────────────────

wishlist_items = Table(
    "wishlist_items",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("product_id", String(36), ForeignKey("products.id"), primary_key=True),
    Column("note", String(500)),
    Column("added_at", DateTime(timezone=True), nullable=False),
)


# ── エンジン / セッション ────────────────────────

def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """存在しないテーブルを作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite はタイムゾーンを落として返すので UTC として扱い直す。"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
