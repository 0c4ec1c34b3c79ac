"""
Storefront — FastAPI エントリーポイント

カタログ・カート・クーポン・注文・決済・レビュー・ウィッシュリストを
1 つのサービスで提供する。
CQRS に倣い、状態を変えるエンドポイントは *.commands、
読み取りは *.queries に処理を渡すだけにしている。

認証は上流のゲートウェイで済んでいる前提で、
X-User-Id / X-User-Role ヘッダを信頼する。
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Literal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import ADMIN, SELLER, Principal
from .cache import CatalogCache, products_key
from .cart import commands as cart_commands
from .config import Settings, load_settings
from .coupons import commands as coupon_commands
from .coupons import queries as coupon_queries
from .database import as_utc, create_engine, init_schema, make_session_factory
from .dependencies import (
    current_user,
    get_cache,
    get_notifier,
    get_payment_gateway,
    get_session,
    get_settings,
    require_role,
)
from .errors import StorefrontError
from .inventory import commands as inventory_commands
from .inventory import queries as inventory_queries
from .notifications import LogNotifier, Notifier, RedisNotifier
from .orders import commands as order_commands
from .orders import queries as order_queries
from .payments import commands as payment_commands
from .payments.gateway import PaymentGateway, StripeGateway
from .reviews import commands as review_commands
from .reviews import queries as review_queries
from .reviews.aggregate import APPROVED, REJECTED
from .wishlist import commands as wishlist_commands

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = create_engine(settings.database_url)
    await init_schema(engine)

    redis_pool: aioredis.Redis | None = None
    if settings.redis_enabled:
        redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)

    app.state.settings = settings
    app.state.session_factory = make_session_factory(engine)
    app.state.notifier = RedisNotifier(redis_pool) if redis_pool else LogNotifier()
    app.state.payment_gateway = StripeGateway(
        settings.stripe_secret_key, settings.stripe_webhook_secret
    )
    app.state.cache = CatalogCache(redis_pool, settings.cache_ttl)
    logger.info("Storefront started (redis=%s)", "on" if redis_pool else "off")
    yield
    if redis_pool is not None:
        await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Storefront Service", lifespan=lifespan)

admin_only = require_role(ADMIN)
staff_only = require_role(ADMIN, SELLER)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": exc.reason},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ── Request Models ───────────────────────────────


class Variant(BaseModel):
    name: str
    value: str


class Address(BaseModel):
    full_name: str | None = None
    street: str
    city: str
    state: str | None = None
    postal_code: str
    country: str
    phone: str | None = None


class CreateProductRequest(BaseModel):
    name: str
    sku: str
    price: float = Field(ge=0)
    quantity: int = Field(default=0, ge=0)
    low_stock_threshold: int | None = Field(default=None, ge=0)
    status: Literal["draft", "active", "inactive", "out_of_stock"] = "draft"
    image_url: str | None = None


class RestockRequest(BaseModel):
    quantity: int = Field(gt=0)


class CreateCouponRequest(BaseModel):
    code: str
    type: Literal["percentage", "fixed"]
    value: float = Field(gt=0)
    start_date: datetime
    end_date: datetime
    description: str | None = None
    minimum_purchase: float = Field(default=0, ge=0)
    maximum_discount: float | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    usage_limit_per_user: int = Field(default=1, ge=1)
    is_active: bool = True


class ValidateCouponRequest(BaseModel):
    code: str
    subtotal: float = Field(ge=0)


class AddCartItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(default=1, gt=0)
    variant: Variant | None = None


class UpdateCartItemRequest(BaseModel):
    quantity: int
    variant: Variant | None = None


class ApplyCouponRequest(BaseModel):
    code: str


class CreateOrderRequest(BaseModel):
    shipping_address: Address
    billing_address: Address | None = None
    payment_method: Literal["card", "paypal", "cod", "bank_transfer"]
    shipping_method: Literal["standard", "express", "overnight"] = "standard"
    customer_note: str | None = None


class ReasonRequest(BaseModel):
    reason: str | None = None


class UpdateOrderStatusRequest(BaseModel):
    status: str
    tracking_number: str | None = None
    carrier: str | None = None
    note: str | None = None


class UpdateReturnStatusRequest(BaseModel):
    return_status: Literal["approved", "rejected", "completed"]


class PaymentIntentRequest(BaseModel):
    order_id: str


class ConfirmPaymentRequest(BaseModel):
    order_id: str
    payment_intent_id: str


class RefundRequest(BaseModel):
    order_id: str
    amount: float | None = Field(default=None, gt=0)
    reason: str | None = None


class CreateReviewRequest(BaseModel):
    product_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = Field(min_length=1, max_length=1000)
    title: str | None = Field(default=None, max_length=100)
    order_id: str | None = None


class UpdateReviewRequest(BaseModel):
    rating: int | None = Field(default=None, ge=1, le=5)
    comment: str | None = Field(default=None, min_length=1, max_length=1000)
    title: str | None = Field(default=None, max_length=100)


class VoteReviewRequest(BaseModel):
    vote: Literal["up", "down"]


class RespondReviewRequest(BaseModel):
    comment: str = Field(min_length=1, max_length=1000)


class AddWishlistItemRequest(BaseModel):
    product_id: str
    note: str | None = Field(default=None, max_length=500)


def _variant_dict(variant: Variant | None) -> dict | None:
    return variant.model_dump() if variant else None


def _query_variant(name: str | None, value: str | None) -> dict | None:
    if name is None and value is None:
        return None
    return {"name": name, "value": value}


# ── Products ─────────────────────────────────────


@app.post("/products", status_code=201)
async def create_product(
    req: CreateProductRequest,
    principal: Principal = Depends(staff_only),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    cache: CatalogCache = Depends(get_cache),
):
    threshold = req.low_stock_threshold
    agg = await inventory_commands.create_product(
        session,
        name=req.name,
        sku=req.sku,
        price=req.price,
        quantity=req.quantity,
        low_stock_threshold=settings.low_stock_threshold if threshold is None else threshold,
        status=req.status,
        image_url=req.image_url,
        seller_id=principal.user_id,
    )
    await cache.invalidate()
    return agg.to_dict()


@app.get("/products")
async def list_products(
    status: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
    cache: CatalogCache = Depends(get_cache),
):
    key = products_key(status, limit, offset)
    cached = await cache.get(key)
    if cached is not None:
        return cached
    products = await inventory_queries.list_products(session, status, limit, offset)
    await cache.set(key, products)
    return products


@app.get("/products/{product_id}")
async def get_product(product_id: str, session: AsyncSession = Depends(get_session)):
    return await inventory_queries.get_product(session, product_id)


@app.post("/products/{product_id}/restock")
async def restock_product(
    product_id: str,
    req: RestockRequest,
    principal: Principal = Depends(admin_only),
    session: AsyncSession = Depends(get_session),
    cache: CatalogCache = Depends(get_cache),
):
    agg = await inventory_commands.restock_product(session, product_id, req.quantity)
    await cache.invalidate()
    return agg.to_dict()


# ── Admin ────────────────────────────────────────


@app.get("/admin/inventory/low-stock")
async def low_stock(
    threshold: int | None = Query(default=None, ge=0),
    principal: Principal = Depends(admin_only),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    limit = settings.low_stock_threshold if threshold is None else threshold
    return await inventory_queries.list_low_stock(session, limit)


@app.get("/admin/inventory/report")
async def inventory_report(
    principal: Principal = Depends(admin_only),
    session: AsyncSession = Depends(get_session),
):
    return await inventory_queries.inventory_report(session)


@app.get("/admin/orders/stats")
async def order_stats(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    principal: Principal = Depends(admin_only),
    session: AsyncSession = Depends(get_session),
):
    return await order_queries.order_stats(session, as_utc(start_date), as_utc(end_date))


# ── Coupons ──────────────────────────────────────


@app.post("/coupons", status_code=201)
async def create_coupon(
    req: CreateCouponRequest,
    principal: Principal = Depends(admin_only),
    session: AsyncSession = Depends(get_session),
):
    agg = await coupon_commands.create_coupon(
        session,
        code=req.code,
        coupon_type=req.type,
        value=req.value,
        start_date=req.start_date,
        end_date=req.end_date,
        description=req.description,
        minimum_purchase=req.minimum_purchase,
        maximum_discount=req.maximum_discount,
        usage_limit=req.usage_limit,
        usage_limit_per_user=req.usage_limit_per_user,
        is_active=req.is_active,
        created_by=principal.user_id,
    )
    return agg.to_dict()


@app.get("/coupons/{code}")
async def get_coupon(
    code: str,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    return await coupon_queries.get_coupon(session, code)


@app.post("/coupons/validate")
async def validate_coupon(
    req: ValidateCouponRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    return await coupon_queries.validate_coupon(session, req.code, principal.user_id, req.subtotal)


# ── Cart ─────────────────────────────────────────


@app.get("/cart")
async def get_cart(
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    return await cart_commands.get_cart(session, principal.user_id, settings.cart_ttl_days)


@app.post("/cart/items")
async def add_cart_item(
    req: AddCartItemRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    return await cart_commands.add_to_cart(
        session,
        principal.user_id,
        req.product_id,
        req.quantity,
        _variant_dict(req.variant),
        settings.cart_ttl_days,
    )


@app.patch("/cart/items/{product_id}")
async def update_cart_item(
    product_id: str,
    req: UpdateCartItemRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    return await cart_commands.update_cart_item(
        session,
        principal.user_id,
        product_id,
        req.quantity,
        _variant_dict(req.variant),
        settings.cart_ttl_days,
    )


@app.delete("/cart/items/{product_id}")
async def remove_cart_item(
    product_id: str,
    variant_name: str | None = None,
    variant_value: str | None = None,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    return await cart_commands.remove_from_cart(
        session,
        principal.user_id,
        product_id,
        _query_variant(variant_name, variant_value),
        settings.cart_ttl_days,
    )


@app.delete("/cart")
async def clear_cart(
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    return await cart_commands.clear_cart(session, principal.user_id, settings.cart_ttl_days)


@app.post("/cart/coupon")
async def apply_cart_coupon(
    req: ApplyCouponRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    return await cart_commands.apply_coupon(
        session, principal.user_id, req.code, settings.cart_ttl_days
    )


@app.delete("/cart/coupon")
async def remove_cart_coupon(
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    return await cart_commands.remove_coupon(session, principal.user_id, settings.cart_ttl_days)


# ── Orders ───────────────────────────────────────


@app.post("/orders", status_code=201)
async def create_order(
    req: CreateOrderRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
):
    """注文作成（カートの中身から）"""
    agg = await order_commands.create_order(
        session,
        notifier,
        settings,
        principal.user_id,
        shipping_address=req.shipping_address.model_dump(),
        billing_address=req.billing_address.model_dump() if req.billing_address else None,
        payment_method=req.payment_method,
        shipping_method=req.shipping_method,
        customer_note=req.customer_note,
    )
    return agg.to_dict()


@app.get("/orders")
async def list_orders(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    return await order_queries.list_user_orders(session, principal.user_id, status, page, limit)


@app.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    return await order_queries.get_order(session, order_id, principal)


@app.post("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    req: ReasonRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
):
    agg = await order_commands.cancel_order(
        session, notifier, settings, order_id, principal, req.reason
    )
    return agg.to_dict()


@app.post("/orders/{order_id}/return")
async def request_return(
    order_id: str,
    req: ReasonRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
):
    agg = await order_commands.request_return(
        session, notifier, settings, order_id, principal, req.reason
    )
    return agg.to_dict()


@app.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    req: UpdateOrderStatusRequest,
    principal: Principal = Depends(staff_only),
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    agg = await order_commands.update_order_status(
        session,
        notifier,
        order_id,
        principal,
        req.status,
        tracking_number=req.tracking_number,
        carrier=req.carrier,
        note=req.note,
    )
    return agg.to_dict()


@app.patch("/orders/{order_id}/return-status")
async def update_return_status(
    order_id: str,
    req: UpdateReturnStatusRequest,
    principal: Principal = Depends(admin_only),
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    agg = await order_commands.update_return_status(session, notifier, order_id, req.return_status)
    return agg.to_dict()


# ── Payments ─────────────────────────────────────


@app.post("/payments/intent")
async def create_payment_intent(
    req: PaymentIntentRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return await payment_commands.create_payment_intent(
        session, gateway, settings, req.order_id, principal
    )


@app.post("/payments/confirm")
async def confirm_payment(
    req: ConfirmPaymentRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return await payment_commands.confirm_payment(
        session, notifier, gateway, req.order_id, req.payment_intent_id, principal
    )


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Stripe からの通知（ヘッダ認証なし、署名で検証する）"""
    payload = await request.body()
    return await payment_commands.handle_webhook(
        session, notifier, gateway, payload, stripe_signature
    )


@app.post("/payments/refund")
async def refund_payment(
    req: RefundRequest,
    principal: Principal = Depends(admin_only),
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    return await payment_commands.refund_payment(
        session, notifier, gateway, req.order_id, principal, req.amount, req.reason
    )


# ── Reviews ──────────────────────────────────────


@app.get("/products/{product_id}/reviews")
async def list_product_reviews(
    product_id: str,
    rating: int | None = Query(default=None, ge=1, le=5),
    sort: Literal["newest", "helpful", "rating"] = "newest",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    """公開（承認済み）レビューのみ"""
    return await review_queries.list_product_reviews(
        session, product_id, rating, sort, page, limit
    )


@app.get("/reviews/mine")
async def list_my_reviews(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    return await review_queries.list_user_reviews(session, principal.user_id, page, limit)


@app.post("/reviews", status_code=201)
async def create_review(
    req: CreateReviewRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    agg = await review_commands.create_review(
        session,
        principal.user_id,
        product_id=req.product_id,
        rating=req.rating,
        comment=req.comment,
        title=req.title,
        order_id=req.order_id,
    )
    return agg.to_dict()


@app.put("/reviews/{review_id}")
async def update_review(
    review_id: str,
    req: UpdateReviewRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    cache: CatalogCache = Depends(get_cache),
):
    agg = await review_commands.update_review(
        session, review_id, principal, rating=req.rating, title=req.title, comment=req.comment
    )
    await cache.invalidate()
    return agg.to_dict()


@app.delete("/reviews/{review_id}")
async def delete_review(
    review_id: str,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
    cache: CatalogCache = Depends(get_cache),
):
    await review_commands.delete_review(session, review_id, principal)
    await cache.invalidate()
    return {"deleted": True}


@app.post("/reviews/{review_id}/vote")
async def vote_review(
    review_id: str,
    req: VoteReviewRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    agg = await review_commands.vote_review(session, review_id, principal, req.vote)
    return agg.to_dict()


@app.post("/reviews/{review_id}/respond")
async def respond_to_review(
    review_id: str,
    req: RespondReviewRequest,
    principal: Principal = Depends(staff_only),
    session: AsyncSession = Depends(get_session),
):
    agg = await review_commands.respond_to_review(session, review_id, principal, req.comment)
    return agg.to_dict()


@app.patch("/reviews/{review_id}/approve")
async def approve_review(
    review_id: str,
    principal: Principal = Depends(admin_only),
    session: AsyncSession = Depends(get_session),
    cache: CatalogCache = Depends(get_cache),
):
    agg = await review_commands.moderate_review(session, review_id, APPROVED)
    await cache.invalidate()
    return agg.to_dict()


@app.patch("/reviews/{review_id}/reject")
async def reject_review(
    review_id: str,
    principal: Principal = Depends(admin_only),
    session: AsyncSession = Depends(get_session),
    cache: CatalogCache = Depends(get_cache),
):
    agg = await review_commands.moderate_review(session, review_id, REJECTED)
    await cache.invalidate()
    return agg.to_dict()


# ── Wishlist ─────────────────────────────────────


@app.get("/wishlist")
async def get_wishlist(
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    return await wishlist_commands.get_wishlist(session, principal.user_id)


@app.post("/wishlist")
async def add_to_wishlist(
    req: AddWishlistItemRequest,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    return await wishlist_commands.add_to_wishlist(
        session, principal.user_id, req.product_id, req.note
    )


@app.get("/wishlist/check/{product_id}")
async def check_wishlist(
    product_id: str,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    return await wishlist_commands.check_product(session, principal.user_id, product_id)


@app.delete("/wishlist/{product_id}")
async def remove_from_wishlist(
    product_id: str,
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    return await wishlist_commands.remove_from_wishlist(session, principal.user_id, product_id)


@app.delete("/wishlist")
async def clear_wishlist(
    principal: Principal = Depends(current_user),
    session: AsyncSession = Depends(get_session),
):
    return await wishlist_commands.clear_wishlist(session, principal.user_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storefront"}
