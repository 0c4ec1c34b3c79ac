"""
Storefront — ドメイン例外

すべて StorefrontError を継承し、機械可読な reason を持つ。
HTTP ステータスへの変換は main.py の例外ハンドラで行う。
"""


class StorefrontError(Exception):
    """すべてのドメイン例外の基底"""

    reason = "error"
    status_code = 400


class NotFoundError(StorefrontError):
    """ID に対応するエンティティが存在しない"""

    reason = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ItemNotFoundError(StorefrontError):
    """カートに (product_id, variant) の明細がない"""

    reason = "item_not_found"
    status_code = 404

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Item not found in cart: {product_id}")


class UnauthorizedError(StorefrontError):
    reason = "unauthorized"
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ForbiddenError(StorefrontError):
    """所有者またはロールが一致しない"""

    reason = "forbidden"
    status_code = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message)


class InvalidStateError(StorefrontError):
    """現在の状態では実行できない操作"""

    reason = "invalid_state"


class InsufficientStockError(StorefrontError):
    reason = "insufficient_stock"
    status_code = 409

    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock: requested={requested}, available={available}"
        )


class OutOfStockError(InsufficientStockError):
    """チェックアウト時点で在庫が足りない商品がある"""

    reason = "out_of_stock"

    def __init__(self, product_id: str, name: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.name = name
        StorefrontError.__init__(self, f"{name} is out of stock")


class OverDeductionError(StorefrontError):
    """引き当て数を超えて販売確定しようとした（どこかで整合性が崩れている）"""

    reason = "over_deduction"
    status_code = 409

    def __init__(self, product_id: str, requested: int, reserved: int):
        self.product_id = product_id
        self.requested = requested
        self.reserved = reserved
        super().__init__(
            f"Cannot deduct more than reserved stock: requested={requested}, reserved={reserved}"
        )


class CouponIneligibleError(StorefrontError):
    reason = "coupon_ineligible"

    def __init__(self, code: str, detail: str):
        self.code = code
        self.detail = detail
        super().__init__(f"Coupon {code}: {detail}")


class EmptyCartError(StorefrontError):
    reason = "empty_cart"

    def __init__(self):
        super().__init__("Cart is empty")


class SignatureVerificationError(StorefrontError):
    """Webhook の署名が一致しない。再試行しない"""

    reason = "invalid_signature"


class PaymentGatewayError(StorefrontError):
    reason = "payment_gateway_error"
    status_code = 502


class ConcurrentUpdateError(StorefrontError):
    """同じ注文に別のリクエストが先に書き込んだ"""

    reason = "concurrent_update"
    status_code = 409

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} was modified concurrently, retry the request")
