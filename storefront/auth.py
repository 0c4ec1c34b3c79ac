"""
Storefront — 呼び出し元の識別

認証は上流のゲートウェイが行い、X-User-Id / X-User-Role ヘッダで
ユーザーとロールを渡してくる前提。ここでは所有者・ロールの判定だけを行う。
"""

from dataclasses import dataclass

from .errors import ForbiddenError

ADMIN = "admin"
SELLER = "seller"
CUSTOMER = "customer"
ROLES = (ADMIN, SELLER, CUSTOMER)


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str = CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN

    def ensure_owner(self, owner_id: str, allow_admin: bool = True) -> None:
        if self.user_id == owner_id:
            return
        if allow_admin and self.is_admin:
            return
        raise ForbiddenError()

    def ensure_role(self, *roles: str) -> None:
        if self.role not in roles:
            raise ForbiddenError(f"Requires role: {', '.join(roles)}")
