"""
Storefront — FastAPI の依存関係

起動時に lifespan が app.state に置いたリソースをエンドポイントに渡す。
テストでは app.dependency_overrides で差し替える。
"""

from typing import AsyncIterator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import CUSTOMER, ROLES, Principal
from .cache import CatalogCache
from .config import Settings
from .errors import ForbiddenError, UnauthorizedError
from .notifications import Notifier
from .payments.gateway import PaymentGateway


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.session_factory() as session:
        yield session


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_cache(request: Request) -> CatalogCache:
    return request.app.state.cache


def current_user(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Principal:
    """上流ゲートウェイが付けたヘッダから呼び出し元を組み立てる。"""
    if not x_user_id:
        raise UnauthorizedError()
    role = (x_user_role or CUSTOMER).lower()
    if role not in ROLES:
        raise ForbiddenError(f"Unknown role: {role}")
    return Principal(user_id=x_user_id, role=role)


def require_role(*roles: str):
    def dependency(principal: Principal = Depends(current_user)) -> Principal:
        principal.ensure_role(*roles)
        return principal

    return dependency
