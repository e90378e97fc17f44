"""
API依赖项 - 认证、授权与服务注入

用户身份来自外部签发的 Bearer JWT：sub 为用户ID，role/roles 声明角色。
"""
from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Optional

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from application.services.payment_service import PaymentService
from application.services.reconciliation_service import ReconciliationService
from core.config import settings
from core.exceptions import ForbiddenException, TokenExpiredException, UnauthorizedException
from core.logging_config import get_logger
from infrastructure.composition import PaymentContainer, get_container


logger = get_logger(__name__)

http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token authentication",
    auto_error=False,
)


@dataclass(frozen=True)
class CurrentUser:
    user_id: int
    roles: frozenset[str] = field(default_factory=frozenset)

    def has_role(self, role: str) -> bool:
        return role in self.roles


def decode_access_token(token: str) -> CurrentUser:
    """校验签名与过期时间，返回当前用户"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise TokenExpiredException()
    except jwt.InvalidTokenError:
        raise UnauthorizedException("无效的认证凭据")

    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise UnauthorizedException("无效的认证凭据")

    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    if payload.get("role"):
        roles = [*roles, payload["role"]]
    return CurrentUser(user_id=user_id, roles=frozenset(str(r) for r in roles))


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> CurrentUser:
    """获取当前登录用户"""
    if credentials is None or not credentials.credentials:
        raise UnauthorizedException("未提供认证凭据")
    user = decode_access_token(credentials.credentials)
    structlog.contextvars.bind_contextvars(user_id=user.user_id)
    return user


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.has_role(settings.ADMIN_ROLE):
        raise ForbiddenException("需要管理员权限")
    return user


def get_payment_container() -> PaymentContainer:
    return get_container()


def get_payment_service(container: PaymentContainer = Depends(get_payment_container)) -> PaymentService:
    return container.payment_service()


def get_reconciliation_service(
    container: PaymentContainer = Depends(get_payment_container),
) -> ReconciliationService:
    return container.reconciliation_service()


def is_notify_source_allowed(request: Request, container: PaymentContainer) -> bool:
    """网关回调来源 IP 白名单（未配置时放行）"""
    allowlist = container.payment_settings.webhook.ip_allowlist or []
    if not allowlist:
        return True
    host = request.client.host if request.client else None
    try:
        remote = ipaddress.ip_address(host or "")
    except ValueError:
        logger.warning("notify_invalid_remote_ip", remote_ip=host)
        return False
    for entry in allowlist:
        try:
            if remote in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("notify_allowlist_entry_invalid", entry=entry)
    logger.warning("notify_ip_not_allowed", remote_ip=host)
    return False
