"""
API依赖项 - 认证、授权、限流与应用服务装配
"""
from datetime import timedelta
from typing import Callable, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from application.ports.events import EventPublisher
from application.ports.payment_gateway import PaymentGateway
from application.services.initiation_service import InitiationService
from application.services.refund_service import RefundService
from application.services.transaction_query_service import TransactionQueryService
from application.services.verification_service import VerificationService
from application.services.webhook_service import WebhookProcessor
from core.config import settings
from core.exceptions import ForbiddenException, TokenExpiredException, UnauthorizedException
from core.settings import payment_settings
from domain.common.exceptions import UserInactiveException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.transaction.retry import RetryPolicy
from domain.user.entity import User
from infrastructure.cache import FixedWindowRateLimiter, get_redis_cache
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork
from api.middleware.request_id import get_client_ip

# HTTP Bearer for direct API calls
http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token authentication",
    auto_error=False,
)

_user_limiter = FixedWindowRateLimiter(
    "payments_user",
    payment_settings.rate_limit.user_limit,
    payment_settings.rate_limit.user_window_seconds,
    get_redis_cache,
)
_webhook_limiter = FixedWindowRateLimiter(
    "payments_webhook",
    payment_settings.rate_limit.webhook_limit,
    payment_settings.rate_limit.webhook_window_seconds,
    get_redis_cache,
)


def get_uow_factory() -> Callable[..., AbstractUnitOfWork]:
    return SQLAlchemyUnitOfWork


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_event_publisher(request: Request) -> Optional[EventPublisher]:
    return getattr(request.app.state, "event_publisher", None)


def get_retry_policy() -> RetryPolicy:
    return RetryPolicy(interval=timedelta(minutes=payment_settings.retry_policy.interval_minutes))


async def get_token(
    bearer_token: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> str:
    """从 Bearer 头中提取token"""
    if bearer_token and bearer_token.credentials:
        return bearer_token.credentials
    raise UnauthorizedException("Missing authentication credentials")


def decode_user_id(token: str) -> int:
    """校验令牌签名与有效期，返回 sub 中的用户ID"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise TokenExpiredException()
    except jwt.PyJWTError:
        raise UnauthorizedException("Invalid authentication credentials")
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise UnauthorizedException("Invalid authentication credentials")


async def get_current_user(
    token: str = Depends(get_token),
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
) -> User:
    """获取当前登录用户"""
    user_id = decode_user_id(token)
    async with uow_factory(readonly=True) as uow:
        user = await uow.user_repository.get_by_id(user_id)
    if user is None:
        raise UnauthorizedException("Invalid authentication credentials")
    if not user.is_active:
        raise UserInactiveException()
    return user


async def get_current_superuser(current_user: User = Depends(get_current_user)) -> User:
    """获取当前超级管理员用户"""
    if not current_user.is_superuser:
        raise ForbiddenException("Superuser privileges required")
    return current_user


async def rate_limit_user(current_user: User = Depends(get_current_user)) -> User:
    """按用户限流（发起/确认支付）"""
    await _user_limiter.hit(str(current_user.id))
    return current_user


async def rate_limit_webhook(request: Request) -> None:
    """按来源IP限流（webhook）"""
    client_ip = get_client_ip() or (request.client.host if request.client else "unknown")
    await _webhook_limiter.hit(client_ip)


async def get_initiation_service(
    uow_factory=Depends(get_uow_factory),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    publisher=Depends(get_event_publisher),
) -> InitiationService:
    return InitiationService(
        uow_factory,
        gateway,
        publisher=publisher,
        max_retries=payment_settings.retry_policy.max_retries,
    )


async def get_verification_service(
    uow_factory=Depends(get_uow_factory),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    publisher=Depends(get_event_publisher),
    retry_policy: RetryPolicy = Depends(get_retry_policy),
) -> VerificationService:
    return VerificationService(uow_factory, gateway, publisher=publisher, retry_policy=retry_policy)


async def get_refund_service(
    uow_factory=Depends(get_uow_factory),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    publisher=Depends(get_event_publisher),
) -> RefundService:
    return RefundService(uow_factory, gateway, publisher=publisher)


async def get_query_service(uow_factory=Depends(get_uow_factory)) -> TransactionQueryService:
    return TransactionQueryService(uow_factory)


async def get_webhook_processor(
    uow_factory=Depends(get_uow_factory),
    publisher=Depends(get_event_publisher),
) -> WebhookProcessor:
    return WebhookProcessor(uow_factory, payment_settings.webhook.secret or "", publisher=publisher)
