"""
组装根：根据配置构建锁管理器、网关、支付策略和应用服务

API 依赖与 Celery 任务都从这里获取服务实例，配置对象显式传入各构造函数。
"""
from __future__ import annotations

from functools import partial
from typing import Mapping, Optional

from application.ports.order_service import OrderPort
from application.ports.payment_gateway import GatewayClient
from application.services.payment_methods import (
    BalanceLedgerAdapter,
    GatewayStrategy,
    PaymentMethodStrategy,
)
from application.services.payment_service import PaymentService, UnitOfWorkFactory
from application.services.reconciliation_service import ReconciliationService
from core.config import Settings, get_settings
from core.logging_config import get_logger
from core.settings import PaymentSettings, get_payment_settings
from domain.common.locks import LockManager
from domain.payment.entity import PaymentMethod
from infrastructure.external.api_clients import OrderServiceClient
from infrastructure.external.payments import build_gateways
from infrastructure.locks import InProcessLockManager, RedisLockManager
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


logger = get_logger(__name__)


def build_lock_manager(settings: Settings) -> LockManager:
    backend = settings.LOCK_BACKEND.lower()
    if backend == "redis":
        if not settings.redis.url:
            raise RuntimeError("LOCK_BACKEND=redis requires REDIS__URL")
        return RedisLockManager.from_url(
            settings.redis.url,
            namespace=settings.redis.namespace,
            ttl=settings.LOCK_TTL,
            default_timeout=settings.LOCK_TIMEOUT,
        )
    if backend != "memory":
        raise RuntimeError(f"Unsupported LOCK_BACKEND: {settings.LOCK_BACKEND}")
    return InProcessLockManager(default_timeout=settings.LOCK_TIMEOUT)


def build_strategies(
    payment_settings: PaymentSettings,
    gateways: Mapping[PaymentMethod, GatewayClient],
) -> dict[PaymentMethod, PaymentMethodStrategy]:
    strategies: dict[PaymentMethod, PaymentMethodStrategy] = {}
    prefixes = {
        PaymentMethod.ALIPAY: payment_settings.alipay.subject_prefix,
        PaymentMethod.WECHAT: payment_settings.wechat.description_prefix,
    }
    for method, gateway in gateways.items():
        strategies[method] = GatewayStrategy(
            method,
            gateway,
            currency=payment_settings.currency,
            subject_prefix=prefixes.get(method, "订单支付"),
        )
    if payment_settings.balance.enabled:
        strategies[PaymentMethod.BALANCE] = BalanceLedgerAdapter()
    return strategies


def build_uow_factory(lock_manager: LockManager, session_factory=None) -> UnitOfWorkFactory:
    return partial(SQLAlchemyUnitOfWork, session_factory=session_factory, lock_manager=lock_manager)


class PaymentContainer:
    """进程级服务容器，惰性构建并缓存共享组件"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        payment_settings: Optional[PaymentSettings] = None,
        *,
        gateways: Optional[Mapping[PaymentMethod, GatewayClient]] = None,
        orders: Optional[OrderPort] = None,
        lock_manager: Optional[LockManager] = None,
        session_factory=None,
    ) -> None:
        self.settings = settings or get_settings()
        self.payment_settings = payment_settings or get_payment_settings()
        self.gateways = dict(gateways) if gateways is not None else build_gateways(self.payment_settings)
        self.orders = orders or OrderServiceClient(self.payment_settings.order_service)
        self.lock_manager = lock_manager or build_lock_manager(self.settings)
        self.uow_factory = build_uow_factory(self.lock_manager, session_factory)
        self.strategies = build_strategies(self.payment_settings, self.gateways)
        logger.info(
            "payment_container_ready",
            methods=[m.value for m in self.strategies],
            lock_backend=self.settings.LOCK_BACKEND,
        )

    def payment_service(self) -> PaymentService:
        return PaymentService(
            self.uow_factory,
            self.strategies,
            self.orders,
            self.payment_settings,
            lock_timeout=self.settings.LOCK_TIMEOUT,
        )

    def reconciliation_service(self) -> ReconciliationService:
        return ReconciliationService(self.uow_factory, self.gateways, self.payment_settings)

    async def close(self) -> None:
        close_orders = getattr(self.orders, "close", None)
        if close_orders is not None:
            await close_orders()
        close_locks = getattr(self.lock_manager, "close", None)
        if close_locks is not None:
            await close_locks()


_container: Optional[PaymentContainer] = None


def get_container() -> PaymentContainer:
    global _container
    if _container is None:
        _container = PaymentContainer()
    return _container


def set_container(container: Optional[PaymentContainer]) -> None:
    """替换进程级容器（应用启动与测试使用）"""
    global _container
    _container = container
