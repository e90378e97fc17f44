"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

# Mandatory secret key for settings validation
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENVIRONMENT", "test")

from decimal import Decimal
from typing import Mapping, Optional

import anyio
import pytest
import pytest_asyncio

from application.dtos.payments import (
    GatewayInitiateRequest,
    GatewayInitiateResult,
    GatewayNotification,
    GatewayQueryResult,
    GatewayRefundRequest,
    GatewayRefundResult,
)
from application.ports.order_service import OrderSnapshot
from core.settings import PaymentSettings
from domain.balance.service import BalanceLedger
from domain.payment.entity import PaymentMethod
from domain.payment.exceptions import GatewayUnavailableException
from infrastructure.composition import PaymentContainer
from infrastructure.database import create_engine, create_session_factory, create_tables
from infrastructure.locks import InProcessLockManager


class StubGateway:
    """In-memory gateway; the notify body is a JSON-encoded GatewayNotification."""

    def __init__(self, method: str):
        self.method = method
        self.initiated: list[GatewayInitiateRequest] = []
        self.refunds: list[GatewayRefundRequest] = []
        self.closed: list[str] = []
        self.query_calls = 0
        self.query_result = GatewayQueryResult(status="pending")
        self.query_error: Optional[Exception] = None
        self.query_delay = 0.0
        self.refund_status = "succeeded"
        self.refund_query = GatewayRefundResult(refund_id="", status="pending")

    async def initiate(self, req: GatewayInitiateRequest) -> GatewayInitiateResult:
        self.initiated.append(req)
        return GatewayInitiateResult(
            gateway_reference=req.payment_number,
            qr_code=f"{self.method}://qr/{req.payment_number}",
        )

    async def parse_notification(self, headers: Mapping[str, str], body: bytes) -> GatewayNotification:
        return GatewayNotification.model_validate_json(body)

    async def query_status(self, gateway_reference: str) -> GatewayQueryResult:
        self.query_calls += 1
        if self.query_delay:
            await anyio.sleep(self.query_delay)
        if self.query_error is not None:
            raise self.query_error
        return self.query_result

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        self.refunds.append(req)
        return GatewayRefundResult(
            refund_id=req.refund_id,
            status=self.refund_status,
            amount=req.refund_amount,
            message="refund rejected" if self.refund_status == "failed" else None,
        )

    async def query_refund(self, gateway_reference: str, refund_id: str) -> GatewayRefundResult:
        return self.refund_query.model_copy(update={"refund_id": refund_id})

    async def close(self, gateway_reference: str) -> None:
        self.closed.append(gateway_reference)


class StubOrders:
    """Orders are payable unless registered otherwise."""

    def __init__(self):
        self.orders: dict[int, OrderSnapshot] = {}
        self.paid: list[tuple[int, str]] = []

    def add(self, order_id: int, *, user_id=None, amount=None, payable=True, exists=True, status="created"):
        self.orders[order_id] = OrderSnapshot(
            order_id=order_id,
            exists=exists,
            is_payable=payable,
            amount=Decimal(amount) if amount is not None else None,
            user_id=user_id,
            status=status,
        )

    async def get_order(self, order_id: int) -> OrderSnapshot:
        return self.orders.get(order_id) or OrderSnapshot(order_id=order_id, exists=True, is_payable=True)

    async def notify_paid(self, order_id: int, payment_number: str) -> None:
        self.paid.append((order_id, payment_number))


def notification(**fields) -> bytes:
    return GatewayNotification(signature_valid=True, **fields).model_dump_json().encode()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await create_tables(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def wechat_gateway():
    return StubGateway("wechat")


@pytest.fixture
def alipay_gateway():
    return StubGateway("alipay")


@pytest.fixture
def orders():
    return StubOrders()


@pytest.fixture
def payment_settings():
    return PaymentSettings(_env_file=None)


@pytest_asyncio.fixture
async def container(session_factory, wechat_gateway, alipay_gateway, orders, payment_settings):
    c = PaymentContainer(
        payment_settings=payment_settings,
        gateways={PaymentMethod.WECHAT: wechat_gateway, PaymentMethod.ALIPAY: alipay_gateway},
        orders=orders,
        lock_manager=InProcessLockManager(default_timeout=5.0),
        session_factory=session_factory,
    )
    yield c
    await c.close()


@pytest.fixture
def service(container):
    return container.payment_service()


@pytest.fixture
def recharge(container):
    async def _recharge(user_id: int, amount: str) -> None:
        async with container.uow_factory() as uow:
            await BalanceLedger(uow).recharge(user_id, Decimal(amount))

    return _recharge


@pytest.fixture
def read_balance(container):
    async def _read(user_id: int):
        async with container.uow_factory(readonly=True) as uow:
            return await BalanceLedger(uow).get_balance(user_id)

    return _read


@pytest.fixture
def gateway_down():
    return GatewayUnavailableException("gateway down", gateway="wechat")
