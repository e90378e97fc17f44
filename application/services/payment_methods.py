"""
Per-method payment strategies.

A strategy is chosen once per dispatch from the payment method and runs inside
the caller's unit of work, after the payment scope has been taken.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from application.dtos.payments import (
    DispatchParams,
    GatewayInitiateRequest,
    GatewayInitiateResult,
    GatewayRefundRequest,
)
from application.ports.payment_gateway import GatewayClient
from core.logging_config import get_logger
from domain.balance.service import BalanceLedger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, PaymentMethod
from domain.payment.exceptions import GatewayRejectedException
from domain.payment.service import PaymentStateMachine


logger = get_logger(__name__)


@dataclass
class PaymentContext:
    """Collaborators bound to one unit of work."""
    uow: AbstractUnitOfWork
    machine: PaymentStateMachine
    ledger: BalanceLedger


@dataclass
class DispatchOutcome:
    payment: Payment
    initiation: Optional[GatewayInitiateResult] = None


class PaymentMethodStrategy(Protocol):
    method: PaymentMethod

    @property
    def gateway(self) -> Optional[GatewayClient]: ...

    async def dispatch(self, ctx: PaymentContext, payment: Payment, params: DispatchParams) -> DispatchOutcome: ...

    async def refund(self, ctx: PaymentContext, payment: Payment) -> Payment:
        """Carry out the refund registered on payment (refund_id / pending_refund_amount)."""
        ...


class GatewayStrategy:
    """WeChat Pay / Alipay: hand the payment to the gateway and wait for its callback."""

    def __init__(
        self,
        method: PaymentMethod,
        gateway: GatewayClient,
        *,
        currency: str = "CNY",
        subject_prefix: str = "订单支付",
    ) -> None:
        self.method = method
        self._gateway = gateway
        self._currency = currency
        self._subject_prefix = subject_prefix

    @property
    def gateway(self) -> GatewayClient:
        return self._gateway

    async def dispatch(self, ctx: PaymentContext, payment: Payment, params: DispatchParams) -> DispatchOutcome:
        req = GatewayInitiateRequest(
            payment_number=payment.payment_number,
            amount=payment.amount,
            currency=self._currency,
            subject=f"{self._subject_prefix}-{payment.order_id}",
            scene=params.scene,
            return_url=params.return_url,
            openid=params.openid,
            client_ip=params.client_ip,
        )
        result = await self._gateway.initiate(req)
        payment = await ctx.machine.record_dispatch(payment, result.gateway_reference)
        logger.info(
            "payment_dispatched",
            payment_id=payment.id,
            payment_number=payment.payment_number,
            payment_method=self.method.value,
            scene=params.scene,
        )
        return DispatchOutcome(payment=payment, initiation=result)

    async def refund(self, ctx: PaymentContext, payment: Payment) -> Payment:
        refund_id = payment.refund_id
        amount = payment.pending_refund_amount
        try:
            result = await self._gateway.refund(GatewayRefundRequest(
                gateway_reference=payment.payment_number,
                refund_id=refund_id,
                refund_amount=amount,
                total_amount=payment.amount,
                currency=self._currency,
                reason=payment.refund_reason,
                transaction_id=payment.transaction_id,
            ))
        except GatewayRejectedException as exc:
            await ctx.machine.fail_refund(payment, refund_id, exc.message)
            raise

        if result.status == "succeeded":
            return await ctx.machine.confirm_refund(payment, refund_id, result.amount or amount)
        if result.status in ("failed", "not_found"):
            await ctx.machine.fail_refund(payment, refund_id, result.message)
            raise GatewayRejectedException(
                result.message or "退款被网关拒绝",
                gateway=self.method.value,
                gateway_code=result.gateway_code,
                details={"refund_id": refund_id},
            )
        logger.info("refund_pending_at_gateway", payment_id=payment.id, refund_id=refund_id)
        return payment


class BalanceLedgerAdapter:
    """余额支付：冻结、确认、扣款在同一事务内完成"""

    method = PaymentMethod.BALANCE

    @property
    def gateway(self) -> None:
        return None

    async def dispatch(self, ctx: PaymentContext, payment: Payment, params: DispatchParams) -> DispatchOutcome:
        reservation = await ctx.ledger.reserve(
            payment.user_id,
            payment.amount,
            related_id=payment.payment_number,
            related_type="payment",
        )
        payment = await ctx.machine.attach_reservation(payment, reservation.id)
        payment = await ctx.machine.confirm(payment, reservation.id, payment.amount)
        await ctx.ledger.capture(reservation.id)
        return DispatchOutcome(payment=payment)

    async def refund(self, ctx: PaymentContext, payment: Payment) -> Payment:
        refund_id = payment.refund_id
        amount: Decimal = payment.pending_refund_amount
        # 流水指向支付单；每次部分退款的 refund_id 记在描述里
        await ctx.ledger.credit(
            payment.user_id,
            amount,
            related_id=payment.payment_number,
            related_type="payment",
            description=f"退款入账 {refund_id}",
        )
        return await ctx.machine.confirm_refund(payment, refund_id, amount)
