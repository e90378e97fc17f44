"""
支付状态机领域服务 - 驱动 Payment 聚合的生命周期并持久化
"""
from decimal import Decimal
from typing import List, Optional

from domain.balance.service import BalanceLedger
from .entity import Payment, PaymentMethod, PaymentStatus, generate_reference
from .events import (
    PaymentCanceled,
    PaymentCreated,
    PaymentEvent,
    PaymentFailed,
    PaymentRefunded,
    PaymentSucceeded,
    RefundFailed,
    RefundRequested,
)
from .exceptions import PaymentAlreadyExistsException
from .repository import PaymentRepository


class PaymentStateMachine:
    """
    支付状态机 - 编排状态转换与持久化

    职责：
    1. 创建支付时的业务校验（同一订单仅一笔未终结支付）
    2. 委托聚合根执行转换规则，持久化并产生领域事件
    3. 失败/取消时释放余额冻结

    调用方负责在调用前持有该支付的独占作用域。
    """

    def __init__(
        self,
        payment_repository: PaymentRepository,
        ledger: Optional[BalanceLedger] = None,
        *,
        payment_number_prefix: str = "PAY",
        refund_id_prefix: str = "RF",
    ):
        self.payment_repository = payment_repository
        self.ledger = ledger
        self.payment_number_prefix = payment_number_prefix
        self.refund_id_prefix = refund_id_prefix
        self.events: List[PaymentEvent] = []  # 领域事件收集

    def _event(self, cls, payment: Payment, **kwargs) -> None:
        self.events.append(cls(
            payment_id=payment.id,
            payment_number=payment.payment_number,
            order_id=payment.order_id,
            payment_method=payment.payment_method.value,
            **kwargs,
        ))

    async def create(
        self,
        order_id: int,
        user_id: int,
        payment_method: PaymentMethod,
        amount: Decimal,
    ) -> Payment:
        """
        创建支付记录（pending）

        业务规则：订单已有 pending/paid 支付时拒绝，需先取消
        """
        active = await self.payment_repository.get_active_by_order(order_id)
        if active is not None:
            raise PaymentAlreadyExistsException(order_id, active.payment_number)

        payment = Payment(
            id=None,
            payment_number=generate_reference(self.payment_number_prefix),
            order_id=order_id,
            user_id=user_id,
            payment_method=payment_method,
            amount=amount,
            status=PaymentStatus.PENDING,
        )
        created = await self.payment_repository.create(payment)
        self._event(PaymentCreated, created, amount=str(created.amount))
        return created

    async def record_dispatch(self, payment: Payment, gateway_reference: str) -> Payment:
        payment.record_dispatch(gateway_reference)
        return await self.payment_repository.update(payment)

    async def attach_reservation(self, payment: Payment, reservation_id: str) -> Payment:
        payment.attach_reservation(reservation_id)
        return await self.payment_repository.update(payment)

    async def confirm(self, payment: Payment, transaction_id: str, paid_amount: Decimal) -> Payment:
        """确认支付；同一交易号重复确认直接返回"""
        if not payment.confirm(transaction_id, paid_amount):
            return payment
        updated = await self.payment_repository.update(payment)
        self._event(PaymentSucceeded, updated, transaction_id=transaction_id)
        return updated

    async def _release_reservation(self, payment: Payment) -> None:
        if payment.reservation_id and self.ledger is not None:
            await self.ledger.release(payment.reservation_id)

    async def fail(self, payment: Payment, reason: Optional[str] = None) -> Payment:
        payment.fail(reason)
        await self._release_reservation(payment)
        updated = await self.payment_repository.update(payment)
        self._event(PaymentFailed, updated, reason=reason)
        return updated

    async def cancel(self, payment: Payment) -> Payment:
        payment.cancel()
        await self._release_reservation(payment)
        updated = await self.payment_repository.update(payment)
        self._event(PaymentCanceled, updated)
        return updated

    async def request_refund(self, payment: Payment, amount: Decimal, reason: str) -> Payment:
        """登记处理中的退款，新的退款单号写入 payment.refund_id"""
        refund_id = generate_reference(self.refund_id_prefix)
        payment.request_refund(refund_id, amount, reason)
        updated = await self.payment_repository.update(payment)
        self._event(RefundRequested, updated, refund_id=refund_id, amount=str(updated.pending_refund_amount))
        return updated

    async def confirm_refund(self, payment: Payment, refund_id: str, confirmed_amount: Decimal) -> Payment:
        if not payment.confirm_refund(refund_id, confirmed_amount):
            return payment
        updated = await self.payment_repository.update(payment)
        self._event(
            PaymentRefunded,
            updated,
            refund_id=refund_id,
            amount=str(confirmed_amount),
            fully_refunded=updated.status == PaymentStatus.REFUNDED,
        )
        return updated

    async def fail_refund(self, payment: Payment, refund_id: str, reason: Optional[str] = None) -> Payment:
        if not payment.fail_refund(refund_id, reason):
            return payment
        updated = await self.payment_repository.update(payment)
        self._event(RefundFailed, updated, refund_id=refund_id, reason=reason)
        return updated

    def clear_events(self) -> List[PaymentEvent]:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events
