"""
Application service orchestrating payment use-cases.

Every mutation runs inside one unit of work: the exclusive scopes it takes
(order -> payment -> balance, always in that order) are released only after
commit/rollback. Gateway clients and the order port are injected from the
composition root; configuration arrives as an explicit PaymentSettings object.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Iterable, Mapping, Optional

import anyio

from application.dtos.payments import (
    SCENE_BY_METHOD,
    BillSummary,
    CreatePaymentResult,
    DispatchParams,
    GatewayNotification,
    MethodTotals,
    NotifyAck,
    PaymentMethodInfo,
    PaymentView,
    RefundView,
)
from application.ports.order_service import OrderPort, OrderSnapshot
from application.ports.payment_gateway import GatewayClient
from application.services.payment_methods import (
    DispatchOutcome,
    PaymentContext,
    PaymentMethodStrategy,
)
from core.logging_config import get_logger
from core.settings import PaymentSettings
from domain.balance.exceptions import InsufficientBalanceException
from domain.balance.service import BalanceLedger
from domain.common.exceptions import BusinessException, DomainValidationException
from domain.common.locks import order_lock_key, payment_lock_key
from domain.common.money import ZERO, to_money
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    IncidentKind,
    Payment,
    PaymentIncident,
    PaymentMethod,
    PaymentStatus,
)
from domain.payment.events import PaymentEvent, PaymentSucceeded
from domain.payment.exceptions import (
    ConflictingConfirmationException,
    GatewayRejectedException,
    GatewayUnavailableException,
    InvalidStateTransitionException,
    OrderNotPayableException,
    PaymentAlreadyExistsException,
    PaymentAmountMismatchException,
    PaymentMethodUnavailableException,
    PaymentNotFoundException,
    RefundExceedsPaymentException,
)
from domain.payment.service import PaymentStateMachine


logger = get_logger(__name__)

UnitOfWorkFactory = Callable[..., AbstractUnitOfWork]

METHOD_NAMES = {
    PaymentMethod.WECHAT: "微信支付",
    PaymentMethod.ALIPAY: "支付宝",
    PaymentMethod.BALANCE: "余额支付",
}

GATEWAY_ERRORS = (GatewayUnavailableException, GatewayRejectedException)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _month_range(month: str) -> tuple[datetime, datetime]:
    """'YYYY-MM' -> [当月1日, 次月1日)"""
    try:
        year, mon = (int(part) for part in month.split("-", 1))
        start = datetime(year, mon, 1, tzinfo=timezone.utc)
    except ValueError as exc:
        raise DomainValidationException(f"无效的月份: {month}", field="month") from exc
    end = datetime(year + 1, 1, 1, tzinfo=timezone.utc) if mon == 12 else datetime(year, mon + 1, 1, tzinfo=timezone.utc)
    return start, end


class PaymentService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        strategies: Mapping[PaymentMethod, PaymentMethodStrategy],
        orders: OrderPort,
        settings: PaymentSettings,
        *,
        lock_timeout: Optional[float] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._strategies = dict(strategies)
        self._orders = orders
        self._settings = settings
        self._lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _context(self, uow: AbstractUnitOfWork) -> PaymentContext:
        ledger = BalanceLedger(uow, lock_timeout=self._lock_timeout)
        machine = PaymentStateMachine(
            uow.payment_repository,
            ledger,
            payment_number_prefix=self._settings.payment_number_prefix,
            refund_id_prefix=self._settings.refund_id_prefix,
        )
        return PaymentContext(uow=uow, machine=machine, ledger=ledger)

    def _strategy(self, method: PaymentMethod) -> PaymentMethodStrategy:
        strategy = self._strategies.get(PaymentMethod(method))
        if strategy is None:
            raise PaymentMethodUnavailableException(PaymentMethod(method).value)
        return strategy

    def _gateway(self, method: PaymentMethod) -> Optional[GatewayClient]:
        strategy = self._strategies.get(method)
        return strategy.gateway if strategy is not None else None

    async def _lock_payment(
        self,
        uow: AbstractUnitOfWork,
        payment_id: int,
        user_id: Optional[int] = None,
    ) -> Payment:
        await uow.lock(payment_lock_key(payment_id), self._lock_timeout)
        payment = await uow.payment_repository.get_by_id(payment_id, for_update=True)
        if payment is None or (user_id is not None and payment.user_id != user_id):
            raise PaymentNotFoundException(str(payment_id))
        return payment

    async def _read_payment(self, payment_id: int, user_id: Optional[int] = None) -> Payment:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(payment_id)
        if payment is None or (user_id is not None and payment.user_id != user_id):
            raise PaymentNotFoundException(str(payment_id))
        return payment

    def _older_than_threshold(self, since: Optional[datetime]) -> bool:
        if since is None:
            return True
        return (_now() - since).total_seconds() > self._settings.stale_pending_seconds

    async def _publish(self, events: Iterable[PaymentEvent]) -> None:
        """提交后处理领域事件；订单通知失败只记录日志"""
        for event in events:
            logger.info(
                "payment_event",
                event_type=type(event).__name__,
                payment_id=event.payment_id,
                payment_number=event.payment_number,
                order_id=event.order_id,
            )
            if isinstance(event, PaymentSucceeded):
                try:
                    await self._orders.notify_paid(event.order_id, event.payment_number)
                except BusinessException as exc:
                    logger.warning(
                        "order_notify_failed",
                        order_id=event.order_id,
                        payment_number=event.payment_number,
                        error=exc.message,
                    )

    async def _record_incident(
        self,
        ctx: PaymentContext,
        payment: Payment,
        kind: IncidentKind,
        **detail,
    ) -> NotifyAck:
        await ctx.uow.payment_repository.add_incident(PaymentIncident(
            id=None,
            payment_id=payment.id,
            payment_number=payment.payment_number,
            kind=kind,
            detail={k: (str(v) if isinstance(v, Decimal) else v) for k, v in detail.items()},
        ))
        logger.error(
            "payment_incident",
            payment_id=payment.id,
            payment_number=payment.payment_number,
            kind=kind.value,
            **detail,
        )
        return NotifyAck(accepted=True, outcome="incident", payment_number=payment.payment_number, message=kind.value)

    @staticmethod
    def _check_order(order: OrderSnapshot, user_id: int, amount: Decimal) -> None:
        if not order.exists:
            raise OrderNotPayableException(order.order_id, "订单不存在")
        if order.user_id is not None and order.user_id != user_id:
            raise OrderNotPayableException(order.order_id, "订单不属于当前用户")
        if not order.is_payable:
            raise OrderNotPayableException(order.order_id, f"订单状态 {order.status} 不允许支付")
        if order.amount is not None and to_money(order.amount) != amount:
            raise DomainValidationException(
                f"支付金额 {amount} 与订单金额 {to_money(order.amount)} 不一致",
                field="amount",
                details={"order_amount": str(to_money(order.amount)), "amount": str(amount)},
            )

    async def _dispatch(
        self,
        ctx: PaymentContext,
        strategy: PaymentMethodStrategy,
        payment: Payment,
        params: DispatchParams,
    ) -> tuple[DispatchOutcome, Optional[BusinessException]]:
        """派发失败时记录状态并返回异常，由调用方在提交后抛出"""
        try:
            return await strategy.dispatch(ctx, payment, params), None
        except InsufficientBalanceException as exc:
            failed = await ctx.machine.fail(payment, "余额不足")
            logger.info("payment_failed_insufficient_balance", payment_id=payment.id, user_id=payment.user_id)
            return DispatchOutcome(payment=failed), exc
        except GATEWAY_ERRORS as exc:
            logger.warning(
                "payment_dispatch_failed",
                payment_id=payment.id,
                payment_method=payment.payment_method.value,
                error_type=exc.error_type,
                error=exc.message,
            )
            return DispatchOutcome(payment=payment), exc

    @staticmethod
    def _result(outcome: DispatchOutcome) -> CreatePaymentResult:
        initiation = outcome.initiation
        return CreatePaymentResult(
            payment=PaymentView.from_entity(outcome.payment),
            payment_url=initiation.payment_url if initiation else None,
            qr_code=initiation.qr_code if initiation else None,
            prepay_id=initiation.prepay_id if initiation else None,
            pay_params=initiation.pay_params if initiation else None,
        )

    # ------------------------------------------------------------------
    # creation / dispatch
    # ------------------------------------------------------------------

    async def create_payment(
        self,
        order_id: int,
        method: PaymentMethod,
        amount: Decimal,
        user_id: int,
        params: Optional[DispatchParams] = None,
    ) -> CreatePaymentResult:
        """
        创建支付并立即派发

        - 网关支付：返回支付链接/二维码/prepay_id，网关错误时支付保持 pending 并抛出
        - 余额支付：冻结、确认、扣款；余额不足时支付标记为 failed（已提交）并抛出
        """
        strategy = self._strategy(method)
        amount = to_money(amount)
        order = await self._orders.get_order(order_id)
        self._check_order(order, user_id, amount)

        async with self._uow_factory() as uow:
            ctx = self._context(uow)
            await uow.lock(order_lock_key(order_id), self._lock_timeout)
            payment = await ctx.machine.create(order_id, user_id, strategy.method, amount)
            await uow.lock(payment_lock_key(payment.id), self._lock_timeout)
            outcome, error = await self._dispatch(ctx, strategy, payment, params or DispatchParams())
            events = ctx.machine.clear_events()

        await self._publish(events)
        if error is not None:
            raise error
        logger.info(
            "payment_created",
            payment_id=outcome.payment.id,
            order_id=order_id,
            payment_method=strategy.method.value,
            status=outcome.payment.status.value,
        )
        return self._result(outcome)

    async def pay_with_gateway(
        self,
        order_id: int,
        method: PaymentMethod,
        amount: Decimal,
        user_id: int,
        params: Optional[DispatchParams] = None,
    ) -> CreatePaymentResult:
        """
        网关快捷支付：订单已有同方式、尚未派发成功的 pending 支付时重新派发，
        否则与 create_payment 相同
        """
        method = PaymentMethod(method)
        if not method.is_gateway:
            raise DomainValidationException(f"{method.value} 不是网关支付方式", field="payment_method")
        strategy = self._strategy(method)
        amount = to_money(amount)
        order = await self._orders.get_order(order_id)
        self._check_order(order, user_id, amount)

        async with self._uow_factory() as uow:
            ctx = self._context(uow)
            await uow.lock(order_lock_key(order_id), self._lock_timeout)
            existing = await uow.payment_repository.get_active_by_order(order_id)
            if existing is not None:
                reusable = (
                    existing.status == PaymentStatus.PENDING
                    and existing.payment_method == method
                    and existing.user_id == user_id
                    and existing.amount == amount
                    and not existing.gateway_reference
                )
                if not reusable:
                    raise PaymentAlreadyExistsException(order_id, existing.payment_number)
                payment = await self._lock_payment(uow, existing.id)
                logger.info("payment_redispatch", payment_id=payment.id, order_id=order_id)
            else:
                payment = await ctx.machine.create(order_id, user_id, method, amount)
                await uow.lock(payment_lock_key(payment.id), self._lock_timeout)
            outcome, error = await self._dispatch(ctx, strategy, payment, params or DispatchParams())
            events = ctx.machine.clear_events()

        await self._publish(events)
        if error is not None:
            raise error
        return self._result(outcome)

    # ------------------------------------------------------------------
    # notifications
    # ------------------------------------------------------------------

    async def handle_notify(
        self,
        method: PaymentMethod,
        headers: Mapping[str, str],
        body: bytes,
    ) -> NotifyAck:
        """
        处理网关异步通知

        验签失败返回 accepted=False（网关会重试）；其余情况均确认收到，
        包括未知支付、重复通知和需要人工处理的异常通知
        """
        method = PaymentMethod(method)
        gateway = self._gateway(method)
        if gateway is None:
            logger.warning("notify_method_unavailable", payment_method=method.value)
            return NotifyAck(accepted=False, outcome="ignored", message="payment method not enabled")

        notification = await gateway.parse_notification(headers, body)
        if not notification.signature_valid:
            logger.warning("notify_signature_invalid", payment_method=method.value)
            return NotifyAck(accepted=False, outcome="invalid_signature")

        reference = notification.gateway_reference
        if not reference:
            logger.warning("notify_missing_reference", payment_method=method.value)
            return NotifyAck(accepted=True, outcome="ignored", message="missing reference")

        async with self._uow_factory() as uow:
            ctx = self._context(uow)
            found = await uow.payment_repository.get_by_payment_number(reference)
            if found is None:
                logger.warning("notify_payment_unknown", payment_method=method.value, payment_number=reference)
                return NotifyAck(accepted=True, outcome="ignored", payment_number=reference, message="unknown payment")
            if found.payment_method != method:
                logger.warning(
                    "notify_method_mismatch",
                    payment_number=reference,
                    expected=found.payment_method.value,
                    received=method.value,
                )
                return NotifyAck(accepted=True, outcome="ignored", payment_number=reference, message="method mismatch")

            payment = await self._lock_payment(uow, found.id)
            if notification.kind == "refund":
                ack = await self._apply_refund_notification(ctx, payment, notification)
            else:
                ack = await self._apply_payment_notification(ctx, payment, notification)
            events = ctx.machine.clear_events()

        await self._publish(events)
        logger.info(
            "notify_processed",
            payment_method=method.value,
            payment_number=reference,
            kind=notification.kind,
            outcome=ack.outcome,
        )
        return ack

    async def _apply_payment_notification(
        self,
        ctx: PaymentContext,
        payment: Payment,
        notification: GatewayNotification,
    ) -> NotifyAck:
        number = payment.payment_number
        if notification.outcome == "pending":
            return NotifyAck(accepted=True, outcome="ignored", payment_number=number, message=notification.raw_status)

        if notification.outcome == "failure":
            if payment.status != PaymentStatus.PENDING:
                return NotifyAck(accepted=True, outcome="duplicate", payment_number=number)
            await ctx.machine.fail(payment, f"gateway:{notification.raw_status}")
            return NotifyAck(accepted=True, outcome="applied", payment_number=number)

        transaction_id = notification.transaction_id
        if not transaction_id:
            logger.warning("notify_missing_transaction_id", payment_number=number)
            return NotifyAck(accepted=True, outcome="ignored", payment_number=number, message="missing transaction id")

        if payment.status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            return await self._record_incident(
                ctx,
                payment,
                IncidentKind.CONFIRMATION_AFTER_TERMINAL,
                local_status=payment.status.value,
                transaction_id=transaction_id,
                amount=notification.amount,
            )

        already_paid = payment.status in (PaymentStatus.PAID, PaymentStatus.REFUNDED)
        paid_amount = notification.amount if notification.amount is not None else payment.amount
        try:
            await ctx.machine.confirm(payment, transaction_id, paid_amount)
        except ConflictingConfirmationException:
            return await self._record_incident(
                ctx,
                payment,
                IncidentKind.CONFLICTING_CONFIRMATION,
                existing_transaction_id=payment.transaction_id,
                incoming_transaction_id=transaction_id,
            )
        except PaymentAmountMismatchException:
            return await self._record_incident(
                ctx,
                payment,
                IncidentKind.AMOUNT_MISMATCH,
                expected=payment.amount,
                actual=paid_amount,
                transaction_id=transaction_id,
            )
        except InvalidStateTransitionException:
            return NotifyAck(accepted=True, outcome="duplicate", payment_number=number)

        if already_paid:
            return NotifyAck(accepted=True, outcome="duplicate", payment_number=number)
        logger.info("payment_confirmed", payment_id=payment.id, payment_number=number, transaction_id=transaction_id)
        return NotifyAck(accepted=True, outcome="applied", payment_number=number)

    async def _apply_refund_notification(
        self,
        ctx: PaymentContext,
        payment: Payment,
        notification: GatewayNotification,
    ) -> NotifyAck:
        number = payment.payment_number
        refund_id = notification.refund_id or payment.refund_id
        if not payment.has_pending_refund or refund_id != payment.refund_id:
            if refund_id and refund_id == payment.refund_id and payment.refund_amount > 0:
                return NotifyAck(accepted=True, outcome="duplicate", payment_number=number)
            logger.warning("refund_notify_unmatched", payment_number=number, refund_id=refund_id)
            return NotifyAck(accepted=True, outcome="ignored", payment_number=number, message="unknown refund")

        if notification.outcome == "success":
            amount = notification.refund_amount or payment.pending_refund_amount
            try:
                await ctx.machine.confirm_refund(payment, refund_id, amount)
            except RefundExceedsPaymentException:
                return await self._record_incident(
                    ctx,
                    payment,
                    IncidentKind.AMOUNT_MISMATCH,
                    refund_id=refund_id,
                    expected=payment.pending_refund_amount,
                    actual=amount,
                )
            logger.info("refund_confirmed", payment_id=payment.id, refund_id=refund_id, amount=str(amount))
            return NotifyAck(accepted=True, outcome="applied", payment_number=number)
        if notification.outcome == "failure":
            await ctx.machine.fail_refund(payment, refund_id, f"gateway:{notification.raw_status}")
            logger.info("refund_failed", payment_id=payment.id, refund_id=refund_id)
            return NotifyAck(accepted=True, outcome="applied", payment_number=number)
        return NotifyAck(accepted=True, outcome="ignored", payment_number=number, message=notification.raw_status)

    # ------------------------------------------------------------------
    # cancel / refund
    # ------------------------------------------------------------------

    async def cancel_payment(self, payment_id: int, user_id: Optional[int] = None) -> PaymentView:
        """取消 pending 支付；提交后尽力关闭网关订单"""
        async with self._uow_factory() as uow:
            ctx = self._context(uow)
            payment = await self._lock_payment(uow, payment_id, user_id)
            payment = await ctx.machine.cancel(payment)
            events = ctx.machine.clear_events()

        await self._publish(events)
        gateway = self._gateway(payment.payment_method)
        if gateway is not None and payment.gateway_reference:
            try:
                await gateway.close(payment.gateway_reference)
            except BusinessException as exc:
                logger.warning("gateway_close_failed", payment_id=payment.id, error=exc.message)
        logger.info("payment_cancelled", payment_id=payment.id)
        return PaymentView.from_entity(payment)

    async def refund_payment(
        self,
        payment_id: int,
        amount: Decimal,
        reason: str,
        user_id: Optional[int] = None,
    ) -> RefundView:
        """
        发起退款

        余额支付在同一事务内入账并确认；网关支付提交退款请求，
        网关拒绝时清除处理中标记，网关不可用时标记保留待查询
        """
        error: Optional[BusinessException] = None
        async with self._uow_factory() as uow:
            ctx = self._context(uow)
            payment = await self._lock_payment(uow, payment_id, user_id)
            strategy = self._strategy(payment.payment_method)
            payment = await ctx.machine.request_refund(payment, amount, reason)
            try:
                payment = await strategy.refund(ctx, payment)
            except GATEWAY_ERRORS as exc:
                logger.warning("refund_dispatch_failed", payment_id=payment.id, error_type=exc.error_type, error=exc.message)
                error = exc
            events = ctx.machine.clear_events()

        await self._publish(events)
        if error is not None:
            raise error
        return RefundView.from_entity(payment)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    async def get_payment_status(self, payment_id: int, user_id: Optional[int] = None) -> PaymentView:
        """查询支付状态；网关支付 pending 超过阈值时向网关查询并修正"""
        payment = await self._read_payment(payment_id, user_id)
        if payment.payment_method.is_gateway and payment.is_stale(self._settings.stale_pending_seconds):
            payment = await self._reconcile_pending(payment)
        return PaymentView.from_entity(payment)

    async def _reconcile_pending(self, payment: Payment) -> Payment:
        gateway = self._gateway(payment.payment_method)
        if gateway is None:
            return payment
        try:
            with anyio.fail_after(self._settings.timeouts.query):
                result = await gateway.query_status(payment.gateway_reference or payment.payment_number)
        except TimeoutError:
            logger.warning("payment_status_query_timeout", payment_id=payment.id)
            return payment
        except GATEWAY_ERRORS as exc:
            logger.warning("payment_status_query_failed", payment_id=payment.id, error=exc.message)
            return payment

        if result.status not in ("paid", "failed", "closed"):
            return payment

        async with self._uow_factory() as uow:
            ctx = self._context(uow)
            current = await self._lock_payment(uow, payment.id)
            if current.status == PaymentStatus.PENDING:
                if result.status == "paid" and result.transaction_id:
                    paid_amount = result.amount if result.amount is not None else current.amount
                    try:
                        current = await ctx.machine.confirm(current, result.transaction_id, paid_amount)
                    except PaymentAmountMismatchException:
                        await self._record_incident(
                            ctx,
                            current,
                            IncidentKind.AMOUNT_MISMATCH,
                            expected=current.amount,
                            actual=paid_amount,
                            transaction_id=result.transaction_id,
                        )
                elif result.status in ("failed", "closed"):
                    current = await ctx.machine.fail(current, f"gateway:{result.raw_status or result.status}")
            events = ctx.machine.clear_events()

        await self._publish(events)
        if current.status != PaymentStatus.PENDING:
            logger.info(
                "payment_reconciled",
                payment_id=current.id,
                status=current.status.value,
                gateway_status=result.status,
            )
        return current

    async def get_refund_status(self, payment_id: int, user_id: Optional[int] = None) -> RefundView:
        """查询退款进度；网关退款处理中时向网关查询并修正"""
        payment = await self._read_payment(payment_id, user_id)
        gateway = self._gateway(payment.payment_method)
        if not payment.has_pending_refund or gateway is None:
            return RefundView.from_entity(payment)

        refund_id = payment.refund_id
        try:
            with anyio.fail_after(self._settings.timeouts.query):
                result = await gateway.query_refund(payment.gateway_reference or payment.payment_number, refund_id)
        except TimeoutError:
            logger.warning("refund_status_query_timeout", payment_id=payment.id, refund_id=refund_id)
            return RefundView.from_entity(payment)
        except GATEWAY_ERRORS as exc:
            logger.warning("refund_status_query_failed", payment_id=payment.id, error=exc.message)
            return RefundView.from_entity(payment)

        if result.status == "pending":
            return RefundView.from_entity(payment)

        async with self._uow_factory() as uow:
            ctx = self._context(uow)
            current = await self._lock_payment(uow, payment.id)
            if current.has_pending_refund and current.refund_id == refund_id:
                if result.status == "succeeded":
                    amount = result.amount or current.pending_refund_amount
                    try:
                        current = await ctx.machine.confirm_refund(current, refund_id, amount)
                    except RefundExceedsPaymentException:
                        logger.error(
                            "refund_amount_mismatch",
                            payment_id=current.id,
                            refund_id=refund_id,
                            expected=str(current.pending_refund_amount),
                            actual=str(amount),
                        )
                elif result.status == "failed" or self._older_than_threshold(current.updated_at):
                    # not_found 只在退款登记超过阈值后才视为失败
                    current = await ctx.machine.fail_refund(current, refund_id, f"gateway:{result.status}")
            events = ctx.machine.clear_events()

        await self._publish(events)
        return RefundView.from_entity(current)

    def list_payment_methods(self) -> list[PaymentMethodInfo]:
        return [
            PaymentMethodInfo(
                code=method,
                name=METHOD_NAMES[method],
                enabled=method in self._strategies,
                scenes=sorted(SCENE_BY_METHOD.get(method.value, ())),
            )
            for method in PaymentMethod
        ]

    async def get_payment_history(
        self,
        user_id: int,
        *,
        page: int = 1,
        size: int = 20,
        status: Optional[PaymentStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> tuple[list[PaymentView], int]:
        """用户支付记录（按创建时间倒序分页）"""
        filters = dict(status=status, payment_method=payment_method, start=start, end=end)
        async with self._uow_factory(readonly=True) as uow:
            total = await uow.payment_repository.count_by_user(user_id, **filters)
            items = await uow.payment_repository.list_by_user(
                user_id, skip=(page - 1) * size, limit=size, **filters
            )
        return [PaymentView.from_entity(p) for p in items], total

    async def get_bills(
        self,
        user_id: int,
        *,
        month: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> BillSummary:
        """账单汇总：按月份或时间区间统计已支付、已退款金额"""
        if month:
            start, end = _month_range(month)
        elif start is None and end is None:
            start, end = _month_range(_now().strftime("%Y-%m"))
        else:
            end = end or _now()
            start = start or end - timedelta(days=30)
        if start >= end:
            raise DomainValidationException("开始时间必须早于结束时间", field="start")

        async with self._uow_factory(readonly=True) as uow:
            total = await uow.payment_repository.count_by_user(user_id, start=start, end=end)
            items = await uow.payment_repository.list_by_user(
                user_id, skip=0, limit=max(total, 1), start=start, end=end
            )

        by_method: dict[str, MethodTotals] = {}
        total_paid = ZERO
        total_refunded = ZERO
        for payment in items:
            bucket = by_method.setdefault(payment.payment_method.value, MethodTotals())
            bucket.count += 1
            if payment.status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
                bucket.paid_amount += payment.amount
                total_paid += payment.amount
            bucket.refunded_amount += payment.refund_amount
            total_refunded += payment.refund_amount

        return BillSummary(
            start=start,
            end=end,
            count=len(items),
            total_paid=total_paid,
            total_refunded=total_refunded,
            net_amount=total_paid - total_refunded,
            by_method=by_method,
            items=[PaymentView.from_entity(p) for p in items],
        )

    # ------------------------------------------------------------------
    # background
    # ------------------------------------------------------------------

    async def reconcile_stale_pending(self, limit: Optional[int] = None) -> dict[str, int]:
        """批量修正长时间 pending 的网关支付（定时任务调用）"""
        methods = [m for m in self._strategies if m.is_gateway and self._gateway(m) is not None]
        if not methods:
            return {"checked": 0, "updated": 0}
        before = _now() - timedelta(seconds=self._settings.stale_pending_seconds)
        async with self._uow_factory(readonly=True) as uow:
            stale = await uow.payment_repository.list_stale_pending(
                before, methods, limit or self._settings.reconcile_batch_size
            )

        updated = 0
        for payment in stale:
            result = await self._reconcile_pending(payment)
            if result.status != PaymentStatus.PENDING:
                updated += 1
        logger.info("stale_pending_reconciled", checked=len(stale), updated=updated)
        return {"checked": len(stale), "updated": updated}
