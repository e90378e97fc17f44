import asyncio
from decimal import Decimal

import pytest

from application.dtos.payments import DispatchParams, GatewayQueryResult, GatewayRefundResult
from conftest import notification
from domain.balance.entity import TransactionType
from domain.balance.exceptions import InsufficientBalanceException
from domain.balance.service import BalanceLedger
from domain.payment.entity import PaymentMethod, PaymentStatus
from domain.payment.exceptions import (
    GatewayRejectedException,
    InvalidStateTransitionException,
    OrderNotPayableException,
    PaymentAlreadyExistsException,
    PaymentNotFoundException,
    RefundExceedsPaymentException,
)


async def _wechat_pending(service, order_id=2, amount="20.00", user_id=7):
    result = await service.create_payment(order_id, PaymentMethod.WECHAT, Decimal(amount), user_id)
    return result.payment


async def _wechat_paid(service, order_id=2, amount="20.00", user_id=7, transaction_id="4200000001"):
    payment = await _wechat_pending(service, order_id, amount, user_id)
    await service.handle_notify(
        PaymentMethod.WECHAT,
        {},
        notification(
            gateway_reference=payment.payment_number,
            transaction_id=transaction_id,
            outcome="success",
            amount=Decimal(amount),
        ),
    )
    return payment


# ============= 余额支付 =============

@pytest.mark.asyncio
async def test_balance_payment_captures_funds(service, orders, recharge, read_balance):
    await recharge(7, "100.00")
    result = await service.create_payment(1, PaymentMethod.BALANCE, Decimal("50.00"), 7)

    assert result.payment.status == PaymentStatus.PAID
    assert result.payment.transaction_id
    balance = await read_balance(7)
    assert balance.balance == Decimal("50.00")
    assert balance.frozen_balance == Decimal("0.00")
    assert orders.paid == [(1, result.payment.payment_number)]


@pytest.mark.asyncio
async def test_balance_payment_insufficient_funds_fails_payment(service, recharge, read_balance):
    await recharge(7, "100.00")
    with pytest.raises(InsufficientBalanceException):
        await service.create_payment(1, PaymentMethod.BALANCE, Decimal("150.00"), 7)

    items, total = await service.get_payment_history(7)
    assert total == 1
    assert items[0].status == PaymentStatus.FAILED
    balance = await read_balance(7)
    assert balance.balance == Decimal("100.00")
    assert balance.frozen_balance == Decimal("0.00")


@pytest.mark.asyncio
async def test_balance_full_refund_credits_user(service, recharge, read_balance):
    await recharge(7, "100.00")
    created = await service.create_payment(3, PaymentMethod.BALANCE, Decimal("80.00"), 7)

    refund = await service.refund_payment(created.payment.id, Decimal("80.00"), "customer request", 7)

    assert refund.status == PaymentStatus.REFUNDED
    assert refund.refund_amount == Decimal("80.00")
    assert refund.refundable_amount == Decimal("0.00")
    balance = await read_balance(7)
    assert balance.balance == Decimal("100.00")


@pytest.mark.asyncio
async def test_refund_cannot_exceed_payment(service, recharge):
    await recharge(7, "100.00")
    created = await service.create_payment(3, PaymentMethod.BALANCE, Decimal("80.00"), 7)

    with pytest.raises(RefundExceedsPaymentException):
        await service.refund_payment(created.payment.id, Decimal("90.00"), "too much", 7)

    status = await service.get_refund_status(created.payment.id, 7)
    assert status.refund_state == "none"
    assert status.refundable_amount == Decimal("80.00")


# ============= 网关支付与回调 =============

@pytest.mark.asyncio
async def test_gateway_payment_stays_pending_until_notified(service, wechat_gateway):
    result = await service.create_payment(
        2, PaymentMethod.WECHAT, Decimal("20.00"), 7, DispatchParams(scene="qr_code")
    )
    assert result.payment.status == PaymentStatus.PENDING
    assert result.payment.gateway_reference == result.payment.payment_number
    assert result.qr_code == f"wechat://qr/{result.payment.payment_number}"
    assert wechat_gateway.initiated[0].amount == Decimal("20.00")


@pytest.mark.asyncio
async def test_duplicate_notify_is_noop(service, orders):
    payment = await _wechat_pending(service)
    body = notification(
        gateway_reference=payment.payment_number,
        transaction_id="4200000001",
        outcome="success",
        amount=Decimal("20.00"),
    )

    first = await service.handle_notify(PaymentMethod.WECHAT, {}, body)
    after_first = await service.get_payment_status(payment.id)
    second = await service.handle_notify(PaymentMethod.WECHAT, {}, body)
    after_second = await service.get_payment_status(payment.id)

    assert (first.accepted, first.outcome) == (True, "applied")
    assert (second.accepted, second.outcome) == (True, "duplicate")
    assert after_first.status == PaymentStatus.PAID
    assert after_second.model_dump() == after_first.model_dump()
    assert len(orders.paid) == 1


@pytest.mark.asyncio
async def test_conflicting_notify_records_incident(service):
    payment = await _wechat_paid(service)
    ack = await service.handle_notify(
        PaymentMethod.WECHAT,
        {},
        notification(
            gateway_reference=payment.payment_number,
            transaction_id="4200000999",
            outcome="success",
            amount=Decimal("20.00"),
        ),
    )

    assert ack.accepted
    assert ack.outcome == "incident"
    assert ack.message == "conflicting_confirmation"
    view = await service.get_payment_status(payment.id)
    assert view.transaction_id == "4200000001"


@pytest.mark.asyncio
async def test_notify_amount_mismatch_keeps_payment_pending(service):
    payment = await _wechat_pending(service)
    ack = await service.handle_notify(
        PaymentMethod.WECHAT,
        {},
        notification(
            gateway_reference=payment.payment_number,
            transaction_id="4200000001",
            outcome="success",
            amount=Decimal("2.00"),
        ),
    )
    assert ack.outcome == "incident"
    assert ack.message == "amount_mismatch"
    view = await service.get_payment_status(payment.id)
    assert view.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_notify_failure_marks_payment_failed(service):
    payment = await _wechat_pending(service)
    ack = await service.handle_notify(
        PaymentMethod.WECHAT,
        {},
        notification(gateway_reference=payment.payment_number, outcome="failure", raw_status="PAYERROR"),
    )
    assert ack.outcome == "applied"
    view = await service.get_payment_status(payment.id)
    assert view.status == PaymentStatus.FAILED
    assert view.failure_reason == "gateway:PAYERROR"


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected(service):
    payment = await _wechat_pending(service)
    body = notification(gateway_reference=payment.payment_number).replace(
        b'"signature_valid":true', b'"signature_valid":false'
    )
    ack = await service.handle_notify(PaymentMethod.WECHAT, {}, body)
    assert not ack.accepted
    assert ack.outcome == "invalid_signature"


@pytest.mark.asyncio
async def test_notify_for_unknown_payment_is_acknowledged(service):
    ack = await service.handle_notify(
        PaymentMethod.ALIPAY,
        {},
        notification(gateway_reference="PAY-UNKNOWN", transaction_id="T1", outcome="success"),
    )
    assert ack.accepted
    assert ack.outcome == "ignored"


@pytest.mark.asyncio
async def test_order_must_be_payable(service, orders):
    orders.add(5, payable=False, status="cancelled")
    with pytest.raises(OrderNotPayableException):
        await service.create_payment(5, PaymentMethod.WECHAT, Decimal("20.00"), 7)

    orders.add(6, exists=False)
    with pytest.raises(OrderNotPayableException):
        await service.create_payment(6, PaymentMethod.WECHAT, Decimal("20.00"), 7)


@pytest.mark.asyncio
async def test_second_payment_for_active_order_is_rejected(service):
    await _wechat_paid(service, order_id=8)
    with pytest.raises(PaymentAlreadyExistsException):
        await service.pay_with_gateway(8, PaymentMethod.ALIPAY, Decimal("20.00"), 7)


# ============= 取消 =============

@pytest.mark.asyncio
async def test_cancel_closes_gateway_order(service, wechat_gateway):
    payment = await _wechat_pending(service)
    view = await service.cancel_payment(payment.id, 7)
    assert view.status == PaymentStatus.CANCELLED
    assert wechat_gateway.closed == [payment.payment_number]

    # 取消后订单可以重新支付
    again = await _wechat_pending(service)
    assert again.id != payment.id


@pytest.mark.asyncio
async def test_cancel_other_users_payment_is_not_found(service):
    payment = await _wechat_pending(service)
    with pytest.raises(PaymentNotFoundException):
        await service.cancel_payment(payment.id, 99)


# ============= 网关退款 =============

@pytest.mark.asyncio
async def test_gateway_refund_pending_then_confirmed_by_query(service, wechat_gateway):
    payment = await _wechat_paid(service, amount="30.00")
    wechat_gateway.refund_status = "pending"

    pending = await service.refund_payment(payment.id, Decimal("10.00"), "missing drink", 7)
    assert pending.refund_state == "pending"
    assert pending.pending_refund_amount == Decimal("10.00")

    wechat_gateway.refund_query = GatewayRefundResult(refund_id="", status="succeeded", amount=Decimal("10.00"))
    done = await service.get_refund_status(payment.id, 7)
    assert done.refund_state == "partial"
    assert done.refund_amount == Decimal("10.00")
    assert done.status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_gateway_refund_rejected_clears_pending(service, wechat_gateway):
    payment = await _wechat_paid(service, amount="30.00")
    wechat_gateway.refund_status = "failed"

    with pytest.raises(GatewayRejectedException):
        await service.refund_payment(payment.id, Decimal("10.00"), "wrong order", 7)

    status = await service.get_refund_status(payment.id, 7)
    assert status.refund_state == "none"
    assert status.refundable_amount == Decimal("30.00")


@pytest.mark.asyncio
async def test_refund_notification_confirms_pending_refund(service, wechat_gateway):
    payment = await _wechat_paid(service, amount="30.00")
    wechat_gateway.refund_status = "pending"
    pending = await service.refund_payment(payment.id, Decimal("30.00"), "order cancelled", 7)

    ack = await service.handle_notify(
        PaymentMethod.WECHAT,
        {},
        notification(
            kind="refund",
            gateway_reference=payment.payment_number,
            refund_id=pending.refund_id,
            refund_amount=Decimal("30.00"),
            outcome="success",
        ),
    )
    assert ack.outcome == "applied"
    view = await service.get_payment_status(payment.id)
    assert view.status == PaymentStatus.REFUNDED


# ============= 状态查询补偿 =============

@pytest.mark.asyncio
async def test_fresh_pending_status_does_not_query_gateway(service, wechat_gateway):
    payment = await _wechat_pending(service)
    view = await service.get_payment_status(payment.id, 7)
    assert view.status == PaymentStatus.PENDING
    assert wechat_gateway.query_calls == 0


@pytest.mark.asyncio
async def test_stale_pending_status_reconciles_with_gateway(service, wechat_gateway, payment_settings, orders):
    payment = await _wechat_pending(service)
    payment_settings.stale_pending_seconds = 0
    wechat_gateway.query_result = GatewayQueryResult(
        status="paid", transaction_id="4200000077", amount=Decimal("20.00"), raw_status="SUCCESS"
    )

    view = await service.get_payment_status(payment.id, 7)

    assert view.status == PaymentStatus.PAID
    assert view.transaction_id == "4200000077"
    assert orders.paid == [(2, payment.payment_number)]


@pytest.mark.asyncio
async def test_stale_status_survives_gateway_timeout(service, wechat_gateway, payment_settings):
    payment = await _wechat_pending(service)
    payment_settings.stale_pending_seconds = 0
    payment_settings.timeouts.query = 0.05
    wechat_gateway.query_delay = 1.0

    view = await service.get_payment_status(payment.id, 7)
    assert view.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_stale_status_survives_gateway_error(service, wechat_gateway, payment_settings, gateway_down):
    payment = await _wechat_pending(service)
    payment_settings.stale_pending_seconds = 0
    wechat_gateway.query_error = gateway_down

    view = await service.get_payment_status(payment.id, 7)
    assert view.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_reconcile_stale_pending_batch(service, wechat_gateway, payment_settings):
    first = await _wechat_pending(service, order_id=11)
    second = await _wechat_pending(service, order_id=12)
    payment_settings.stale_pending_seconds = 0
    wechat_gateway.query_result = GatewayQueryResult(status="closed", raw_status="CLOSED")

    result = await service.reconcile_stale_pending()

    assert result == {"checked": 2, "updated": 2}
    for payment in (first, second):
        view = await service.get_payment_status(payment.id)
        assert view.status == PaymentStatus.FAILED


# ============= 列表与账单 =============

def test_list_payment_methods(service):
    methods = {m.code: m for m in service.list_payment_methods()}
    assert set(methods) == {PaymentMethod.WECHAT, PaymentMethod.ALIPAY, PaymentMethod.BALANCE}
    assert all(m.enabled for m in methods.values())
    assert "jsapi" in methods[PaymentMethod.WECHAT].scenes


@pytest.mark.asyncio
async def test_history_filters_and_bills(service, recharge):
    await recharge(7, "100.00")
    await service.create_payment(21, PaymentMethod.BALANCE, Decimal("40.00"), 7)
    refunded = await service.create_payment(22, PaymentMethod.BALANCE, Decimal("10.00"), 7)
    await service.refund_payment(refunded.payment.id, Decimal("10.00"), "duplicate order", 7)
    await _wechat_pending(service, order_id=23)

    items, total = await service.get_payment_history(7, page=1, size=2)
    assert total == 3
    assert len(items) == 2

    paid_only, paid_total = await service.get_payment_history(7, status=PaymentStatus.PAID)
    assert paid_total == 1
    assert paid_only[0].amount == Decimal("40.00")

    bills = await service.get_bills(7)
    assert bills.count == 3
    assert bills.total_paid == Decimal("50.00")
    assert bills.total_refunded == Decimal("10.00")
    assert bills.net_amount == Decimal("40.00")
    assert bills.by_method["balance"].count == 2
    assert bills.by_method["wechat"].paid_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_partial_refund_rows_trace_back_to_payment(container, service, recharge):
    await recharge(7, "100.00")
    created = await service.create_payment(24, PaymentMethod.BALANCE, Decimal("80.00"), 7)

    first = await service.refund_payment(created.payment.id, Decimal("30.00"), "missing item", 7)
    second = await service.refund_payment(created.payment.id, Decimal("20.00"), "late delivery", 7)
    assert second.refund_amount == Decimal("50.00")

    async with container.uow_factory(readonly=True) as uow:
        transactions = await BalanceLedger(uow).list_transactions(7)
    refunds = [t for t in transactions if t.type == TransactionType.REFUND]

    assert [t.amount for t in refunds] == [Decimal("30.00"), Decimal("20.00")]
    assert {(t.related_id, t.related_type) for t in refunds} == {(created.payment.payment_number, "payment")}
    assert first.refund_id in refunds[0].description
    assert second.refund_id in refunds[1].description


# ============= 并发 =============

@pytest.mark.asyncio
async def test_concurrent_balance_payments_never_overdraw(container, service, recharge, read_balance):
    await recharge(7, "100.00")

    results = await asyncio.gather(
        service.create_payment(31, PaymentMethod.BALANCE, Decimal("60.00"), 7),
        service.create_payment(32, PaymentMethod.BALANCE, Decimal("60.00"), 7),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientBalanceException)
    balance = await read_balance(7)
    assert balance.balance == Decimal("40.00")
    assert balance.frozen_balance == Decimal("0.00")
    async with container.uow_factory(readonly=True) as uow:
        replayed = await BalanceLedger(uow).replay(7)
    assert replayed == (balance.balance, balance.frozen_balance)


@pytest.mark.asyncio
async def test_notify_racing_cancel_ends_in_one_terminal_state(service, wechat_gateway):
    payment = await _wechat_pending(service, order_id=33)
    body = notification(
        gateway_reference=payment.payment_number,
        transaction_id="4200000033",
        outcome="success",
        amount=Decimal("20.00"),
    )

    ack, cancelled = await asyncio.gather(
        service.handle_notify(PaymentMethod.WECHAT, {}, body),
        service.cancel_payment(payment.id, 7),
        return_exceptions=True,
    )

    assert ack.accepted
    view = await service.get_payment_status(payment.id, 7)
    if view.status == PaymentStatus.PAID:
        assert isinstance(cancelled, InvalidStateTransitionException)
        assert view.transaction_id == "4200000033"
    else:
        assert view.status == PaymentStatus.CANCELLED
        assert ack.outcome == "incident"
        assert wechat_gateway.closed == [payment.payment_number]


@pytest.mark.asyncio
async def test_concurrent_refunds_cannot_exceed_payment(service, recharge, read_balance):
    await recharge(7, "100.00")
    created = await service.create_payment(34, PaymentMethod.BALANCE, Decimal("80.00"), 7)

    results = await asyncio.gather(
        service.refund_payment(created.payment.id, Decimal("50.00"), "first", 7),
        service.refund_payment(created.payment.id, Decimal("50.00"), "second", 7),
        return_exceptions=True,
    )

    assert sum(isinstance(r, RefundExceedsPaymentException) for r in results) == 1
    status = await service.get_refund_status(created.payment.id, 7)
    assert status.refund_amount == Decimal("50.00")
    assert (await read_balance(7)).balance == Decimal("70.00")
