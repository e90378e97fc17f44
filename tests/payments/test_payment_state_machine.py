from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import Payment, PaymentMethod, PaymentStatus, RefundState
from domain.payment.exceptions import (
    ConflictingConfirmationException,
    InvalidStateTransitionException,
    PaymentAmountMismatchException,
    RefundExceedsPaymentException,
    RefundInProgressException,
)
from domain.payment.events import PaymentCreated, PaymentSucceeded
from domain.payment.exceptions import PaymentAlreadyExistsException
from domain.payment.service import PaymentStateMachine


def _payment(amount="80.00", method=PaymentMethod.WECHAT) -> Payment:
    return Payment(
        id=1,
        payment_number="PAY1",
        order_id=10,
        user_id=7,
        payment_method=method,
        amount=Decimal(amount),
    )


def test_amount_must_be_positive():
    with pytest.raises(DomainValidationException):
        _payment(amount="0")


def test_confirm_is_idempotent_for_same_transaction():
    payment = _payment()
    assert payment.confirm("TX1", Decimal("80.00")) is True
    paid_at = payment.payment_time
    assert payment.confirm("TX1", Decimal("80.00")) is False
    assert payment.status == PaymentStatus.PAID
    assert payment.payment_time == paid_at


def test_confirm_with_different_transaction_never_overwrites():
    payment = _payment()
    payment.confirm("TX1", Decimal("80.00"))
    with pytest.raises(ConflictingConfirmationException):
        payment.confirm("TX2", Decimal("80.00"))
    assert payment.transaction_id == "TX1"


def test_confirm_rejects_amount_mismatch():
    payment = _payment()
    with pytest.raises(PaymentAmountMismatchException):
        payment.confirm("TX1", Decimal("79.99"))
    assert payment.status == PaymentStatus.PENDING


def test_terminal_states_reject_transitions():
    payment = _payment()
    payment.cancel()
    with pytest.raises(InvalidStateTransitionException):
        payment.fail("late")
    with pytest.raises(InvalidStateTransitionException):
        payment.confirm("TX1", Decimal("80.00"))

    paid = _payment()
    paid.confirm("TX1", Decimal("80.00"))
    with pytest.raises(InvalidStateTransitionException):
        paid.cancel()


def test_full_refund_moves_to_refunded():
    payment = _payment()
    payment.confirm("TX1", Decimal("80.00"))
    payment.request_refund("RF1", Decimal("80.00"), "customer request")
    assert payment.status == PaymentStatus.PAID
    assert payment.refund_state == RefundState.PENDING

    assert payment.confirm_refund("RF1", Decimal("80.00")) is True
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refund_amount == Decimal("80.00")
    assert payment.pending_refund_amount == Decimal("0.00")
    # 重复确认为空操作
    assert payment.confirm_refund("RF1", Decimal("80.00")) is False


def test_partial_refunds_accumulate_up_to_amount():
    payment = _payment()
    payment.confirm("TX1", Decimal("80.00"))
    payment.request_refund("RF1", Decimal("30.00"), "missing item")
    with pytest.raises(RefundInProgressException):
        payment.request_refund("RF2", Decimal("10.00"), "again")
    payment.confirm_refund("RF1", Decimal("30.00"))
    assert payment.refund_state == RefundState.PARTIAL

    with pytest.raises(RefundExceedsPaymentException):
        payment.request_refund("RF2", Decimal("50.01"), "too much")
    payment.request_refund("RF2", Decimal("50.00"), "rest")
    payment.confirm_refund("RF2", Decimal("50.00"))
    assert payment.status == PaymentStatus.REFUNDED


def test_failed_refund_clears_pending_marker():
    payment = _payment()
    payment.confirm("TX1", Decimal("80.00"))
    payment.request_refund("RF1", Decimal("20.00"), "late delivery")
    assert payment.fail_refund("RF1", "rejected") is True
    assert payment.refund_state == RefundState.NONE
    assert payment.refundable_amount == Decimal("80.00")
    assert payment.status == PaymentStatus.PAID


def test_refund_requires_paid_payment_and_reason():
    payment = _payment()
    with pytest.raises(InvalidStateTransitionException):
        payment.request_refund("RF1", Decimal("10.00"), "not paid yet")
    payment.confirm("TX1", Decimal("80.00"))
    with pytest.raises(DomainValidationException):
        payment.request_refund("RF1", Decimal("10.00"), "")


def test_is_stale_only_for_old_pending():
    payment = _payment()
    now = datetime.now(timezone.utc)
    payment.dispatched_at = now - timedelta(seconds=600)
    assert payment.is_stale(300, now=now)
    assert not payment.is_stale(900, now=now)
    payment.confirm("TX1", Decimal("80.00"))
    assert not payment.is_stale(0, now=now)


@pytest.mark.asyncio
async def test_state_machine_rejects_second_active_payment(container):
    async with container.uow_factory() as uow:
        machine = PaymentStateMachine(uow.payment_repository)
        first = await machine.create(42, 7, PaymentMethod.WECHAT, Decimal("20.00"))
        with pytest.raises(PaymentAlreadyExistsException):
            await machine.create(42, 7, PaymentMethod.ALIPAY, Decimal("20.00"))
        await machine.confirm(first, "TX42", Decimal("20.00"))
        events = machine.clear_events()

    assert [type(e) for e in events] == [PaymentCreated, PaymentSucceeded]
    assert machine.events == []
