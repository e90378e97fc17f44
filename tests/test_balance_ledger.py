from decimal import Decimal

import pytest

from domain.balance.entity import ReservationStatus, TransactionPhase, UserBalance
from domain.balance.exceptions import InsufficientBalanceException, InvalidReservationStateException
from domain.balance.service import BalanceLedger
from domain.common.exceptions import DomainValidationException


def test_user_balance_hold_moves_funds_to_frozen():
    balance = UserBalance(id=None, user_id=1, balance=Decimal("100.00"))
    txn = balance.hold(Decimal("30.00"))
    assert balance.balance == Decimal("70.00")
    assert balance.frozen_balance == Decimal("30.00")
    assert txn.phase == TransactionPhase.HOLD
    assert (txn.balance_before, txn.balance_after) == (Decimal("100.00"), Decimal("70.00"))
    assert txn.apply(Decimal("100.00"), Decimal("0.00")) == (Decimal("70.00"), Decimal("30.00"))


def test_user_balance_hold_rejects_overdraft():
    balance = UserBalance(id=None, user_id=1, balance=Decimal("10.00"))
    with pytest.raises(InsufficientBalanceException):
        balance.hold(Decimal("10.01"))
    assert balance.balance == Decimal("10.00")
    assert balance.frozen_balance == Decimal("0.00")


@pytest.mark.asyncio
async def test_reserve_and_capture_replays_to_stored_balance(container, recharge):
    await recharge(1, "100.00")
    async with container.uow_factory() as uow:
        ledger = BalanceLedger(uow)
        reservation = await ledger.reserve(1, Decimal("30.00"), related_id="PAY1")
        await ledger.capture(reservation.id)
        # 重复扣款为空操作
        again = await ledger.capture(reservation.id)
        assert again.status == ReservationStatus.CAPTURED

    async with container.uow_factory(readonly=True) as uow:
        ledger = BalanceLedger(uow)
        stored = await ledger.get_balance(1)
        transactions = await ledger.list_transactions(1)
        replayed = await ledger.replay(1)

    assert stored.balance == Decimal("70.00")
    assert stored.frozen_balance == Decimal("0.00")
    assert stored.total_consume == Decimal("30.00")
    assert replayed == (stored.balance, stored.frozen_balance)
    assert [t.phase for t in transactions] == [
        TransactionPhase.SETTLED,
        TransactionPhase.HOLD,
        TransactionPhase.CAPTURE,
    ]


@pytest.mark.asyncio
async def test_reserve_then_release_restores_balance(container, recharge, read_balance):
    await recharge(2, "100.00")
    async with container.uow_factory() as uow:
        ledger = BalanceLedger(uow)
        reservation = await ledger.reserve(2, Decimal("40.00"))
        held = await ledger.get_balance(2)
        assert (held.balance, held.frozen_balance) == (Decimal("60.00"), Decimal("40.00"))
        await ledger.release(reservation.id)
        await ledger.release(reservation.id)

    stored = await read_balance(2)
    assert (stored.balance, stored.frozen_balance) == (Decimal("100.00"), Decimal("0.00"))
    async with container.uow_factory(readonly=True) as uow:
        transactions = await BalanceLedger(uow).list_transactions(2)
    assert len(transactions) == 3


@pytest.mark.asyncio
async def test_reserve_insufficient_balance_changes_nothing(container, recharge, read_balance):
    await recharge(3, "100.00")
    with pytest.raises(InsufficientBalanceException):
        async with container.uow_factory() as uow:
            await BalanceLedger(uow).reserve(3, Decimal("150.00"))

    stored = await read_balance(3)
    assert stored.balance == Decimal("100.00")
    assert stored.frozen_balance == Decimal("0.00")
    async with container.uow_factory(readonly=True) as uow:
        assert len(await BalanceLedger(uow).list_transactions(3)) == 1


@pytest.mark.asyncio
async def test_capture_after_release_is_rejected(container, recharge):
    await recharge(4, "20.00")
    async with container.uow_factory() as uow:
        ledger = BalanceLedger(uow)
        reservation = await ledger.reserve(4, Decimal("5.00"))
        await ledger.release(reservation.id)
        with pytest.raises(InvalidReservationStateException):
            await ledger.capture(reservation.id)


@pytest.mark.asyncio
async def test_credit_requires_positive_amount(container):
    async with container.uow_factory() as uow:
        ledger = BalanceLedger(uow)
        txn = await ledger.credit(5, Decimal("12.50"), related_id="RF1")
        assert txn.balance_after == Decimal("12.50")
        with pytest.raises(DomainValidationException):
            await ledger.credit(5, Decimal("0"))
