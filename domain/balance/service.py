"""
余额账本领域服务

所有变动都在调用方的 Unit of Work 内执行：先获取 balance:{user_id} 独占作用域，
再以行锁读取余额，修改余额并追加流水。作用域随事务结束释放。
"""
from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from domain.common.locks import balance_lock_key
from domain.common.money import ZERO
from domain.common.unit_of_work import AbstractUnitOfWork
from .entity import BalanceReservation, BalanceTransaction, ReservationStatus, UserBalance
from .exceptions import ReservationNotFoundException


class BalanceLedger:
    """
    余额账本

    职责：
    1. reserve / capture / release 三段式余额支付
    2. credit 退款入账、recharge 充值
    3. replay 按流水重放余额（审计）
    """

    def __init__(self, uow: AbstractUnitOfWork, *, lock_timeout: Optional[float] = None):
        self._uow = uow
        self._lock_timeout = lock_timeout

    @property
    def _repo(self):
        return self._uow.balance_repository

    async def _lock_user(self, user_id: int) -> None:
        await self._uow.lock(balance_lock_key(user_id), self._lock_timeout)

    async def _append(self, balance: UserBalance, txn: BalanceTransaction) -> BalanceTransaction:
        await self._repo.save(balance)
        return await self._repo.add_transaction(txn)

    async def reserve(
        self,
        user_id: int,
        amount: Decimal,
        *,
        related_id: Optional[str] = None,
        related_type: str = "payment",
    ) -> BalanceReservation:
        """冻结余额；余额不足抛出 InsufficientBalanceException 且不做任何修改"""
        await self._lock_user(user_id)
        balance = await self._repo.get_or_create(user_id)
        reservation_id = BalanceReservation.new_id()
        txn = balance.hold(
            amount,
            related_id=related_id,
            related_type=related_type,
            description=f"余额冻结 {reservation_id}",
        )
        await self._append(balance, txn)
        reservation = BalanceReservation(
            id=reservation_id,
            user_id=user_id,
            amount=txn.amount,
            status=ReservationStatus.HELD,
            related_id=related_id,
            related_type=related_type,
            created_at=txn.created_at,
        )
        return await self._repo.add_reservation(reservation)

    async def _locked_reservation(self, reservation_id: str) -> BalanceReservation:
        reservation = await self._repo.get_reservation(reservation_id)
        if reservation is None:
            raise ReservationNotFoundException(reservation_id)
        await self._lock_user(reservation.user_id)
        reservation = await self._repo.get_reservation(reservation_id, for_update=True)
        if reservation is None:
            raise ReservationNotFoundException(reservation_id)
        return reservation

    async def capture(self, reservation_id: str) -> BalanceReservation:
        """扣除冻结金额；重复扣款为空操作"""
        reservation = await self._locked_reservation(reservation_id)
        if not reservation.mark_captured():
            return reservation
        balance = await self._repo.get_or_create(reservation.user_id)
        txn = balance.capture(
            reservation.amount,
            related_id=reservation.related_id,
            related_type=reservation.related_type,
            description=f"余额支付 {reservation.id}",
        )
        await self._append(balance, txn)
        return await self._repo.update_reservation(reservation)

    async def release(self, reservation_id: str) -> BalanceReservation:
        """解冻；重复解冻为空操作"""
        reservation = await self._locked_reservation(reservation_id)
        if not reservation.mark_released():
            return reservation
        balance = await self._repo.get_or_create(reservation.user_id)
        txn = balance.release(
            reservation.amount,
            related_id=reservation.related_id,
            related_type=reservation.related_type,
            description=f"余额解冻 {reservation.id}",
        )
        await self._append(balance, txn)
        return await self._repo.update_reservation(reservation)

    async def credit(
        self,
        user_id: int,
        amount: Decimal,
        *,
        related_id: Optional[str] = None,
        related_type: str = "refund",
        description: Optional[str] = None,
    ) -> BalanceTransaction:
        """退款入账；仅在金额非正时失败"""
        await self._lock_user(user_id)
        balance = await self._repo.get_or_create(user_id)
        txn = balance.credit(amount, related_id=related_id, related_type=related_type, description=description)
        return await self._append(balance, txn)

    async def recharge(
        self,
        user_id: int,
        amount: Decimal,
        *,
        related_id: Optional[str] = None,
        related_type: str = "recharge",
    ) -> BalanceTransaction:
        await self._lock_user(user_id)
        balance = await self._repo.get_or_create(user_id)
        txn = balance.recharge(amount, related_id=related_id, related_type=related_type)
        return await self._append(balance, txn)

    async def get_balance(self, user_id: int) -> UserBalance:
        balance = await self._repo.get_by_user(user_id)
        return balance or UserBalance(id=None, user_id=user_id)

    async def list_transactions(self, user_id: int) -> List[BalanceTransaction]:
        return await self._repo.list_transactions(user_id)

    async def replay(self, user_id: int) -> tuple[Decimal, Decimal]:
        """从 (0, 0) 开始按顺序重放流水，返回 (balance, frozen_balance)"""
        balance, frozen = ZERO, ZERO
        for txn in await self._repo.list_transactions(user_id):
            balance, frozen = txn.apply(balance, frozen)
        return balance, frozen
