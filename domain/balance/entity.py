"""
余额领域实体 - 用户余额、流水与冻结记录
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.common.money import ZERO, to_money
from .exceptions import InsufficientBalanceException, InvalidReservationStateException


class TransactionType(str, Enum):
    """流水类型"""
    RECHARGE = "recharge"
    CONSUME = "consume"
    REFUND = "refund"
    WITHDRAWAL = "withdrawal"


class TransactionPhase(str, Enum):
    """流水阶段：区分直接入账与冻结/扣款/解冻"""
    SETTLED = "settled"
    HOLD = "hold"
    CAPTURE = "capture"
    RELEASE = "release"


class ReservationStatus(str, Enum):
    HELD = "held"
    CAPTURED = "captured"
    RELEASED = "released"


# (type, phase) -> (余额变动符号, 冻结变动符号)
SIGN_CONVENTION: dict[tuple[TransactionType, TransactionPhase], tuple[int, int]] = {
    (TransactionType.RECHARGE, TransactionPhase.SETTLED): (1, 0),
    (TransactionType.REFUND, TransactionPhase.SETTLED): (1, 0),
    (TransactionType.WITHDRAWAL, TransactionPhase.SETTLED): (-1, 0),
    (TransactionType.CONSUME, TransactionPhase.HOLD): (-1, 1),
    (TransactionType.CONSUME, TransactionPhase.CAPTURE): (0, -1),
    (TransactionType.CONSUME, TransactionPhase.RELEASE): (1, -1),
}


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _positive(amount: Decimal, field: str = "amount") -> Decimal:
    value = to_money(amount)
    if value <= 0:
        raise DomainValidationException(f"金额必须大于0: {value}", field=field)
    return value


@dataclass
class BalanceTransaction:
    """余额流水（只追加）"""

    id: Optional[int]
    user_id: int
    type: TransactionType
    phase: TransactionPhase
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    frozen_before: Decimal
    frozen_after: Decimal
    related_id: Optional[str] = None
    related_type: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.type = TransactionType(self.type)
        self.phase = TransactionPhase(self.phase)
        for name in ("amount", "balance_before", "balance_after", "frozen_before", "frozen_after"):
            setattr(self, name, to_money(getattr(self, name)))
        self.created_at = _ensure_utc(self.created_at)

    def apply(self, balance: Decimal, frozen: Decimal) -> tuple[Decimal, Decimal]:
        """按符号约定重放本条流水"""
        balance_sign, frozen_sign = SIGN_CONVENTION[(self.type, self.phase)]
        return balance + balance_sign * self.amount, frozen + frozen_sign * self.amount


@dataclass
class UserBalance:
    """
    用户余额 - 每个用户唯一

    业务规则：
    1. balance、frozen_balance 始终 >= 0
    2. total_recharge、total_consume 单调不减
    3. 每次变动都产生一条流水，且 before/after 与符号约定一致
    """

    id: Optional[int]
    user_id: int
    balance: Decimal = ZERO
    frozen_balance: Decimal = ZERO
    total_recharge: Decimal = ZERO
    total_consume: Decimal = ZERO
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.balance = to_money(self.balance)
        self.frozen_balance = to_money(self.frozen_balance)
        self.total_recharge = to_money(self.total_recharge)
        self.total_consume = to_money(self.total_consume)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    def _record(
        self,
        txn_type: TransactionType,
        phase: TransactionPhase,
        amount: Decimal,
        *,
        related_id: Optional[str],
        related_type: Optional[str],
        description: Optional[str],
    ) -> BalanceTransaction:
        balance_sign, frozen_sign = SIGN_CONVENTION[(txn_type, phase)]
        balance_after = self.balance + balance_sign * amount
        frozen_after = self.frozen_balance + frozen_sign * amount
        if balance_after < 0 or frozen_after < 0:
            raise InsufficientBalanceException(self.user_id, amount, self.balance)
        txn = BalanceTransaction(
            id=None,
            user_id=self.user_id,
            type=txn_type,
            phase=phase,
            amount=amount,
            balance_before=self.balance,
            balance_after=balance_after,
            frozen_before=self.frozen_balance,
            frozen_after=frozen_after,
            related_id=related_id,
            related_type=related_type,
            description=description,
            created_at=_now(),
        )
        self.balance = balance_after
        self.frozen_balance = frozen_after
        self.updated_at = txn.created_at
        return txn

    def hold(self, amount: Decimal, *, related_id=None, related_type=None, description=None) -> BalanceTransaction:
        """冻结：可用余额转入冻结余额"""
        value = _positive(amount)
        if self.balance < value:
            raise InsufficientBalanceException(self.user_id, value, self.balance)
        return self._record(
            TransactionType.CONSUME, TransactionPhase.HOLD, value,
            related_id=related_id, related_type=related_type, description=description or "余额冻结",
        )

    def capture(self, amount: Decimal, *, related_id=None, related_type=None, description=None) -> BalanceTransaction:
        """扣款：冻结余额永久扣除"""
        value = _positive(amount)
        txn = self._record(
            TransactionType.CONSUME, TransactionPhase.CAPTURE, value,
            related_id=related_id, related_type=related_type, description=description or "余额支付",
        )
        self.total_consume += value
        return txn

    def release(self, amount: Decimal, *, related_id=None, related_type=None, description=None) -> BalanceTransaction:
        """解冻：冻结余额退回可用余额"""
        value = _positive(amount)
        return self._record(
            TransactionType.CONSUME, TransactionPhase.RELEASE, value,
            related_id=related_id, related_type=related_type, description=description or "余额解冻",
        )

    def credit(self, amount: Decimal, *, related_id=None, related_type=None, description=None) -> BalanceTransaction:
        """退款入账"""
        value = _positive(amount)
        return self._record(
            TransactionType.REFUND, TransactionPhase.SETTLED, value,
            related_id=related_id, related_type=related_type, description=description or "退款入账",
        )

    def recharge(self, amount: Decimal, *, related_id=None, related_type=None, description=None) -> BalanceTransaction:
        """充值"""
        value = _positive(amount)
        txn = self._record(
            TransactionType.RECHARGE, TransactionPhase.SETTLED, value,
            related_id=related_id, related_type=related_type, description=description or "余额充值",
        )
        self.total_recharge += value
        return txn


@dataclass
class BalanceReservation:
    """余额冻结记录（reserve 返回的句柄）"""

    id: str
    user_id: int
    amount: Decimal
    status: ReservationStatus = ReservationStatus.HELD
    related_id: Optional[str] = None
    related_type: Optional[str] = None
    created_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = to_money(self.amount)
        self.status = ReservationStatus(self.status)
        self.created_at = _ensure_utc(self.created_at)
        self.settled_at = _ensure_utc(self.settled_at)

    @staticmethod
    def new_id() -> str:
        return f"RSV{uuid.uuid4().hex}"

    def mark_captured(self) -> bool:
        """返回 False 表示重复扣款（幂等）"""
        if self.status == ReservationStatus.CAPTURED:
            return False
        if self.status != ReservationStatus.HELD:
            raise InvalidReservationStateException(self.id, self.status.value, "capture")
        self.status = ReservationStatus.CAPTURED
        self.settled_at = _now()
        return True

    def mark_released(self) -> bool:
        """返回 False 表示重复解冻（幂等）"""
        if self.status == ReservationStatus.RELEASED:
            return False
        if self.status != ReservationStatus.HELD:
            raise InvalidReservationStateException(self.id, self.status.value, "release")
        self.status = ReservationStatus.RELEASED
        self.settled_at = _now()
        return True
