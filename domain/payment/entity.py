"""
支付领域实体 - 支付聚合根
"""
from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.common.money import ZERO, to_money
from .exceptions import (
    ConflictingConfirmationException,
    InvalidStateTransitionException,
    PaymentAmountMismatchException,
    RefundExceedsPaymentException,
    RefundInProgressException,
    RefundNotFoundException,
)


class PaymentMethod(str, Enum):
    """支付方式"""
    WECHAT = "wechat"
    ALIPAY = "alipay"
    BALANCE = "balance"

    @property
    def is_gateway(self) -> bool:
        return self is not PaymentMethod.BALANCE


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"        # 待支付
    PAID = "paid"              # 已支付（可能部分退款）
    FAILED = "failed"          # 支付失败
    REFUNDED = "refunded"      # 已全额退款
    CANCELLED = "cancelled"    # 已取消


class RefundState(str, Enum):
    """退款进度（由 refund_amount / pending_refund_amount 推导）"""
    NONE = "none"
    PENDING = "pending"
    PARTIAL = "partial"
    REFUNDED = "refunded"


ACTIVE_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PAID})
TERMINAL_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED})

# 状态 -> 允许的动作
ALLOWED_ACTIONS: dict[PaymentStatus, frozenset[str]] = {
    PaymentStatus.PENDING: frozenset({"dispatch", "confirm", "fail", "cancel"}),
    PaymentStatus.PAID: frozenset({"request_refund", "confirm_refund", "fail_refund"}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

MAX_REFUND_REASON_LENGTH = 200


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_reference(prefix: str) -> str:
    """前缀 + 毫秒时间戳 + 6 位随机数，无需中心协调即可生成。"""
    return f"{prefix}{int(time.time() * 1000)}{secrets.randbelow(10**6):06d}"


@dataclass
class Payment:
    """
    支付聚合根 - 管理支付生命周期

    业务规则：
    1. 同一订单同时最多存在一笔未终结（pending/paid）的支付
    2. 金额必须大于0
    3. 状态转换必须遵循状态机：pending -> paid/failed/cancelled，paid -> refunded
    4. 已支付必须有交易号，且交易号一经确认不可覆盖
    5. 累计退款（含处理中）不能超过支付金额
    """

    id: Optional[int]
    payment_number: str
    order_id: int
    user_id: int
    payment_method: PaymentMethod
    amount: Decimal
    status: PaymentStatus = PaymentStatus.PENDING

    transaction_id: Optional[str] = None
    gateway_reference: Optional[str] = None
    dispatched_at: Optional[datetime] = None
    payment_time: Optional[datetime] = None
    reservation_id: Optional[str] = None
    failure_reason: Optional[str] = None

    # 退款相关
    refund_id: Optional[str] = None
    refund_time: Optional[datetime] = None
    refund_amount: Decimal = ZERO
    pending_refund_amount: Decimal = ZERO
    refund_reason: Optional[str] = None

    # 时间戳
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """初始化后验证"""
        self.payment_method = PaymentMethod(self.payment_method)
        self.status = PaymentStatus(self.status)
        self.amount = to_money(self.amount)
        self.refund_amount = to_money(self.refund_amount or ZERO)
        self.pending_refund_amount = to_money(self.pending_refund_amount or ZERO)
        if self.amount <= 0:
            raise DomainValidationException(
                f"支付金额必须大于0: {self.amount}",
                field="amount"
            )
        if self.order_id is None or int(self.order_id) < 1:
            raise DomainValidationException(f"无效的订单ID: {self.order_id}", field="order_id")
        self._normalize_timestamps()

    def _normalize_timestamps(self) -> None:
        """规范化所有时间戳为 UTC"""
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.dispatched_at = _ensure_utc(self.dispatched_at)
        self.payment_time = _ensure_utc(self.payment_time)
        self.refund_time = _ensure_utc(self.refund_time)

    # ---- 查询 ----

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_pending_refund(self) -> bool:
        return self.pending_refund_amount > 0

    @property
    def refundable_amount(self) -> Decimal:
        """剩余可退金额（扣除处理中的退款）"""
        return self.amount - self.refund_amount - self.pending_refund_amount

    @property
    def refund_state(self) -> RefundState:
        if self.has_pending_refund:
            return RefundState.PENDING
        if self.refund_amount <= 0:
            return RefundState.NONE
        if self.refund_amount >= self.amount:
            return RefundState.REFUNDED
        return RefundState.PARTIAL

    def is_stale(self, threshold_seconds: float, now: Optional[datetime] = None) -> bool:
        """pending 状态停留超过阈值"""
        if self.status != PaymentStatus.PENDING:
            return False
        since = self.dispatched_at or self.created_at
        if since is None:
            return True
        return ((now or _now()) - since).total_seconds() > threshold_seconds

    # ---- 状态转换 ----

    def _ensure_can(self, action: str) -> None:
        if action not in ALLOWED_ACTIONS[self.status]:
            raise InvalidStateTransitionException(self.status.value, action)

    def _touch(self) -> datetime:
        now = _now()
        self.updated_at = now
        return now

    def record_dispatch(self, gateway_reference: str) -> None:
        """记录网关受理（不改变状态）"""
        self._ensure_can("dispatch")
        self.gateway_reference = gateway_reference
        self.dispatched_at = self._touch()

    def attach_reservation(self, reservation_id: str) -> None:
        """余额支付：关联冻结记录"""
        self._ensure_can("dispatch")
        self.reservation_id = reservation_id
        self.dispatched_at = self._touch()

    def confirm(self, transaction_id: str, paid_amount: Decimal) -> bool:
        """
        确认支付成功，返回状态是否发生变化

        业务规则：
        1. 同一交易号重复确认为幂等空操作
        2. 不同交易号的确认视为冲突，绝不覆盖
        3. 确认金额必须与支付金额一致
        """
        if not transaction_id:
            raise DomainValidationException("交易号不能为空", field="transaction_id")
        if self.status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
            if self.transaction_id == transaction_id:
                return False
            raise ConflictingConfirmationException(self.payment_number, self.transaction_id, transaction_id)
        self._ensure_can("confirm")
        paid = to_money(paid_amount)
        if paid != self.amount:
            raise PaymentAmountMismatchException(self.payment_number, self.amount, paid)
        self.status = PaymentStatus.PAID
        self.transaction_id = transaction_id
        self.payment_time = self._touch()
        self.failure_reason = None
        return True

    def fail(self, reason: Optional[str] = None) -> None:
        """标记支付失败，只能从 pending 转换"""
        self._ensure_can("fail")
        self.status = PaymentStatus.FAILED
        self.failure_reason = reason
        self._touch()

    def cancel(self) -> None:
        """取消支付，只能从 pending 转换"""
        self._ensure_can("cancel")
        self.status = PaymentStatus.CANCELLED
        self._touch()

    def request_refund(self, refund_id: str, amount: Decimal, reason: str) -> None:
        """
        发起退款：记录处理中的退款标记，状态保持 paid

        业务规则：
        1. 只有已支付的订单才能退款
        2. 同一时间只允许一笔处理中的退款
        3. 累计退款不能超过支付金额
        """
        self._ensure_can("request_refund")
        value = to_money(amount)
        if value <= 0:
            raise DomainValidationException(f"退款金额必须大于0: {value}", field="amount")
        if not reason or len(reason) > MAX_REFUND_REASON_LENGTH:
            raise DomainValidationException(
                f"退款原因长度必须在1到{MAX_REFUND_REASON_LENGTH}之间",
                field="reason",
            )
        if self.has_pending_refund:
            raise RefundInProgressException(self.refund_id or "")
        if value > self.refundable_amount:
            raise RefundExceedsPaymentException(value, self.refundable_amount)
        self.refund_id = refund_id
        self.pending_refund_amount = value
        self.refund_reason = reason
        self._touch()

    def confirm_refund(self, refund_id: str, confirmed_amount: Decimal) -> bool:
        """确认退款到账，返回是否发生变化；全部退完时转为 refunded"""
        if not self.has_pending_refund:
            if refund_id and refund_id == self.refund_id and self.refund_amount > 0:
                return False
            if self.status == PaymentStatus.PAID:
                raise RefundNotFoundException(refund_id)
        self._ensure_can("confirm_refund")
        if refund_id != self.refund_id:
            raise RefundNotFoundException(refund_id)
        value = to_money(confirmed_amount)
        if value <= 0 or value > self.pending_refund_amount:
            raise RefundExceedsPaymentException(value, self.pending_refund_amount)
        self.refund_amount += value
        self.pending_refund_amount = ZERO
        self.refund_time = self._touch()
        if self.refund_amount == self.amount:
            self.status = PaymentStatus.REFUNDED
        return True

    def fail_refund(self, refund_id: str, reason: Optional[str] = None) -> bool:
        """退款失败：清除处理中标记，已退金额不变"""
        if not self.has_pending_refund or refund_id != self.refund_id:
            return False
        self._ensure_can("fail_refund")
        self.pending_refund_amount = ZERO
        self.failure_reason = reason
        self._touch()
        return True


class IncidentKind(str, Enum):
    """无法自动处理、需人工对账的异常通知"""
    CONFLICTING_CONFIRMATION = "conflicting_confirmation"
    AMOUNT_MISMATCH = "amount_mismatch"
    CONFIRMATION_AFTER_TERMINAL = "confirmation_after_terminal"


@dataclass
class PaymentIncident:
    id: Optional[int]
    payment_id: int
    payment_number: str
    kind: IncidentKind
    detail: dict
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.kind = IncidentKind(self.kind)
        self.created_at = _ensure_utc(self.created_at) or _now()
