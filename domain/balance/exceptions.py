"""
余额领域异常
"""
from __future__ import annotations

from decimal import Decimal

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class InsufficientBalanceException(BusinessException):
    """可用余额不足"""
    def __init__(self, user_id: int, requested: Decimal, available: Decimal):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        super().__init__(
            code=PaymentCode.INSUFFICIENT_BALANCE,
            message=f"余额不足: 需要 {requested}, 可用 {available}",
            error_type="InsufficientBalance",
            details={"user_id": user_id, "requested": str(requested), "available": str(available)},
        )


class ReservationNotFoundException(BusinessException):
    def __init__(self, reservation_id: str):
        super().__init__(
            code=PaymentCode.RESERVATION_NOT_FOUND,
            message=f"余额冻结记录不存在: {reservation_id}",
            error_type="ReservationNotFound",
            details={"reservation_id": reservation_id},
        )


class InvalidReservationStateException(BusinessException):
    """冻结记录已被扣款或释放"""
    def __init__(self, reservation_id: str, current: str, attempted: str):
        super().__init__(
            code=PaymentCode.INVALID_RESERVATION_STATE,
            message=f"冻结记录 {reservation_id} 状态为 {current}，无法 {attempted}",
            error_type="InvalidReservationState",
            details={"reservation_id": reservation_id, "current": current, "attempted": attempted},
        )
