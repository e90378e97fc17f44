"""
支付领域异常
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from domain.common.exceptions import BusinessException, DomainValidationException
from shared.codes.payment_codes import PaymentCode


class PaymentAlreadyExistsException(BusinessException):
    """订单已存在未终结的支付记录"""
    def __init__(self, order_id: int, payment_number: Optional[str] = None):
        super().__init__(
            code=PaymentCode.PAYMENT_ALREADY_EXISTS,
            message=f"订单 {order_id} 已存在进行中的支付",
            error_type="PaymentAlreadyExists",
            details={"order_id": order_id, "payment_number": payment_number},
        )


class PaymentNotFoundException(BusinessException):
    """支付记录不存在"""
    def __init__(self, identifier: str):
        super().__init__(
            code=PaymentCode.PAYMENT_NOT_FOUND,
            message=f"支付记录不存在: {identifier}",
            error_type="PaymentNotFound",
        )


class InvalidStateTransitionException(BusinessException):
    """非法状态转换"""
    def __init__(self, current: str, attempted: str):
        self.current = current
        self.attempted = attempted
        super().__init__(
            code=PaymentCode.INVALID_STATE_TRANSITION,
            message=f"无法在状态 {current} 下执行 {attempted}",
            error_type="InvalidStateTransition",
            details={"current": current, "attempted": attempted},
            field="status",
        )


class ConflictingConfirmationException(BusinessException):
    """同一笔支付收到不同交易号的确认"""
    def __init__(self, payment_number: str, existing: Optional[str], incoming: str):
        super().__init__(
            code=PaymentCode.CONFLICTING_CONFIRMATION,
            message=f"支付 {payment_number} 已由交易 {existing} 确认，拒绝交易 {incoming}",
            error_type="ConflictingConfirmation",
            details={
                "payment_number": payment_number,
                "existing_transaction_id": existing,
                "incoming_transaction_id": incoming,
            },
        )


class PaymentAmountMismatchException(DomainValidationException):
    """确认金额与支付金额不一致"""
    def __init__(self, payment_number: str, expected: Decimal, actual: Decimal):
        super().__init__(
            f"支付 {payment_number} 金额不一致: 期望 {expected}, 实际 {actual}",
            field="amount",
            details={"payment_number": payment_number, "expected": str(expected), "actual": str(actual)},
            code=PaymentCode.AMOUNT_MISMATCH,
            error_type="PaymentAmountMismatch",
        )


class RefundExceedsPaymentException(DomainValidationException):
    """退款金额超过可退金额"""
    def __init__(self, refund_amount: Decimal, available: Decimal):
        super().__init__(
            f"退款金额 {refund_amount} 超过可退金额 {available}",
            field="amount",
            details={"refund_amount": str(refund_amount), "available": str(available)},
            code=PaymentCode.REFUND_EXCEEDS_PAYMENT,
            error_type="RefundExceedsPayment",
        )


class RefundInProgressException(BusinessException):
    """已有退款在处理中"""
    def __init__(self, refund_id: str):
        super().__init__(
            code=PaymentCode.REFUND_IN_PROGRESS,
            message=f"退款 {refund_id} 仍在处理中",
            error_type="RefundInProgress",
            details={"refund_id": refund_id},
        )


class RefundNotFoundException(BusinessException):
    def __init__(self, refund_id: str):
        super().__init__(
            code=PaymentCode.REFUND_NOT_FOUND,
            message=f"退款记录不存在: {refund_id}",
            error_type="RefundNotFound",
            details={"refund_id": refund_id},
        )


class OrderNotPayableException(BusinessException):
    """订单不存在或不可支付"""
    def __init__(self, order_id: int, reason: str):
        super().__init__(
            code=PaymentCode.ORDER_NOT_PAYABLE,
            message=f"订单 {order_id} 不可支付: {reason}",
            error_type="OrderNotPayable",
            details={"order_id": order_id, "reason": reason},
        )


class PaymentMethodUnavailableException(BusinessException):
    def __init__(self, method: str):
        super().__init__(
            code=PaymentCode.METHOD_UNAVAILABLE,
            message=f"支付方式 {method} 未启用",
            error_type="PaymentMethodUnavailable",
            details={"payment_method": method},
            field="payment_method",
        )


class GatewayUnavailableException(BusinessException):
    """网关超时或网络故障，可稍后重试"""
    def __init__(self, message: str, *, gateway: str, details: Optional[dict] = None):
        full_details = {"gateway": gateway}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.GATEWAY_UNAVAILABLE,
            message=message,
            error_type="GatewayUnavailable",
            details=full_details,
        )


class GatewayRejectedException(BusinessException):
    """网关拒绝请求（配置错误或业务拒绝）"""
    def __init__(
        self,
        message: str,
        *,
        gateway: str,
        gateway_code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        full_details = {"gateway": gateway, "gateway_code": gateway_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.GATEWAY_REJECTED,
            message=message,
            error_type="GatewayRejected",
            details=full_details,
        )
