"""
Payment specific codes and gateway status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Payment lifecycle (201xx)
    PAYMENT_ALREADY_EXISTS = 20100
    PAYMENT_NOT_FOUND = 20101
    REFUND_EXCEEDS_PAYMENT = 20102
    REFUND_IN_PROGRESS = 20103
    REFUND_NOT_FOUND = 20104
    INVALID_STATE_TRANSITION = 20105
    CONFLICTING_CONFIRMATION = 20106
    AMOUNT_MISMATCH = 20107
    METHOD_UNAVAILABLE = 20108

    # Balance ledger (202xx)
    INSUFFICIENT_BALANCE = 20200
    RESERVATION_NOT_FOUND = 20201
    INVALID_RESERVATION_STATE = 20202

    # Order collaborator (203xx)
    ORDER_NOT_PAYABLE = 20300

    # Gateway/Network errors (6xxxx)
    GATEWAY_REJECTED = 60000
    GATEWAY_UNAVAILABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    LOCK_TIMEOUT = 60005


# Gateway trade state -> GatewayTradeStatus value
GATEWAY_STATUS_TO_INTERNAL = {
    "alipay": {
        # Per trade_status
        "WAIT_BUYER_PAY": "pending",
        "TRADE_SUCCESS": "paid",
        "TRADE_FINISHED": "paid",
        "TRADE_CLOSED": "closed",
    },
    "wechat": {
        # Per trade_state
        "SUCCESS": "paid",
        "REFUND": "paid",
        "NOTPAY": "pending",
        "USERPAYING": "pending",
        "PAYERROR": "failed",
        "CLOSED": "closed",
        "REVOKED": "closed",
    },
}

# Gateway refund state -> GatewayRefundStatus value
GATEWAY_REFUND_STATUS_TO_INTERNAL = {
    "alipay": {
        "REFUND_SUCCESS": "succeeded",
    },
    "wechat": {
        "SUCCESS": "succeeded",
        "PROCESSING": "pending",
        "CLOSED": "failed",
        "ABNORMAL": "failed",
    },
}
