"""
Payment DTOs (Pydantic v2) used at application boundaries.

Gateway-facing models describe what adapters exchange with WeChat Pay and
Alipay; the remaining models are the views returned by the payment use-cases.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_serializer

from domain.payment.entity import Payment, PaymentIncident, PaymentMethod, PaymentStatus


# Scene allow list per gateway
SCENE_BY_METHOD: dict[str, set[str]] = {
    "alipay": {"qr_code", "pc_web", "wap"},
    "wechat": {"qr_code", "h5", "jsapi"},
    "balance": {"qr_code"},
}

Scene = Literal["qr_code", "pc_web", "wap", "h5", "jsapi"]
Money = Annotated[Decimal, Field(gt=0, max_digits=12, decimal_places=2)]


class DTOBase(BaseModel):
    """Base DTO: unify datetime serialization to UTC-Z for all subclasses."""

    @model_serializer(mode="wrap")
    def _serialize_model(self, handler):  # type: ignore[override]
        data = handler(self)

        def convert(value):
            if isinstance(value, datetime):
                ts = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
                return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
            if isinstance(value, list):
                return [convert(v) for v in value]
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(data)


# ============= Gateway boundary =============

class GatewayInitiateRequest(BaseModel):
    payment_number: str
    amount: Decimal
    currency: str = "CNY"
    subject: str
    scene: Scene = "qr_code"
    return_url: Optional[str] = None
    openid: Optional[str] = None
    client_ip: Optional[str] = None


class GatewayInitiateResult(BaseModel):
    gateway_reference: str
    payment_url: Optional[str] = None
    qr_code: Optional[str] = None
    prepay_id: Optional[str] = None
    pay_params: Optional[dict[str, Any]] = None


class GatewayNotification(BaseModel):
    """Verified content of an inbound gateway callback."""
    signature_valid: bool
    kind: Literal["payment", "refund"] = "payment"
    gateway_reference: Optional[str] = None
    transaction_id: Optional[str] = None
    outcome: Literal["success", "failure", "pending"] = "pending"
    amount: Optional[Decimal] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    raw_status: Optional[str] = None

    @classmethod
    def invalid(cls) -> "GatewayNotification":
        return cls(signature_valid=False)


class GatewayQueryResult(BaseModel):
    status: Literal["paid", "pending", "failed", "closed", "not_found"]
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    raw_status: Optional[str] = None


class GatewayRefundRequest(BaseModel):
    gateway_reference: str
    refund_id: str
    refund_amount: Decimal
    total_amount: Decimal
    currency: str = "CNY"
    reason: Optional[str] = None
    transaction_id: Optional[str] = None


class GatewayRefundResult(BaseModel):
    refund_id: str
    status: Literal["succeeded", "pending", "failed", "not_found"]
    amount: Optional[Decimal] = None
    gateway_code: Optional[str] = None
    message: Optional[str] = None


# ============= Use-case inputs =============

class DispatchParams(BaseModel):
    """Per-request options handed to the gateway on dispatch."""
    scene: Scene = "qr_code"
    return_url: Optional[str] = None
    openid: Optional[str] = None
    client_ip: Optional[str] = None


class CreatePaymentRequest(BaseModel):
    order_id: int = Field(..., ge=1)
    payment_method: PaymentMethod
    amount: Money
    scene: Scene = "qr_code"
    return_url: Optional[str] = None
    openid: Optional[str] = None

    @field_validator("scene")
    @classmethod
    def _validate_scene_by_method(cls, v: str, info):
        method = info.data.get("payment_method")
        allowed = SCENE_BY_METHOD.get(method.value if method else "", None)
        if allowed is not None and v not in allowed:
            raise ValueError(f"scene '{v}' not supported by payment method '{method.value}'")
        return v

    def dispatch_params(self, client_ip: Optional[str] = None) -> DispatchParams:
        return DispatchParams(scene=self.scene, return_url=self.return_url, openid=self.openid, client_ip=client_ip)


class GatewayPayRequest(BaseModel):
    """Body of the per-gateway shortcut routes (/wechatpay, /alipay)."""
    order_id: int = Field(..., ge=1)
    amount: Money
    scene: Scene = "qr_code"
    return_url: Optional[str] = None
    openid: Optional[str] = None

    def dispatch_params(self, client_ip: Optional[str] = None) -> DispatchParams:
        return DispatchParams(scene=self.scene, return_url=self.return_url, openid=self.openid, client_ip=client_ip)


class RefundPaymentRequest(BaseModel):
    amount: Money
    reason: str = Field(..., min_length=1, max_length=200)


# ============= Views =============

class PaymentView(DTOBase):
    id: int
    payment_number: str
    order_id: int
    user_id: int
    payment_method: PaymentMethod
    amount: Decimal
    status: PaymentStatus
    transaction_id: Optional[str] = None
    gateway_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    payment_time: Optional[datetime] = None
    refund_state: str
    refund_id: Optional[str] = None
    refund_amount: Decimal
    pending_refund_amount: Decimal
    refund_reason: Optional[str] = None
    refund_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, payment: Payment) -> "PaymentView":
        return cls(
            id=payment.id,
            payment_number=payment.payment_number,
            order_id=payment.order_id,
            user_id=payment.user_id,
            payment_method=payment.payment_method,
            amount=payment.amount,
            status=payment.status,
            transaction_id=payment.transaction_id,
            gateway_reference=payment.gateway_reference,
            failure_reason=payment.failure_reason,
            payment_time=payment.payment_time,
            refund_state=payment.refund_state.value,
            refund_id=payment.refund_id,
            refund_amount=payment.refund_amount,
            pending_refund_amount=payment.pending_refund_amount,
            refund_reason=payment.refund_reason,
            refund_time=payment.refund_time,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )


class CreatePaymentResult(DTOBase):
    payment: PaymentView
    payment_url: Optional[str] = None
    qr_code: Optional[str] = None
    prepay_id: Optional[str] = None
    pay_params: Optional[dict[str, Any]] = None


class RefundView(DTOBase):
    payment_id: int
    payment_number: str
    status: PaymentStatus
    refund_state: str
    refund_id: Optional[str] = None
    refund_amount: Decimal
    pending_refund_amount: Decimal
    refundable_amount: Decimal
    refund_reason: Optional[str] = None
    refund_time: Optional[datetime] = None

    @classmethod
    def from_entity(cls, payment: Payment) -> "RefundView":
        return cls(
            payment_id=payment.id,
            payment_number=payment.payment_number,
            status=payment.status,
            refund_state=payment.refund_state.value,
            refund_id=payment.refund_id,
            refund_amount=payment.refund_amount,
            pending_refund_amount=payment.pending_refund_amount,
            refundable_amount=payment.refundable_amount,
            refund_reason=payment.refund_reason,
            refund_time=payment.refund_time,
        )


class PaymentMethodInfo(BaseModel):
    code: PaymentMethod
    name: str
    enabled: bool
    scenes: list[str]


class NotifyAck(BaseModel):
    """Result of processing a gateway callback; accepted=False asks the gateway to retry."""
    accepted: bool
    outcome: Literal["applied", "duplicate", "ignored", "incident", "invalid_signature"]
    payment_number: Optional[str] = None
    message: Optional[str] = None


class MethodTotals(BaseModel):
    count: int = 0
    paid_amount: Decimal = Decimal("0.00")
    refunded_amount: Decimal = Decimal("0.00")


class BillSummary(DTOBase):
    start: datetime
    end: datetime
    count: int
    total_paid: Decimal
    total_refunded: Decimal
    net_amount: Decimal
    by_method: dict[str, MethodTotals]
    items: list[PaymentView]


# ============= Reconciliation =============

MismatchKind = Literal[
    "pending_but_paid",
    "paid_but_missing",
    "paid_but_unpaid",
    "closed_but_paid",
    "amount_mismatch",
    "gateway_unknown",
]


class ReconciliationMismatch(BaseModel):
    """A discrepancy between the local record and the gateway; reported, never raised."""
    payment_id: int
    payment_number: str
    payment_method: PaymentMethod
    kind: MismatchKind
    local_status: PaymentStatus
    gateway_status: Optional[str] = None
    local_amount: Decimal
    gateway_amount: Optional[Decimal] = None
    detail: Optional[str] = None


class ReconciliationBucket(BaseModel):
    day: date
    payment_method: PaymentMethod
    count_by_status: dict[str, int]
    amount_by_status: dict[str, Decimal]
    refunded_amount: Decimal


class IncidentView(DTOBase):
    id: Optional[int]
    payment_id: int
    payment_number: str
    kind: str
    detail: dict[str, Any]
    created_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, incident: PaymentIncident) -> "IncidentView":
        return cls(
            id=incident.id,
            payment_id=incident.payment_id,
            payment_number=incident.payment_number,
            kind=incident.kind.value,
            detail=incident.detail or {},
            created_at=incident.created_at,
        )


class ReconciliationReport(DTOBase):
    start: datetime
    end: datetime
    payment_method: Optional[PaymentMethod] = None
    deep: bool = False
    checked: int = 0
    buckets: list[ReconciliationBucket]
    mismatches: list[ReconciliationMismatch]
    incidents: list[IncidentView]
    generated_at: datetime

