"""
Payment domain events.

Dataclass events record payment lifecycle facts; the application service
handles them after the unit of work commits (order notification, logging).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class PaymentEvent:
    payment_id: int
    payment_number: str
    order_id: int
    payment_method: str
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PaymentCreated(PaymentEvent):
    amount: str = ""


@dataclass
class PaymentSucceeded(PaymentEvent):
    transaction_id: Optional[str] = None


@dataclass
class PaymentFailed(PaymentEvent):
    reason: Optional[str] = None


@dataclass
class PaymentCanceled(PaymentEvent):
    pass


@dataclass
class RefundRequested(PaymentEvent):
    refund_id: str = ""
    amount: str = ""


@dataclass
class PaymentRefunded(PaymentEvent):
    refund_id: str = ""
    amount: str = ""
    fully_refunded: bool = False


@dataclass
class RefundFailed(PaymentEvent):
    refund_id: str = ""
    reason: Optional[str] = None
