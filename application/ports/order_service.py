"""
Order service port: the payment context only needs to know whether an order
can be paid, and to tell the order side once it has been.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: int
    exists: bool
    is_payable: bool = False
    amount: Optional[Decimal] = None
    user_id: Optional[int] = None
    status: Optional[str] = None

    @classmethod
    def missing(cls, order_id: int) -> "OrderSnapshot":
        return cls(order_id=order_id, exists=False)


@runtime_checkable
class OrderPort(Protocol):
    async def get_order(self, order_id: int) -> OrderSnapshot: ...

    async def notify_paid(self, order_id: int, payment_number: str) -> None:
        """Best effort; callers log and continue on failure."""
        ...
