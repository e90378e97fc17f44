"""金额工具：统一两位小数的 Decimal 表示"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Amount = Union[Decimal, int, str]


def to_money(value: Amount) -> Decimal:
    """转换为两位小数的 Decimal；float 先转 str 以免引入二进制误差。"""
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"invalid amount: {value!r}") from exc


def to_minor_units(value: Decimal) -> int:
    return int((to_money(value) * 100).to_integral_value())


def from_minor_units(value: int) -> Decimal:
    return to_money(Decimal(value) / 100)
