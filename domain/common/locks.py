"""互斥作用域端口：按 key 串行化对同一支付/订单/用户余额的修改"""
from __future__ import annotations

from typing import AsyncContextManager, Optional, Protocol, runtime_checkable


@runtime_checkable
class LockManager(Protocol):
    def hold(self, key: str, timeout: Optional[float] = None) -> AsyncContextManager[None]:
        """获取 key 对应的独占作用域，退出上下文时释放"""
        ...


def payment_lock_key(payment_id: int) -> str:
    return f"payment:{payment_id}"


def order_lock_key(order_id: int) -> str:
    return f"order:{order_id}"


def balance_lock_key(user_id: int) -> str:
    return f"balance:{user_id}"
