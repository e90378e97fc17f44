"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from typing import Optional

from domain.balance.repository import BalanceRepository
from domain.common.locks import LockManager
from domain.payment.repository import PaymentRepository


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象

    通过 lock() 获取的独占作用域在事务提交/回滚之后才释放。
    """

    payment_repository: PaymentRepository
    balance_repository: BalanceRepository

    def __init__(self, *, readonly: bool = False, lock_manager: Optional[LockManager] = None) -> None:
        self._committed = False
        self._readonly = readonly
        self._lock_manager = lock_manager
        self._lock_stack: Optional[AsyncExitStack] = None
        self._held_keys: set[str] = set()
        self.payment_repository = None  # type: ignore[assignment]
        self.balance_repository = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        self._lock_stack = AsyncExitStack()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc:
                await self.rollback()
            else:
                # 只在非只读且未显式提交时自动提交
                if not self._readonly and not self._committed:
                    await self.commit()
        finally:
            await self._release_locks()

    async def lock(self, key: str, timeout: Optional[float] = None) -> None:
        """在本事务内独占 key；同一事务重复获取同一 key 不会阻塞"""
        if key in self._held_keys:
            return
        if self._lock_manager is None:
            raise RuntimeError("Unit of work has no lock manager")
        if self._lock_stack is None:
            raise RuntimeError("Unit of work is not active")
        await self._lock_stack.enter_async_context(self._lock_manager.hold(key, timeout))
        self._held_keys.add(key)

    async def _release_locks(self) -> None:
        stack, self._lock_stack = self._lock_stack, None
        self._held_keys.clear()
        if stack is not None:
            await stack.aclose()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""
