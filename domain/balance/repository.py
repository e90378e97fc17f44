"""
余额仓储接口
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from .entity import BalanceReservation, BalanceTransaction, UserBalance


class BalanceRepository(ABC):
    """用户余额、流水与冻结记录的持久化抽象"""

    @abstractmethod
    async def get_by_user(self, user_id: int, *, for_update: bool = False) -> Optional[UserBalance]:
        """获取用户余额"""
        pass

    @abstractmethod
    async def get_or_create(self, user_id: int) -> UserBalance:
        """获取用户余额并加行锁，不存在时创建全零记录"""
        pass

    @abstractmethod
    async def save(self, balance: UserBalance) -> UserBalance:
        """保存余额变动"""
        pass

    @abstractmethod
    async def add_transaction(self, txn: BalanceTransaction) -> BalanceTransaction:
        """追加流水"""
        pass

    @abstractmethod
    async def list_transactions(
        self,
        user_id: int,
        *,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[BalanceTransaction]:
        """按写入顺序获取流水"""
        pass

    @abstractmethod
    async def add_reservation(self, reservation: BalanceReservation) -> BalanceReservation:
        pass

    @abstractmethod
    async def get_reservation(
        self,
        reservation_id: str,
        *,
        for_update: bool = False
    ) -> Optional[BalanceReservation]:
        pass

    @abstractmethod
    async def update_reservation(self, reservation: BalanceReservation) -> BalanceReservation:
        pass
