"""
支付仓储接口 - 定义支付数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Sequence

from .entity import Payment, PaymentIncident, PaymentMethod, PaymentStatus


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: int, *, for_update: bool = False) -> Optional[Payment]:
        """根据ID获取支付；for_update 时加行锁"""
        pass

    @abstractmethod
    async def get_by_payment_number(
        self,
        payment_number: str,
        *,
        for_update: bool = False
    ) -> Optional[Payment]:
        """根据支付单号（网关侧 out_trade_no）获取支付"""
        pass

    @abstractmethod
    async def get_active_by_order(self, order_id: int) -> Optional[Payment]:
        """获取订单当前未终结（pending/paid）的支付"""
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        """更新支付记录"""
        pass

    @abstractmethod
    async def list_by_user(
        self,
        user_id: int,
        *,
        skip: int = 0,
        limit: int = 100,
        status: Optional[PaymentStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Payment]:
        """获取用户的支付列表（按创建时间倒序）"""
        pass

    @abstractmethod
    async def count_by_user(
        self,
        user_id: int,
        *,
        status: Optional[PaymentStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        """统计用户的支付数量"""
        pass

    @abstractmethod
    async def list_created_between(
        self,
        start: datetime,
        end: datetime,
        *,
        payment_method: Optional[PaymentMethod] = None,
    ) -> List[Payment]:
        """获取时间区间 [start, end) 内创建的支付"""
        pass

    @abstractmethod
    async def list_stale_pending(
        self,
        before: datetime,
        methods: Sequence[PaymentMethod],
        limit: int = 100,
    ) -> List[Payment]:
        """获取在 before 之前发起且仍为 pending 的支付"""
        pass

    @abstractmethod
    async def add_incident(self, incident: PaymentIncident) -> PaymentIncident:
        """记录异常通知"""
        pass

    @abstractmethod
    async def list_incidents(self, start: datetime, end: datetime) -> List[PaymentIncident]:
        """获取时间区间内记录的异常通知"""
        pass
