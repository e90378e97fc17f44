"""
余额数据库模型
"""
from sqlalchemy import CheckConstraint, Column, Integer, String, Numeric, DateTime, Index
from datetime import datetime, timezone

from .base import Base


def _utcnow():
    return datetime.now(timezone.utc)


class UserBalanceModel(Base):
    """用户余额（每个用户一行）"""
    __tablename__ = "user_balances"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, unique=True, nullable=False, comment="用户ID")
    balance = Column(Numeric(precision=12, scale=2), nullable=False, default=0, comment="可用余额")
    frozen_balance = Column(Numeric(precision=12, scale=2), nullable=False, default=0, comment="冻结余额")
    total_recharge = Column(Numeric(precision=12, scale=2), nullable=False, default=0, comment="累计充值")
    total_consume = Column(Numeric(precision=12, scale=2), nullable=False, default=0, comment="累计消费")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
        comment="更新时间"
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_user_balances_balance_non_negative"),
        CheckConstraint("frozen_balance >= 0", name="ck_user_balances_frozen_non_negative"),
    )

    def __repr__(self):
        return (
            f"<UserBalanceModel(user_id={self.user_id}, balance={self.balance}, "
            f"frozen={self.frozen_balance})>"
        )


class BalanceTransactionModel(Base):
    """余额流水（只追加）"""
    __tablename__ = "balance_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, comment="用户ID")
    type = Column(String(20), nullable=False, comment="类型: recharge/consume/refund/withdrawal")
    phase = Column(String(20), nullable=False, default="settled", comment="阶段: settled/hold/capture/release")
    amount = Column(Numeric(precision=12, scale=2), nullable=False, comment="金额")
    balance_before = Column(Numeric(precision=12, scale=2), nullable=False, comment="变动前余额")
    balance_after = Column(Numeric(precision=12, scale=2), nullable=False, comment="变动后余额")
    frozen_before = Column(Numeric(precision=12, scale=2), nullable=False, comment="变动前冻结余额")
    frozen_after = Column(Numeric(precision=12, scale=2), nullable=False, comment="变动后冻结余额")
    description = Column(String(255), nullable=True, comment="描述")
    related_id = Column(String(50), nullable=True, comment="关联单号")
    related_type = Column(String(20), nullable=True, comment="关联类型")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")

    __table_args__ = (
        Index("ix_balance_transactions_user_id", "user_id", "id"),
        Index("ix_balance_transactions_related", "related_type", "related_id"),
    )


class BalanceReservationModel(Base):
    """余额冻结记录"""
    __tablename__ = "balance_reservations"

    id = Column(String(50), primary_key=True, comment="冻结记录ID")
    user_id = Column(Integer, nullable=False, index=True, comment="用户ID")
    amount = Column(Numeric(precision=12, scale=2), nullable=False, comment="冻结金额")
    status = Column(String(20), nullable=False, default="held", comment="状态: held/captured/released")
    related_id = Column(String(50), nullable=True, comment="关联单号")
    related_type = Column(String(20), nullable=True, comment="关联类型")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    settled_at = Column(DateTime(timezone=True), nullable=True, comment="扣款/解冻时间")
