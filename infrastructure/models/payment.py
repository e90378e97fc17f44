"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey, text
)
from datetime import datetime, timezone

from .base import Base


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 订单信息
    order_id = Column(Integer, nullable=False, index=True, comment="订单ID")
    user_id = Column(Integer, nullable=False, index=True, comment="用户ID")
    payment_number = Column(String(50), unique=True, nullable=False, comment="支付单号（网关 out_trade_no）")

    # 支付方式与网关信息
    payment_method = Column(String(20), nullable=False, index=True, comment="支付方式: wechat/alipay/balance")
    transaction_id = Column(String(100), nullable=True, index=True, comment="第三方交易号")
    gateway_reference = Column(String(100), nullable=True, comment="网关受理引用")
    reservation_id = Column(String(50), nullable=True, comment="余额冻结记录ID")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=12, scale=2), nullable=False, comment="支付金额")

    # 状态
    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/paid/failed/refunded/cancelled"
    )
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 退款信息
    refund_id = Column(String(50), nullable=True, comment="最近一笔退款单号")
    refund_amount = Column(Numeric(precision=12, scale=2), nullable=False, default=0, comment="已退款金额")
    pending_refund_amount = Column(
        Numeric(precision=12, scale=2),
        nullable=False,
        default=0,
        comment="处理中的退款金额"
    )
    refund_reason = Column(String(200), nullable=True, comment="退款原因")
    refund_time = Column(DateTime(timezone=True), nullable=True, comment="退款时间")

    # 时间戳
    dispatched_at = Column(DateTime(timezone=True), nullable=True, comment="发起网关支付时间")
    payment_time = Column(DateTime(timezone=True), nullable=True, comment="支付完成时间")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    # 索引
    __table_args__ = (
        Index("ix_payments_user_status", "user_id", "status"),
        Index("ix_payments_status_created", "status", "created_at"),
        # 同一订单最多一笔未终结支付
        Index(
            "uq_payments_order_active",
            "order_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'paid')"),
            sqlite_where=text("status IN ('pending', 'paid')"),
        ),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, payment_number='{self.payment_number}', "
            f"method='{self.payment_method}', amount={self.amount}, status='{self.status}')>"
        )


class PaymentIncidentModel(Base):
    """
    支付异常通知记录

    记录无法应用的网关通知（冲突交易号、金额不一致等），供对账报表展示
    """
    __tablename__ = "payment_incidents"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(
        Integer,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )
    payment_number = Column(String(50), nullable=False, comment="支付单号")
    kind = Column(String(50), nullable=False, comment="异常类型")
    detail = Column(JSON, nullable=True, comment="异常详情")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
        comment="记录时间"
    )

    def __repr__(self):
        return f"<PaymentIncidentModel(id={self.id}, payment_id={self.payment_id}, kind='{self.kind}')>"
