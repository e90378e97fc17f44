"""create_payment_tables

Revision ID: 5b1e0c7d2a41
Revises:
Create Date: 2025-10-20 09:30:12.418203

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5b1e0c7d2a41'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


MONEY = sa.Numeric(precision=12, scale=2)
ACTIVE_PAYMENT = "status IN ('pending', 'paid')"


def upgrade() -> None:
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False, comment='订单ID'),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='用户ID'),
        sa.Column('payment_number', sa.String(length=50), nullable=False, comment='支付单号（网关 out_trade_no）'),
        sa.Column('payment_method', sa.String(length=20), nullable=False, comment='支付方式: wechat/alipay/balance'),
        sa.Column('transaction_id', sa.String(length=100), nullable=True, comment='第三方交易号'),
        sa.Column('gateway_reference', sa.String(length=100), nullable=True, comment='网关受理引用'),
        sa.Column('reservation_id', sa.String(length=50), nullable=True, comment='余额冻结记录ID'),
        sa.Column('amount', MONEY, nullable=False, comment='支付金额'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending', comment='支付状态: pending/paid/failed/refunded/cancelled'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('refund_id', sa.String(length=50), nullable=True, comment='最近一笔退款单号'),
        sa.Column('refund_amount', MONEY, nullable=False, server_default='0', comment='已退款金额'),
        sa.Column('pending_refund_amount', MONEY, nullable=False, server_default='0', comment='处理中的退款金额'),
        sa.Column('refund_reason', sa.String(length=200), nullable=True, comment='退款原因'),
        sa.Column('refund_time', sa.DateTime(timezone=True), nullable=True, comment='退款时间'),
        sa.Column('dispatched_at', sa.DateTime(timezone=True), nullable=True, comment='发起网关支付时间'),
        sa.Column('payment_time', sa.DateTime(timezone=True), nullable=True, comment='支付完成时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_number'),
    )
    op.create_index('ix_payments_id', 'payments', ['id'])
    op.create_index('ix_payments_order_id', 'payments', ['order_id'])
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_payment_method', 'payments', ['payment_method'])
    op.create_index('ix_payments_transaction_id', 'payments', ['transaction_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_created_at', 'payments', ['created_at'])
    op.create_index('ix_payments_user_status', 'payments', ['user_id', 'status'])
    op.create_index('ix_payments_status_created', 'payments', ['status', 'created_at'])
    # 同一订单最多一笔未终结支付
    op.create_index(
        'uq_payments_order_active',
        'payments',
        ['order_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_PAYMENT),
        sqlite_where=sa.text(ACTIVE_PAYMENT),
    )

    op.create_table(
        'payment_incidents',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False, comment='关联的支付ID'),
        sa.Column('payment_number', sa.String(length=50), nullable=False, comment='支付单号'),
        sa.Column('kind', sa.String(length=50), nullable=False, comment='异常类型'),
        sa.Column('detail', sa.JSON(), nullable=True, comment='异常详情'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='记录时间'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_incidents_id', 'payment_incidents', ['id'])
    op.create_index('ix_payment_incidents_payment_id', 'payment_incidents', ['payment_id'])
    op.create_index('ix_payment_incidents_created_at', 'payment_incidents', ['created_at'])

    op.create_table(
        'user_balances',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='用户ID'),
        sa.Column('balance', MONEY, nullable=False, server_default='0', comment='可用余额'),
        sa.Column('frozen_balance', MONEY, nullable=False, server_default='0', comment='冻结余额'),
        sa.Column('total_recharge', MONEY, nullable=False, server_default='0', comment='累计充值'),
        sa.Column('total_consume', MONEY, nullable=False, server_default='0', comment='累计消费'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
        sa.CheckConstraint('balance >= 0', name='ck_user_balances_balance_non_negative'),
        sa.CheckConstraint('frozen_balance >= 0', name='ck_user_balances_frozen_non_negative'),
    )
    op.create_index('ix_user_balances_id', 'user_balances', ['id'])

    op.create_table(
        'balance_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='用户ID'),
        sa.Column('type', sa.String(length=20), nullable=False, comment='类型: recharge/consume/refund/withdrawal'),
        sa.Column('phase', sa.String(length=20), nullable=False, server_default='settled', comment='阶段: settled/hold/capture/release'),
        sa.Column('amount', MONEY, nullable=False, comment='金额'),
        sa.Column('balance_before', MONEY, nullable=False, comment='变动前余额'),
        sa.Column('balance_after', MONEY, nullable=False, comment='变动后余额'),
        sa.Column('frozen_before', MONEY, nullable=False, comment='变动前冻结余额'),
        sa.Column('frozen_after', MONEY, nullable=False, comment='变动后冻结余额'),
        sa.Column('description', sa.String(length=255), nullable=True, comment='描述'),
        sa.Column('related_id', sa.String(length=50), nullable=True, comment='关联单号'),
        sa.Column('related_type', sa.String(length=20), nullable=True, comment='关联类型'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='创建时间'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_balance_transactions_id', 'balance_transactions', ['id'])
    op.create_index('ix_balance_transactions_user_id', 'balance_transactions', ['user_id', 'id'])
    op.create_index('ix_balance_transactions_related', 'balance_transactions', ['related_type', 'related_id'])

    op.create_table(
        'balance_reservations',
        sa.Column('id', sa.String(length=50), nullable=False, comment='冻结记录ID'),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='用户ID'),
        sa.Column('amount', MONEY, nullable=False, comment='冻结金额'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='held', comment='状态: held/captured/released'),
        sa.Column('related_id', sa.String(length=50), nullable=True, comment='关联单号'),
        sa.Column('related_type', sa.String(length=20), nullable=True, comment='关联类型'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='创建时间'),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True, comment='扣款/解冻时间'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_balance_reservations_user_id', 'balance_reservations', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_balance_reservations_user_id', table_name='balance_reservations')
    op.drop_table('balance_reservations')
    op.drop_index('ix_balance_transactions_related', table_name='balance_transactions')
    op.drop_index('ix_balance_transactions_user_id', table_name='balance_transactions')
    op.drop_index('ix_balance_transactions_id', table_name='balance_transactions')
    op.drop_table('balance_transactions')
    op.drop_index('ix_user_balances_id', table_name='user_balances')
    op.drop_table('user_balances')
    op.drop_index('ix_payment_incidents_created_at', table_name='payment_incidents')
    op.drop_index('ix_payment_incidents_payment_id', table_name='payment_incidents')
    op.drop_index('ix_payment_incidents_id', table_name='payment_incidents')
    op.drop_table('payment_incidents')
    op.drop_index('uq_payments_order_active', table_name='payments')
    for name in (
        'ix_payments_status_created', 'ix_payments_user_status', 'ix_payments_created_at',
        'ix_payments_status', 'ix_payments_transaction_id', 'ix_payments_payment_method',
        'ix_payments_user_id', 'ix_payments_order_id', 'ix_payments_id',
    ):
        op.drop_index(name, table_name='payments')
    op.drop_table('payments')
