"""create_payment_tables

Revision ID: 3f1c2a7d9b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f1c2a7d9b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='更新时间'),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False, comment='姓名'),
        sa.Column('email', sa.String(length=100), nullable=False, comment='邮箱'),
        sa.Column('mobile', sa.String(length=20), nullable=True, comment='手机号'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否激活'),
        sa.Column('is_superuser', sa.Boolean(), nullable=False, server_default=sa.false(), comment='是否超级管理员'),
        sa.Column('ledger_customer_id', sa.String(length=100), nullable=True, comment='账簿客户ID'),
        sa.Column('current_plan_id', sa.Integer(), nullable=True, comment='当前套餐ID'),
        sa.Column('plan_purchased_at', sa.DateTime(timezone=True), nullable=True, comment='套餐购买时间'),
        sa.Column('subscription_status', sa.String(length=20), nullable=False, server_default='inactive', comment='订阅状态'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'plans',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False, comment='套餐名称'),
        sa.Column('description', sa.Text(), nullable=True, comment='套餐描述'),
        sa.Column('price', sa.Numeric(precision=15, scale=2), nullable=False, comment='价格'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='INR', comment='货币代码'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否上架'),
        sa.Column('available_from', sa.DateTime(timezone=True), nullable=True, comment='开始售卖时间'),
        sa.Column('available_until', sa.DateTime(timezone=True), nullable=True, comment='结束售卖时间'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('transaction_id', sa.String(length=64), nullable=False, comment='交易号 TXN_<ms>_<rand>'),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='用户ID'),
        sa.Column('plan_id', sa.Integer(), nullable=False, comment='套餐ID'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='交易金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='INR', comment='货币代码 ISO-4217'),
        sa.Column('payment_gateway', sa.String(length=50), nullable=False, server_default='zoho', comment='支付网关'),
        sa.Column('payment_method', sa.String(length=32), nullable=True, comment='支付方式'),
        sa.Column('gateway_order_id', sa.String(length=200), nullable=True, comment='网关结账会话ID'),
        sa.Column('gateway_payment_id', sa.String(length=200), nullable=True, comment='网关支付ID'),
        sa.Column('gateway_transaction_id', sa.String(length=200), nullable=True, comment='网关交易ID'),
        sa.Column('payment_url', sa.String(length=1000), nullable=True, comment='支付跳转链接'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending', comment='交易状态'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('error_code', sa.String(length=64), nullable=True, comment='错误码'),
        sa.Column('error_message', sa.Text(), nullable=True, comment='错误信息'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0', comment='已重试次数'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3', comment='最大重试次数'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True, comment='下次重试时间'),
        sa.Column('invoice_number', sa.String(length=100), nullable=True, comment='账簿发票号（只写一次）'),
        sa.Column('ledger_payment_id', sa.String(length=100), nullable=True, comment='账簿收款ID（只写一次）'),
        sa.Column('reconciliation_status', sa.String(length=32), nullable=False, server_default='pending', comment='对账状态'),
        sa.Column('reconciled_at', sa.DateTime(timezone=True), nullable=True, comment='对账完成时间'),
        sa.Column('reconciliation_lease_until', sa.DateTime(timezone=True), nullable=True, comment='对账租约到期时间'),
        sa.Column('webhook_received', sa.Boolean(), nullable=False, server_default=sa.false(), comment='是否收到Webhook'),
        sa.Column('webhook_verified', sa.Boolean(), nullable=False, server_default=sa.false(), comment='Webhook签名是否通过'),
        sa.Column('webhook_received_at', sa.DateTime(timezone=True), nullable=True, comment='Webhook接收时间'),
        sa.Column('initiated_at', sa.DateTime(timezone=True), nullable=True, comment='发起时间'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True, comment='完成时间'),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True, comment='失败时间'),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True, comment='取消时间'),
        *_timestamps(),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0', comment='乐观锁版本号'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_transactions_transaction_id', 'transactions', ['transaction_id'], unique=True)
    op.create_index('ix_transactions_gateway_order_id', 'transactions', ['gateway_order_id'], unique=True)
    op.create_index('ix_transactions_gateway_payment_id', 'transactions', ['gateway_payment_id'])
    op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])
    op.create_index('ix_transactions_plan_id', 'transactions', ['plan_id'])
    op.create_index('ix_transactions_status', 'transactions', ['status'])
    op.create_index('ix_transactions_next_retry_at', 'transactions', ['next_retry_at'])
    op.create_index('ix_transactions_created_at', 'transactions', ['created_at'])
    op.create_index('ix_transactions_user_created', 'transactions', ['user_id', 'created_at'])
    op.create_index('ix_transactions_status_retry', 'transactions', ['status', 'next_retry_at'])

    op.create_table(
        'refunds',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('transaction_pk', sa.Integer(), nullable=False, comment='关联的交易主键'),
        sa.Column('refund_id', sa.String(length=100), nullable=False, comment='退款号 REF_<交易号>_<ms>'),
        sa.Column('gateway_refund_id', sa.String(length=200), nullable=True, comment='网关退款ID'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='退款金额'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending', comment='退款状态'),
        sa.Column('reason', sa.Text(), nullable=True, comment='退款原因'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='创建时间'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='退款完成时间'),
        sa.ForeignKeyConstraint(['transaction_pk'], ['transactions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_refunds_refund_id', 'refunds', ['refund_id'], unique=True)
    op.create_index('ix_refunds_transaction_pk', 'refunds', ['transaction_pk'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_key', sa.String(length=64), nullable=False, comment='原始请求体 sha256'),
        sa.Column('event_type', sa.String(length=64), nullable=False, comment='事件类型'),
        sa.Column('gateway_order_id', sa.String(length=200), nullable=True, comment='网关结账会话ID'),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='接收时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_key', name='uq_webhook_events_event_key'),
    )
    op.create_index('ix_webhook_events_gateway_order_id', 'webhook_events', ['gateway_order_id'])


def downgrade() -> None:
    op.drop_index('ix_webhook_events_gateway_order_id', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('ix_refunds_transaction_pk', table_name='refunds')
    op.drop_index('ix_refunds_refund_id', table_name='refunds')
    op.drop_table('refunds')
    for name in (
        'ix_transactions_status_retry', 'ix_transactions_user_created', 'ix_transactions_created_at',
        'ix_transactions_next_retry_at', 'ix_transactions_status', 'ix_transactions_plan_id',
        'ix_transactions_user_id', 'ix_transactions_gateway_payment_id', 'ix_transactions_gateway_order_id',
        'ix_transactions_transaction_id',
    ):
        op.drop_index(name, table_name='transactions')
    op.drop_table('transactions')
    op.drop_table('plans')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
