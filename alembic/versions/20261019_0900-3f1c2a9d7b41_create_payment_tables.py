"""create_payment_tables

Revision ID: 3f1c2a9d7b41
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f1c2a9d7b41'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='主键ID'),
        sa.Column('buyer_ref', sa.String(length=100), nullable=True, comment='买家标识'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('total_minor', sa.BigInteger(), nullable=False, comment='订单总额（最小货币单位）'),
        sa.Column('state', sa.String(length=32), nullable=False, server_default='created', comment='订单状态'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0', comment='乐观锁版本号'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True, comment='取消时间'),
        sa.PrimaryKeyConstraint('id'),
        comment='订单表，状态由支付结果推导'
    )
    op.create_index('ix_orders_id', 'orders', ['id'], unique=False)
    op.create_index('ix_orders_buyer_ref', 'orders', ['buyer_ref'], unique=False)
    op.create_index('ix_orders_state', 'orders', ['state'], unique=False)

    op.create_table(
        'order_lines',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False, comment='关联的订单ID'),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0', comment='行序号'),
        sa.Column('product_ref', sa.String(length=100), nullable=False, comment='商品引用'),
        sa.Column('description', sa.String(length=255), nullable=False, comment='描述'),
        sa.Column('quantity', sa.Integer(), nullable=False, comment='数量'),
        sa.Column('unit_price_minor', sa.BigInteger(), nullable=False, comment='单价（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_order_lines_order_id', 'order_lines', ['order_id'], unique=False)
    op.create_index('ix_order_lines_order_position', 'order_lines', ['order_id', 'position'], unique=True)

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='主键ID'),
        sa.Column('order_id', sa.Integer(), nullable=False, comment='订单ID'),
        sa.Column('processor', sa.String(length=50), nullable=False, comment='处理器注册键'),
        sa.Column('external_ref', sa.String(length=200), nullable=True, comment='网关分配的支付ID'),
        sa.Column('idempotency_key', sa.String(length=128), nullable=False, comment='幂等键'),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False, comment='支付金额'),
        sa.Column('refunded_minor', sa.BigInteger(), nullable=False, server_default='0', comment='已退款金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('state', sa.String(length=32), nullable=False, server_default='pending', comment='支付状态'),
        sa.Column('needs_reconciliation', sa.Boolean(), nullable=False, server_default='false', comment='待复核（reconciliation_causes 非空）'),
        sa.Column('reconciliation_causes', sa.String(length=200), nullable=False, server_default='', comment='待复核原因，逗号分隔'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败/待复核原因'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0', comment='乐观锁版本号'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True, comment='扣款完成时间'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', 'idempotency_key', name='uq_payments_order_idempotency_key'),
        comment='支付表，每笔支付绑定一个处理器'
    )
    op.create_index('ix_payments_id', 'payments', ['id'], unique=False)
    op.create_index('ix_payments_order_id', 'payments', ['order_id'], unique=False)
    op.create_index('ix_payments_processor', 'payments', ['processor'], unique=False)
    op.create_index('ix_payments_state', 'payments', ['state'], unique=False)
    op.create_index('ix_payments_needs_reconciliation', 'payments', ['needs_reconciliation'], unique=False)
    op.create_index('ix_payments_created_at', 'payments', ['created_at'], unique=False)
    op.create_index('ix_payments_processor_external_ref', 'payments', ['processor', 'external_ref'], unique=False)

    op.create_table(
        'payment_callbacks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('gateway', sa.String(length=50), nullable=False, comment='网关'),
        sa.Column('source', sa.String(length=20), nullable=False, server_default='webhook', comment='来源'),
        sa.Column('payload', sa.Text(), nullable=False, comment='原始报文'),
        sa.Column('signature_valid', sa.Boolean(), nullable=False, server_default='true', comment='签名校验结果'),
        sa.Column('external_ref', sa.String(length=200), nullable=True, comment='报文引用的网关支付ID'),
        sa.Column('event_type', sa.String(length=50), nullable=True, comment='规范化事件类型'),
        sa.Column('event_key', sa.String(length=255), nullable=True, comment='语义事件键'),
        sa.Column('payment_id', sa.Integer(), nullable=True, comment='关联的支付ID'),
        sa.Column('amount_minor', sa.BigInteger(), nullable=True, comment='事件金额'),
        sa.Column('currency', sa.String(length=3), nullable=True, comment='货币代码'),
        sa.Column('outcome', sa.String(length=32), nullable=False, comment='处理结果'),
        sa.Column('reason', sa.Text(), nullable=True, comment='结果原因'),
        sa.Column('dedup_key', sa.String(length=512), nullable=True, comment='去重键（仅 applied）'),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='接收时间'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedup_key'),
        comment='回调记录表（只追加）'
    )
    op.create_index('ix_payment_callbacks_payment_id', 'payment_callbacks', ['payment_id'], unique=False)
    op.create_index('ix_payment_callbacks_outcome', 'payment_callbacks', ['outcome'], unique=False)
    op.create_index('ix_payment_callbacks_received_at', 'payment_callbacks', ['received_at'], unique=False)
    op.create_index('ix_payment_callbacks_lookup', 'payment_callbacks', ['gateway', 'external_ref', 'event_key'], unique=False)

    op.create_table(
        'payment_refunds',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False, comment='关联的支付ID'),
        sa.Column('refund_key', sa.String(length=128), nullable=False, comment='客户端幂等键'),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False, comment='退款金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='requested', comment='状态'),
        sa.Column('refund_ref', sa.String(length=200), nullable=True, comment='网关退款ID'),
        sa.Column('reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0', comment='乐观锁版本号'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id', 'refund_key', name='uq_payment_refunds_payment_key'),
        comment='退款请求表，按客户端幂等键去重'
    )
    op.create_index('ix_payment_refunds_payment_id', 'payment_refunds', ['payment_id'], unique=False)

    op.create_table(
        'receipts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False, comment='关联的支付ID'),
        sa.Column('order_id', sa.Integer(), nullable=False, comment='订单ID（冗余，便于查询）'),
        sa.Column('event_key', sa.String(length=255), nullable=False, comment='触发收据的支付事件键'),
        sa.Column('kind', sa.String(length=20), nullable=False, comment='收据类型: payment/refund'),
        sa.Column('total_minor', sa.BigInteger(), nullable=False, comment='收据总额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('issued_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='开具时间'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id', 'event_key', name='uq_receipts_payment_event'),
        comment='收据表，每个资金事件一张'
    )
    op.create_index('ix_receipts_payment_id', 'receipts', ['payment_id'], unique=False)
    op.create_index('ix_receipts_order_id', 'receipts', ['order_id'], unique=False)

    op.create_table(
        'receipt_line_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('receipt_id', sa.Integer(), nullable=False, comment='关联的收据ID'),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0', comment='行序号'),
        sa.Column('description', sa.String(length=300), nullable=False, comment='描述'),
        sa.Column('unit_amount_minor', sa.BigInteger(), nullable=False, comment='单价'),
        sa.Column('quantity', sa.Integer(), nullable=False, comment='数量'),
        sa.Column('line_total_minor', sa.BigInteger(), nullable=False, comment='行合计'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.ForeignKeyConstraint(['receipt_id'], ['receipts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_receipt_line_items_receipt_id', 'receipt_line_items', ['receipt_id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_receipt_line_items_receipt_id', table_name='receipt_line_items')
    op.drop_table('receipt_line_items')

    op.drop_index('ix_receipts_order_id', table_name='receipts')
    op.drop_index('ix_receipts_payment_id', table_name='receipts')
    op.drop_table('receipts')

    op.drop_index('ix_payment_refunds_payment_id', table_name='payment_refunds')
    op.drop_table('payment_refunds')

    op.drop_index('ix_payment_callbacks_lookup', table_name='payment_callbacks')
    op.drop_index('ix_payment_callbacks_received_at', table_name='payment_callbacks')
    op.drop_index('ix_payment_callbacks_outcome', table_name='payment_callbacks')
    op.drop_index('ix_payment_callbacks_payment_id', table_name='payment_callbacks')
    op.drop_table('payment_callbacks')

    op.drop_index('ix_payments_processor_external_ref', table_name='payments')
    op.drop_index('ix_payments_created_at', table_name='payments')
    op.drop_index('ix_payments_needs_reconciliation', table_name='payments')
    op.drop_index('ix_payments_state', table_name='payments')
    op.drop_index('ix_payments_processor', table_name='payments')
    op.drop_index('ix_payments_order_id', table_name='payments')
    op.drop_index('ix_payments_id', table_name='payments')
    op.drop_table('payments')

    op.drop_index('ix_order_lines_order_position', table_name='order_lines')
    op.drop_index('ix_order_lines_order_id', table_name='order_lines')
    op.drop_table('order_lines')

    op.drop_index('ix_orders_state', table_name='orders')
    op.drop_index('ix_orders_buyer_ref', table_name='orders')
    op.drop_index('ix_orders_id', table_name='orders')
    op.drop_table('orders')
