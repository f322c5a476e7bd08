"""initial

Revision ID: 5c1f0a9d3b72
Revises:
Create Date: 2026-10-19 12:00:41.301126

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c1f0a9d3b72'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


payment_status = sa.Enum(
    'PENDING', 'PROCESSING', 'PAID', 'EXPIRED', 'FAILED', 'REFUND', 'CHARGEBACK',
    name='paymentstatus'
)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'shop',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('webhook_url', sa.String(), nullable=True),
        sa.Column('webhook_events', sa.JSON(), nullable=False),
        sa.Column('gateway_settings', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_shop_id'), 'shop', ['id'], unique=False)

    op.create_table(
        'payment',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('shop_id', sa.Uuid(), nullable=False),
        sa.Column('gateway', sa.String(), nullable=False),
        sa.Column('gateway_payment_id', sa.String(), nullable=True),
        sa.Column('order_id', sa.String(), nullable=True),
        sa.Column('amount', sa.Numeric(), nullable=False),
        sa.Column('currency', sa.String(), nullable=False),
        sa.Column('source_currency', sa.String(), nullable=True),
        sa.Column('amount_is_editable', sa.Boolean(), nullable=True),
        sa.Column('max_payments', sa.Integer(), nullable=True),
        sa.Column('status', payment_status, nullable=False),
        sa.Column('chargeback_amount', sa.Numeric(), nullable=True),
        sa.Column('merchant_paid', sa.Boolean(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "(status = 'CHARGEBACK') = (chargeback_amount IS NOT NULL)",
            name='chargeback_amount_iff_chargeback'
        ),
        sa.ForeignKeyConstraint(['shop_id'], ['shop.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway', 'gateway_payment_id')
    )
    op.create_index(op.f('ix_payment_id'), 'payment', ['id'], unique=False)
    op.create_index(op.f('ix_payment_shop_id'), 'payment', ['shop_id'], unique=False)
    op.create_index(op.f('ix_payment_gateway'), 'payment', ['gateway'], unique=False)
    op.create_index(op.f('ix_payment_gateway_payment_id'), 'payment', ['gateway_payment_id'], unique=False)
    op.create_index(op.f('ix_payment_order_id'), 'payment', ['order_id'], unique=False)
    op.create_index(op.f('ix_payment_status'), 'payment', ['status'], unique=False)

    op.create_table(
        'webhook_log',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('gateway', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('event', sa.String(), nullable=False),
        sa.Column('outcome', sa.String(), nullable=False),
        sa.Column('payment_id', sa.Uuid(), nullable=True),
        sa.Column('detail', sa.String(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_webhook_log_created_at'), 'webhook_log', ['created_at'], unique=False)
    op.create_index(op.f('ix_webhook_log_gateway'), 'webhook_log', ['gateway'], unique=False)
    op.create_index(op.f('ix_webhook_log_outcome'), 'webhook_log', ['outcome'], unique=False)
    op.create_index(op.f('ix_webhook_log_payment_id'), 'webhook_log', ['payment_id'], unique=False)

    op.create_table(
        'handler_notification_request',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('handler_url', sa.String(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_handler_notification_request_created_at'), 'handler_notification_request', ['created_at'], unique=False)
    op.create_index(op.f('ix_handler_notification_request_processed_at'), 'handler_notification_request', ['processed_at'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f('ix_handler_notification_request_processed_at'), table_name='handler_notification_request')
    op.drop_index(op.f('ix_handler_notification_request_created_at'), table_name='handler_notification_request')
    op.drop_table('handler_notification_request')

    op.drop_index(op.f('ix_webhook_log_payment_id'), table_name='webhook_log')
    op.drop_index(op.f('ix_webhook_log_outcome'), table_name='webhook_log')
    op.drop_index(op.f('ix_webhook_log_gateway'), table_name='webhook_log')
    op.drop_index(op.f('ix_webhook_log_created_at'), table_name='webhook_log')
    op.drop_table('webhook_log')

    op.drop_index(op.f('ix_payment_status'), table_name='payment')
    op.drop_index(op.f('ix_payment_order_id'), table_name='payment')
    op.drop_index(op.f('ix_payment_gateway_payment_id'), table_name='payment')
    op.drop_index(op.f('ix_payment_gateway'), table_name='payment')
    op.drop_index(op.f('ix_payment_shop_id'), table_name='payment')
    op.drop_index(op.f('ix_payment_id'), table_name='payment')
    op.drop_table('payment')
    payment_status.drop(op.get_bind(), checkfirst=True)

    op.drop_index(op.f('ix_shop_id'), table_name='shop')
    op.drop_table('shop')
