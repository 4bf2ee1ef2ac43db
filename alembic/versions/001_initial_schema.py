"""initial schema - create ledger tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create tenants table (status as VARCHAR, not enum)
    op.create_table(
        'tenants',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE'),
        sa.Column('webhook_url', sa.Text(), nullable=True),
        sa.Column('webhook_secret', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # Create payments table
    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=False, index=True),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('method', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, index=True),
        sa.Column('initiated_by', sa.String(20), nullable=False),
        sa.Column('gateway_reference', sa.String(255), nullable=True),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # Create credit_transactions table (append-only log, type as VARCHAR)
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=False, index=True),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('credit_amount', sa.Integer(), nullable=False),
        sa.Column('unit_price_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_amount_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('pricing_tier', sa.String(20), nullable=True),
        sa.Column('base_price_minor', sa.BigInteger(), nullable=True),
        sa.Column('discount_pct', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_amount_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('payment_id', sa.String(36), sa.ForeignKey('payments.id'), nullable=True, index=True),
        sa.Column('workflow_id', sa.String(64), nullable=True, index=True),
        sa.Column('workflow_type', sa.String(20), nullable=True),
        sa.Column('reservation_id', sa.String(36), nullable=True),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('created_by', sa.String(100), nullable=False, server_default='ledger'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('tenant_id', 'sequence', name='uq_credit_transactions_tenant_sequence'),
    )
    op.create_index(
        'ix_credit_transactions_tenant_type_created',
        'credit_transactions',
        ['tenant_id', 'type', 'created_at'],
    )

    # Create client_balances table (one row per tenant)
    op.create_table(
        'client_balances',
        sa.Column('tenant_id', sa.String(36), primary_key=True),
        sa.Column('total_purchased', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_refunded', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_adjustments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_expired', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reserved_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_spent_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_refunded_amount_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_sequence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('low_balance_threshold', sa.Integer(), nullable=False),
        sa.Column('critical_balance_threshold', sa.Integer(), nullable=False),
        sa.Column('auto_replenish_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_replenish_threshold', sa.Integer(), nullable=False),
        sa.Column('auto_replenish_amount', sa.Integer(), nullable=False),
        sa.Column('auto_replenish_payment_method', sa.String(30), nullable=True),
        sa.Column('last_purchase_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_usage_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.CheckConstraint(
            'total_purchased >= 0 AND total_used >= 0 AND total_refunded >= 0 '
            'AND total_expired >= 0 AND reserved_credits >= 0',
            name='ck_client_balances_non_negative',
        ),
        sa.CheckConstraint(
            'total_purchased + total_adjustments - total_used - total_refunded '
            '- total_expired - reserved_credits >= 0',
            name='ck_client_balances_available_non_negative',
        ),
        sa.CheckConstraint(
            'critical_balance_threshold >= 0 AND low_balance_threshold >= critical_balance_threshold '
            'AND auto_replenish_threshold >= 0 AND auto_replenish_amount > 0',
            name='ck_client_balances_thresholds',
        ),
    )

    # Create reservations table
    op.create_table(
        'reservations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('token', sa.String(64), nullable=False, unique=True),
        sa.Column('tenant_id', sa.String(36), nullable=False, index=True),
        sa.Column('workflow_id', sa.String(64), nullable=False),
        sa.Column('workflow_type', sa.String(20), nullable=True),
        sa.Column('credits_reserved', sa.Integer(), nullable=False),
        sa.Column('rate_locked_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('state', sa.String(20), nullable=False, index=True),
        sa.Column('usage_transaction_id', sa.String(36), nullable=True),
        sa.Column('release_transaction_id', sa.String(36), nullable=True),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('released_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('tenant_id', 'workflow_id', name='uq_reservations_tenant_workflow'),
    )

    # Create notification_deliveries table
    op.create_table(
        'notification_deliveries',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=False, index=True),
        sa.Column('alert_type', sa.String(40), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('response_code', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
    )


def downgrade() -> None:
    op.drop_table('notification_deliveries')
    op.drop_table('reservations')
    op.drop_table('client_balances')
    op.drop_index('ix_credit_transactions_tenant_type_created', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_table('payments')
    op.drop_table('tenants')
