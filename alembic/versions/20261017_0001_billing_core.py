"""billing core tables: plans, subscriptions, payments, refunds, invoices,
bank transfers, discount codes and usages

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = '20261017_0001'
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(14, 2)
TS = sa.DateTime(timezone=True)
UUID = postgresql.UUID(as_uuid=True)
JSONB = postgresql.JSONB()


def _timestamps():
    return [
        sa.Column('created_at', TS, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', TS, nullable=False, server_default=sa.text('NOW()')),
    ]


def upgrade() -> None:
    op.create_table(
        'membership_plans',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('type', sa.Enum('BASIC', 'PREMIUM', 'VIP', 'STUDENT', name='plan_type_enum'), nullable=False),
        sa.Column('duration_months', sa.Integer, nullable=False),
        sa.Column('price', MONEY, nullable=False),
        sa.Column('setup_fee', MONEY, nullable=False, server_default='0'),
        sa.Column('benefits', JSONB, nullable=True),
        sa.Column('class_credits', sa.Integer, nullable=True),
        sa.Column('guest_passes', sa.Integer, nullable=False, server_default='0'),
        sa.Column('access_hours', JSONB, nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('member_id', sa.String(64), nullable=False),
        sa.Column('plan_id', UUID, sa.ForeignKey('membership_plans.id'), nullable=False),
        sa.Column('billed_plan_id', UUID, sa.ForeignKey('membership_plans.id'), nullable=True),
        sa.Column(
            'status',
            sa.Enum('PENDING', 'TRIAL', 'ACTIVE', 'PAST_DUE', 'CANCELLED', 'EXPIRED',
                    name='subscription_status_enum'),
            nullable=False,
            server_default='PENDING',
        ),
        sa.Column('billing_cycle', sa.Integer, nullable=False, server_default='1'),
        sa.Column('start_date', TS, nullable=False),
        sa.Column('end_date', TS, nullable=False),
        sa.Column('current_period_start', TS, nullable=False),
        sa.Column('current_period_end', TS, nullable=False),
        sa.Column('next_billing_date', TS, nullable=True),
        sa.Column('trial_end_date', TS, nullable=True),
        sa.Column('base_amount', MONEY, nullable=False),
        sa.Column('discount_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('total_amount', MONEY, nullable=False),
        sa.Column('classes_remaining', sa.Integer, nullable=True),
        sa.Column('auto_renew', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('cancelled_at', TS, nullable=True),
        sa.Column('cancellation_reason', sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_subscriptions_member_id', 'subscriptions', ['member_id'], unique=True)
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    op.create_table(
        'payments',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('subscription_id', UUID, sa.ForeignKey('subscriptions.id', ondelete='SET NULL'), nullable=True),
        sa.Column('member_id', sa.String(64), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='VND'),
        sa.Column('refunded_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('net_amount', MONEY, nullable=True),
        sa.Column(
            'status',
            sa.Enum('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'REFUNDED', 'PARTIALLY_REFUNDED',
                    name='payment_status_enum'),
            nullable=False,
            server_default='PENDING',
        ),
        sa.Column(
            'payment_method',
            sa.Enum('VNPAY', 'MOMO', 'BANK_TRANSFER', 'CASH', 'CARD', name='payment_method_enum'),
            nullable=False,
        ),
        sa.Column(
            'payment_type',
            sa.Enum('SUBSCRIPTION', 'CLASS_BOOKING', 'PERSONAL_TRAINING', 'UPGRADE', 'DOWNGRADE',
                    'RENEWAL', 'SETUP_FEE', name='payment_type_enum'),
            nullable=False,
            server_default='SUBSCRIPTION',
        ),
        sa.Column('retry_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('reference_id', sa.String(255), nullable=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('transaction_id', sa.String(255), nullable=True),
        sa.Column('gateway', sa.String(50), nullable=True),
        sa.Column('metadata', JSONB, nullable=True),
        sa.Column('processed_at', TS, nullable=True),
        sa.Column('failed_at', TS, nullable=True),
        sa.Column('failure_reason', sa.Text, nullable=True),
        sa.Column('reconciled_at', TS, nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])
    op.create_index('ix_payments_member_id', 'payments', ['member_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_transaction_id', 'payments', ['transaction_id'])

    op.create_table(
        'subscription_history',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('subscription_id', UUID, sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('from_plan_id', UUID, sa.ForeignKey('membership_plans.id'), nullable=True),
        sa.Column('to_plan_id', UUID, sa.ForeignKey('membership_plans.id'), nullable=False),
        sa.Column('change_type', sa.Enum('UPGRADE', 'DOWNGRADE', name='plan_change_type_enum'), nullable=False),
        sa.Column('change_reason', sa.Text, nullable=True),
        sa.Column('old_price', MONEY, nullable=False),
        sa.Column('new_price', MONEY, nullable=False),
        sa.Column('price_difference', MONEY, nullable=False),
        sa.Column('payment_id', UUID, sa.ForeignKey('payments.id', ondelete='SET NULL'), nullable=True),
        sa.Column('changed_by', sa.String(64), nullable=True),
        sa.Column('created_at', TS, nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_subscription_history_subscription_id', 'subscription_history', ['subscription_id'])

    op.create_table(
        'refunds',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('payment_id', UUID, sa.ForeignKey('payments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('reason', sa.Text, nullable=False),
        sa.Column(
            'status',
            sa.Enum('PENDING', 'APPROVED', 'PROCESSED', 'FAILED', 'REJECTED', name='refund_status_enum'),
            nullable=False,
            server_default='PENDING',
        ),
        sa.Column('requested_by', sa.String(64), nullable=False),
        sa.Column('approved_by', sa.String(64), nullable=True),
        sa.Column('processed_at', TS, nullable=True),
        sa.Column('failure_reason', sa.Text, nullable=True),
        sa.Column('metadata', JSONB, nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_refunds_payment_id', 'refunds', ['payment_id'])
    op.create_index('ix_refunds_status', 'refunds', ['status'])

    op.create_table(
        'invoices',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('invoice_number', sa.String(50), nullable=False, unique=True),
        sa.Column('member_id', sa.String(64), nullable=False),
        sa.Column('subscription_id', UUID, sa.ForeignKey('subscriptions.id', ondelete='SET NULL'), nullable=True),
        sa.Column('payment_id', UUID, sa.ForeignKey('payments.id', ondelete='SET NULL'), nullable=True, unique=True),
        sa.Column(
            'type',
            sa.Enum('SUBSCRIPTION', 'CLASS', 'PERSONAL_TRAINING', 'OTHER', name='invoice_type_enum'),
            nullable=False,
            server_default='SUBSCRIPTION',
        ),
        sa.Column(
            'status',
            sa.Enum('DRAFT', 'SENT', 'PAID', 'OVERDUE', 'CANCELLED', name='invoice_status_enum'),
            nullable=False,
            server_default='DRAFT',
        ),
        sa.Column('subtotal', MONEY, nullable=False),
        sa.Column('tax_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('discount_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('total', MONEY, nullable=False),
        sa.Column('line_items', JSONB, nullable=True),
        sa.Column('due_date', TS, nullable=True),
        sa.Column('paid_date', TS, nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_invoices_member_id', 'invoices', ['member_id'])
    op.create_index('ix_invoices_subscription_id', 'invoices', ['subscription_id'])

    op.create_table(
        'bank_transfers',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('payment_id', UUID, sa.ForeignKey('payments.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('member_id', sa.String(64), nullable=False),
        sa.Column('bank_code', sa.String(20), nullable=True),
        sa.Column('bank_name', sa.String(100), nullable=True),
        sa.Column('account_number', sa.String(50), nullable=True),
        sa.Column('account_name', sa.String(100), nullable=True),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('transfer_content', sa.String(100), nullable=False),
        sa.Column('qr_code_url', sa.Text, nullable=True),
        sa.Column(
            'status',
            sa.Enum('PENDING', 'CHECKING', 'VERIFIED', 'FAILED', 'EXPIRED', 'CANCELLED',
                    name='bank_transfer_status_enum'),
            nullable=False,
            server_default='PENDING',
        ),
        sa.Column('verified_amount', MONEY, nullable=True),
        sa.Column('bank_transaction_id', sa.String(100), nullable=True),
        sa.Column('sepay_transaction_id', sa.String(100), nullable=True),
        sa.Column('sepay_webhook_data', JSONB, nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('expires_at', TS, nullable=False),
        sa.Column('verified_at', TS, nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_bank_transfers_member_id', 'bank_transfers', ['member_id'])
    op.create_index('ix_bank_transfers_transfer_content', 'bank_transfers', ['transfer_content'])
    op.create_index('ix_bank_transfers_status', 'bank_transfers', ['status'])
    op.create_index('ix_bank_transfers_sepay_transaction_id', 'bank_transfers', ['sepay_transaction_id'])

    op.create_table(
        'discount_codes',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column(
            'type',
            sa.Enum('PERCENTAGE', 'FIXED_AMOUNT', 'FREE_TRIAL', 'FIRST_MONTH_FREE', name='discount_type_enum'),
            nullable=False,
        ),
        sa.Column('value', MONEY, nullable=False),
        sa.Column('max_discount', MONEY, nullable=True),
        sa.Column('usage_limit', sa.Integer, nullable=True),
        sa.Column('usage_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('usage_limit_per_member', sa.Integer, nullable=True),
        sa.Column('valid_from', TS, nullable=False),
        sa.Column('valid_until', TS, nullable=True),
        sa.Column('applicable_plans', JSONB, nullable=True),
        sa.Column('minimum_amount', MONEY, nullable=True),
        sa.Column('first_time_only', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('referrer_member_id', sa.String(64), nullable=True),
        sa.Column('referral_reward', sa.Integer, nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_by', sa.String(64), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_discount_codes_code', 'discount_codes', ['code'], unique=True)

    op.create_table(
        'discount_usages',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('discount_code_id', UUID, sa.ForeignKey('discount_codes.id', ondelete='SET NULL'), nullable=True),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('member_id', sa.String(64), nullable=False),
        sa.Column('subscription_id', UUID, sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('billing_cycle', sa.Integer, nullable=False, server_default='1'),
        sa.Column('discount_amount', MONEY, nullable=False),
        sa.Column('bonus_days', sa.Integer, nullable=False, server_default='0'),
        sa.Column('referrer_member_id', sa.String(64), nullable=True),
        sa.Column('referrer_reward', sa.Integer, nullable=True),
        sa.Column('reward_credited_at', TS, nullable=True),
        sa.Column('redemption_id', sa.String(64), nullable=True),
        sa.Column('redemption_used_at', TS, nullable=True),
        sa.Column('details', JSONB, nullable=True),
        sa.Column('created_at', TS, nullable=False, server_default=sa.text('NOW()')),
        sa.UniqueConstraint('subscription_id', 'billing_cycle', name='uq_discount_usage_subscription_cycle'),
    )
    op.create_index('ix_discount_usages_discount_code_id', 'discount_usages', ['discount_code_id'])
    op.create_index('ix_discount_usages_member_id', 'discount_usages', ['member_id'])


def downgrade() -> None:
    op.drop_table('discount_usages')
    op.drop_table('discount_codes')
    op.drop_table('bank_transfers')
    op.drop_table('invoices')
    op.drop_table('refunds')
    op.drop_table('subscription_history')
    op.drop_table('payments')
    op.drop_table('subscriptions')
    op.drop_table('membership_plans')

    for enum_name in (
        'discount_type_enum',
        'bank_transfer_status_enum',
        'invoice_status_enum',
        'invoice_type_enum',
        'refund_status_enum',
        'plan_change_type_enum',
        'payment_type_enum',
        'payment_method_enum',
        'payment_status_enum',
        'subscription_status_enum',
        'plan_type_enum',
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
