"""daily revenue reports

Revision ID: 20261017_0002
Revises: 20261017_0001
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = '20261017_0002'
down_revision = '20261017_0001'
branch_labels = None
depends_on = None

MONEY = sa.Numeric(14, 2)
TS = sa.DateTime(timezone=True)
UUID = postgresql.UUID(as_uuid=True)


def upgrade() -> None:
    op.create_table(
        'revenue_reports',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('report_date', sa.Date, nullable=False),
        sa.Column('subscription_revenue', MONEY, nullable=False, server_default='0'),
        sa.Column('class_revenue', MONEY, nullable=False, server_default='0'),
        sa.Column('addon_revenue', MONEY, nullable=False, server_default='0'),
        sa.Column('other_revenue', MONEY, nullable=False, server_default='0'),
        sa.Column('total_revenue', MONEY, nullable=False, server_default='0'),
        sa.Column('new_members', sa.Integer, nullable=False, server_default='0'),
        sa.Column('cancelled_members', sa.Integer, nullable=False, server_default='0'),
        sa.Column('active_members', sa.Integer, nullable=False, server_default='0'),
        sa.Column('successful_payments', sa.Integer, nullable=False, server_default='0'),
        sa.Column('failed_payments', sa.Integer, nullable=False, server_default='0'),
        sa.Column('refunds_issued', sa.Integer, nullable=False, server_default='0'),
        sa.Column('refunds_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('created_at', TS, nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', TS, nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_revenue_reports_report_date', 'revenue_reports', ['report_date'], unique=True)


def downgrade() -> None:
    op.drop_index('ix_revenue_reports_report_date', table_name='revenue_reports')
    op.drop_table('revenue_reports')
