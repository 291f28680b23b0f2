"""Add affiliate ledger tables

Revision ID: affiliate_ledger_001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = 'affiliate_ledger_001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Create enums
    userrole = postgresql.ENUM('admin', 'super_admin', 'user', name='userrole', create_type=False)
    attributionentrytypedb = postgresql.ENUM('original', 'reversal', 'adjustment', name='attributionentrytypedb', create_type=False)
    attributionstatusdb = postgresql.ENUM('pending', 'approved', 'locked', 'reversed', name='attributionstatusdb', create_type=False)
    payoutstatusdb = postgresql.ENUM('requested', 'processing', 'paid', 'rejected', name='payoutstatusdb', create_type=False)
    payoutsourcedb = postgresql.ENUM('user', 'month_close', name='payoutsourcedb', create_type=False)
    for enum_type in (userrole, attributionentrytypedb, attributionstatusdb, payoutstatusdb, payoutsourcedb):
        enum_type.create(op.get_bind(), checkfirst=True)

    # Users are owned by the platform; create the table only on a fresh database
    inspector = sa.inspect(op.get_bind())
    if 'users' not in inspector.get_table_names():
        op.create_table(
            'users',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('email', sa.String(255), nullable=False, unique=True),
            sa.Column('password_hash', sa.String(255), nullable=False, server_default=''),
            sa.Column('name', sa.String(255)),
            sa.Column('role', userrole, server_default='user'),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now())
        )
        op.create_index('ix_users_email', 'users', ['email'])

    # Create affiliates table
    op.create_table(
        'affiliates',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('code', sa.String(50), nullable=False, unique=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('rules', sa.JSON(), nullable=False),
        sa.Column('month_key', sa.String(7)),
        sa.Column('month_sales', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('month_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('month_commission_accrued', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('lifetime_sales', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('lifetime_commission', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now())
    )
    op.create_index('ix_affiliates_user_id', 'affiliates', ['user_id'])
    op.create_index('ix_affiliates_code', 'affiliates', ['code'])
    op.create_index('ix_affiliates_month_key', 'affiliates', ['month_key'])
    op.create_index('ix_affiliates_active_code', 'affiliates', ['active', 'code'])

    # Create affiliate_attributions table
    op.create_table(
        'affiliate_attributions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('affiliate_id', sa.String(36), sa.ForeignKey('affiliates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('order_id', sa.String(64)),
        sa.Column('order_number', sa.String(64)),
        sa.Column('click_id', sa.String(64)),
        sa.Column('entry_type', attributionentrytypedb, nullable=False, server_default='original'),
        sa.Column('reversal_of_id', sa.String(36), sa.ForeignKey('affiliate_attributions.id', ondelete='SET NULL')),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('commission_percent', sa.Numeric(5, 2), nullable=False),
        sa.Column('commission_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', attributionstatusdb, nullable=False, server_default='pending'),
        sa.Column('month_key', sa.String(7), nullable=False),
        sa.Column('reason', sa.Text()),
        sa.Column('note', sa.Text()),
        sa.Column('accrued_at', sa.DateTime()),
        sa.Column('locked_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now())
    )
    op.create_index('ix_affiliate_attributions_affiliate_id', 'affiliate_attributions', ['affiliate_id'])
    op.create_index('ix_affiliate_attributions_order_id', 'affiliate_attributions', ['order_id'])
    op.create_index('ix_affiliate_attributions_order_number', 'affiliate_attributions', ['order_number'])
    op.create_index('ix_affiliate_attributions_click_id', 'affiliate_attributions', ['click_id'])
    op.create_index('ix_affiliate_attributions_status', 'affiliate_attributions', ['status'])
    op.create_index('ix_affiliate_attributions_month_key', 'affiliate_attributions', ['month_key'])
    op.create_index(
        'ix_affiliate_attributions_affiliate_month_status',
        'affiliate_attributions', ['affiliate_id', 'month_key', 'status']
    )
    # One original row per order; reversal rows share the order id
    op.create_index(
        'uq_affiliate_attributions_original_order',
        'affiliate_attributions', ['order_id'],
        unique=True,
        postgresql_where=sa.text("entry_type = 'original'"),
        sqlite_where=sa.text("entry_type = 'original'")
    )

    # Create affiliate_payouts table
    op.create_table(
        'affiliate_payouts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('affiliate_id', sa.String(36), sa.ForeignKey('affiliates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('month_key', sa.String(7), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', payoutstatusdb, nullable=False, server_default='requested'),
        sa.Column('source', payoutsourcedb, nullable=False, server_default='user'),
        sa.Column('account_holder', sa.String(255)),
        sa.Column('bank_account', sa.String(64)),
        sa.Column('ifsc', sa.String(11)),
        sa.Column('bank_name', sa.String(255)),
        sa.Column('city', sa.String(120)),
        sa.Column('upi_id', sa.String(255)),
        sa.Column('aadhaar_masked', sa.String(12)),
        sa.Column('pan', sa.String(10)),
        sa.Column('metadata_json', sa.JSON()),
        sa.Column('txn_id', sa.String(100)),
        sa.Column('method', sa.String(50)),
        sa.Column('notes', sa.Text()),
        sa.Column('rejection_reason', sa.Text()),
        sa.Column('paid_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('affiliate_id', 'month_key', name='uq_affiliate_payouts_affiliate_month')
    )
    op.create_index('ix_affiliate_payouts_affiliate_id', 'affiliate_payouts', ['affiliate_id'])
    op.create_index('ix_affiliate_payouts_user_id', 'affiliate_payouts', ['user_id'])
    op.create_index('ix_affiliate_payouts_month_key', 'affiliate_payouts', ['month_key'])
    op.create_index('ix_affiliate_payouts_status', 'affiliate_payouts', ['status'])

    # Create affiliate_reconciliation_flags table
    op.create_table(
        'affiliate_reconciliation_flags',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('affiliate_id', sa.String(36), sa.ForeignKey('affiliates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('payout_id', sa.String(36), sa.ForeignKey('affiliate_payouts.id', ondelete='SET NULL')),
        sa.Column('attribution_id', sa.String(36), sa.ForeignKey('affiliate_attributions.id', ondelete='SET NULL')),
        sa.Column('order_id', sa.String(64)),
        sa.Column('month_key', sa.String(7), nullable=False),
        sa.Column('commission_delta', sa.Numeric(12, 2), nullable=False),
        sa.Column('reason', sa.Text()),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('resolution_note', sa.Text()),
        sa.Column('resolved_by', sa.String(36), sa.ForeignKey('users.id')),
        sa.Column('resolved_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now())
    )
    op.create_index('ix_affiliate_reconciliation_flags_affiliate_id', 'affiliate_reconciliation_flags', ['affiliate_id'])
    op.create_index('ix_affiliate_reconciliation_flags_order_id', 'affiliate_reconciliation_flags', ['order_id'])
    op.create_index('ix_affiliate_reconciliation_flags_month_key', 'affiliate_reconciliation_flags', ['month_key'])
    op.create_index('ix_affiliate_reconciliation_flags_resolved', 'affiliate_reconciliation_flags', ['resolved'])


def downgrade():
    op.drop_table('affiliate_reconciliation_flags')
    op.drop_table('affiliate_payouts')
    op.drop_table('affiliate_attributions')
    op.drop_table('affiliates')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS payoutsourcedb')
    op.execute('DROP TYPE IF EXISTS payoutstatusdb')
    op.execute('DROP TYPE IF EXISTS attributionstatusdb')
    op.execute('DROP TYPE IF EXISTS attributionentrytypedb')
