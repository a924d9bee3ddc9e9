"""initial entitlements schema

Revision ID: 2026_10_17_0001
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_17_0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create entitlement accounts, token ledger and processed billing events."""

    # ========================================================================
    # Create entitlement_accounts table
    # ========================================================================
    op.create_table(
        'entitlement_accounts',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('subscription_status', sa.String(20), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('time_zone', sa.String(64), nullable=True),
        sa.Column('ai_meal_plans_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ai_recipe_suggestions_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('barcode_scans_today', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pdf_exports_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('streak_shields_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('daily_reset_day', sa.Date(), nullable=True),
        sa.Column('monthly_period_key', sa.String(32), nullable=True),
        sa.Column('ai_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('export_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('streak_shields', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint("tier IN ('free', 'pro')", name='ck_entitlement_tier'),
        sa.CheckConstraint(
            "subscription_status IS NULL OR subscription_status IN "
            "('active', 'cancelled', 'past_due', 'trialing')",
            name='ck_entitlement_subscription_status',
        ),
        sa.CheckConstraint('version >= 0', name='ck_entitlement_version_non_negative'),
        sa.CheckConstraint('ai_meal_plans_used >= 0', name='ck_ai_meal_plans_used_non_negative'),
        sa.CheckConstraint('ai_recipe_suggestions_used >= 0', name='ck_ai_recipes_used_non_negative'),
        sa.CheckConstraint('barcode_scans_today >= 0', name='ck_barcode_scans_non_negative'),
        sa.CheckConstraint('pdf_exports_used >= 0', name='ck_pdf_exports_used_non_negative'),
        sa.CheckConstraint('streak_shields_used >= 0', name='ck_shields_used_non_negative'),
        sa.CheckConstraint('ai_tokens >= 0', name='ck_ai_tokens_non_negative'),
        sa.CheckConstraint('export_tokens >= 0', name='ck_export_tokens_non_negative'),
        sa.CheckConstraint('streak_shields >= 0', name='ck_streak_shields_non_negative'),
    )

    op.create_index('idx_entitlement_accounts_tier', 'entitlement_accounts', ['tier'])
    op.create_index('idx_entitlement_accounts_updated_at', 'entitlement_accounts', ['updated_at'])

    # ========================================================================
    # Create token_transactions table
    # ========================================================================
    op.create_table(
        'token_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('token_type', sa.String(32), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(32), nullable=False),
        sa.Column('source_reference', sa.String(255), nullable=True),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount <> 0', name='ck_token_transaction_amount_non_zero'),
        sa.CheckConstraint('balance_after >= 0', name='ck_token_transaction_balance_non_negative'),
        sa.CheckConstraint(
            "token_type IN ('ai_tokens', 'export_tokens', 'streak_shields')",
            name='ck_token_transaction_type',
        ),
    )

    op.create_index('ix_token_transactions_user_id', 'token_transactions', ['user_id'])
    op.create_index('idx_token_transactions_created_at', 'token_transactions', ['created_at'])

    # ========================================================================
    # Create processed_billing_events table
    # ========================================================================
    op.create_table(
        'processed_billing_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_index('ix_processed_billing_events_user_id', 'processed_billing_events', ['user_id'])


def downgrade() -> None:
    """Drop entitlement tables."""
    op.drop_index('ix_processed_billing_events_user_id', table_name='processed_billing_events')
    op.drop_table('processed_billing_events')

    op.drop_index('idx_token_transactions_created_at', table_name='token_transactions')
    op.drop_index('ix_token_transactions_user_id', table_name='token_transactions')
    op.drop_table('token_transactions')

    op.drop_index('idx_entitlement_accounts_updated_at', table_name='entitlement_accounts')
    op.drop_index('idx_entitlement_accounts_tier', table_name='entitlement_accounts')
    op.drop_table('entitlement_accounts')
