"""initial ledger schema

Revision ID: 2026_10_19_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create subscription, payment, bonus and referral tables."""

    # ========================================================================
    # Create profiles table
    # ========================================================================
    op.create_table(
        'profiles',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('subscription_tier', sa.String(10), nullable=False, server_default='free'),
        sa.Column('subscription_status', sa.String(10), nullable=False, server_default='inactive'),
        sa.Column('subscription_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('subscription_duration_months', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('auto_renew_enabled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('payment_method_id', sa.String(255), nullable=True),
        sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_payment_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('failed_payment_attempts >= 0', name='ck_failed_attempts_non_negative'),
        sa.CheckConstraint('subscription_duration_months IN (1, 3, 6, 12)', name='ck_profile_duration_valid'),
        sa.CheckConstraint("subscription_tier IN ('free', 'basic', 'pro', 'elite')", name='ck_profile_tier'),
        sa.CheckConstraint("subscription_status IN ('active', 'inactive', 'canceled')", name='ck_profile_status'),
    )

    # Indexes for profiles
    op.create_index('idx_profiles_renewal', 'profiles', ['next_billing_date'], postgresql_where=sa.text('auto_renew_enabled IS true'))
    op.create_index('idx_profiles_status_expires', 'profiles', ['subscription_status', 'subscription_expires_at'])

    # ========================================================================
    # Create products table
    # ========================================================================
    op.create_table(
        'products',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('tier_level', sa.Integer(), nullable=True),
        sa.Column('duration_months', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('price', sa.BigInteger(), nullable=False),
        sa.Column('discount_percent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('price > 0', name='ck_product_price_positive'),
        sa.CheckConstraint('discount_percent >= 0 AND discount_percent < 100', name='ck_product_discount_range'),
        sa.CheckConstraint('tier_level IS NULL OR tier_level BETWEEN 1 AND 3', name='ck_product_tier_level'),
    )

    op.create_index('idx_products_tier_duration', 'products', ['tier_level', 'duration_months'])

    # ========================================================================
    # Create payment_transactions table
    # ========================================================================
    op.create_table(
        'payment_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('external_payment_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='RUB'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_method_id', sa.String(255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('metadata_product_type', sa.String(20), nullable=False),
        sa.Column('metadata_payment_kind', sa.String(20), nullable=False, server_default='initial'),
        sa.Column('metadata_original_price', sa.BigInteger(), nullable=False),
        sa.Column('metadata_promo_code', sa.String(64), nullable=True),
        sa.Column('metadata_promo_discount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('metadata_bonus_used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('metadata_save_payment_method', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('metadata_conversion_bonus_days', sa.Integer(), nullable=True),
        sa.Column('metadata_conversion_total_days', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount > 0', name='ck_transaction_amount_positive'),
        sa.CheckConstraint('metadata_bonus_used >= 0', name='ck_transaction_bonus_non_negative'),
        sa.CheckConstraint("status IN ('pending', 'succeeded', 'canceled')", name='ck_transaction_status'),
        sa.UniqueConstraint('external_payment_id', name='uq_transaction_external_payment'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_transactions_product', ondelete='RESTRICT'),
    )

    # Indexes for payment_transactions
    op.create_index('ix_payment_transactions_user_id', 'payment_transactions', ['user_id'])
    op.create_index('idx_transactions_user_created', 'payment_transactions', ['user_id', 'created_at'])
    op.create_index('idx_transactions_pending', 'payment_transactions', ['created_at'], postgresql_where=sa.text("status = 'pending'"))

    # ========================================================================
    # Create bonus_accounts table
    # ========================================================================
    op.create_table(
        'bonus_accounts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('cashback_level', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('total_spent_for_cashback', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_referral_earnings', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('balance >= 0', name='ck_bonus_balance_non_negative'),
        sa.CheckConstraint('cashback_level BETWEEN 1 AND 4', name='ck_cashback_level_range'),
        sa.UniqueConstraint('user_id', name='uq_bonus_account_user'),
    )

    # ========================================================================
    # Create bonus_transactions table
    # ========================================================================
    op.create_table(
        'bonus_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('related_payment_id', UUID(as_uuid=True), nullable=True),
        sa.Column('related_user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount <> 0', name='ck_bonus_amount_non_zero'),
        sa.UniqueConstraint('user_id', 'idempotency_key', name='uq_bonus_idempotency'),
    )

    # Indexes for bonus_transactions
    op.create_index('ix_bonus_transactions_user_id', 'bonus_transactions', ['user_id'])
    op.create_index('idx_bonus_transactions_user_created', 'bonus_transactions', ['user_id', 'created_at'])

    # ========================================================================
    # Create referral_codes and referrals tables
    # ========================================================================
    op.create_table(
        'referral_codes',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('code', sa.String(32), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('user_id', name='uq_referral_code_user'),
        sa.UniqueConstraint('code', name='uq_referral_code_code'),
    )

    op.create_table(
        'referrals',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('referrer_id', UUID(as_uuid=True), nullable=False),
        sa.Column('referred_id', UUID(as_uuid=True), nullable=False),
        sa.Column('status', sa.String(24), nullable=False, server_default='registered'),
        sa.Column('first_purchase_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('referrer_id <> referred_id', name='ck_referral_not_self'),
        sa.UniqueConstraint('referred_id', name='uq_referral_referred'),
    )

    op.create_index('ix_referrals_referrer_id', 'referrals', ['referrer_id'])

    # ========================================================================
    # Create promo_codes table
    # ========================================================================
    op.create_table(
        'promo_codes',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('code', sa.String(32), nullable=False),
        sa.Column('discount_type', sa.String(20), nullable=False),
        sa.Column('discount_value', sa.BigInteger(), nullable=False),
        sa.Column('applicable_products', ARRAY(UUID(as_uuid=True)), nullable=True),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('discount_value > 0', name='ck_promo_value_positive'),
        sa.CheckConstraint('usage_count >= 0', name='ck_promo_usage_non_negative'),
        sa.UniqueConstraint('code', name='uq_promo_code'),
    )

    # ========================================================================
    # Create user_achievements and user_purchases tables
    # ========================================================================
    op.create_table(
        'user_achievements',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('achievement_code', sa.String(128), nullable=False),
        sa.Column('unlocked_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('user_id', 'achievement_code', name='uq_user_achievement'),
    )

    op.create_table(
        'user_purchases',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('transaction_id', UUID(as_uuid=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('transaction_id', name='uq_user_purchase_transaction'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_purchases_product', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['transaction_id'], ['payment_transactions.id'], name='fk_purchases_transaction', ondelete='RESTRICT'),
    )

    op.create_index('ix_user_purchases_user_id', 'user_purchases', ['user_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('user_purchases')
    op.drop_table('user_achievements')
    op.drop_table('promo_codes')
    op.drop_table('referrals')
    op.drop_table('referral_codes')
    op.drop_table('bonus_transactions')
    op.drop_table('bonus_accounts')
    op.drop_table('payment_transactions')
    op.drop_table('products')
    op.drop_table('profiles')
