"""Create marketplace settlement, credential, download and reward tables.

Revision ID: 001
Revises: 
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'accounts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('wallet_address', sa.String(length=64), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('total_sales', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_purchases', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_accounts_id', 'accounts', ['id'])
    op.create_index('ix_accounts_wallet_address', 'accounts', ['wallet_address'], unique=True)

    op.create_table(
        'assets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('asset_id', sa.String(length=64), nullable=False),
        sa.Column('owner_address', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_drops', sa.BigInteger(), nullable=False),
        sa.Column('content_ref', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('total_sales', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_assets_id', 'assets', ['id'])
    op.create_index('ix_assets_asset_id', 'assets', ['asset_id'], unique=True)
    op.create_index('ix_assets_owner_address', 'assets', ['owner_address'])
    op.create_index('ix_assets_status', 'assets', ['status'])

    op.create_table(
        'purchase_batches',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('batch_id', sa.String(length=64), nullable=False),
        sa.Column('kind', sa.String(length=20), nullable=False),
        sa.Column('buyer_address', sa.String(length=64), nullable=False),
        sa.Column('seller_address', sa.String(length=64), nullable=False),
        sa.Column('asset_id', sa.String(length=64), nullable=False),
        sa.Column('total_drops', sa.BigInteger(), nullable=False),
        sa.Column('platform_fee_drops', sa.BigInteger(), nullable=False),
        sa.Column('seller_revenue_drops', sa.BigInteger(), nullable=False),
        sa.Column('settlement_state', sa.String(length=32), nullable=False),
        sa.Column('requires_intervention', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('memo_digest', sa.String(length=64), nullable=True),
        sa.Column('finish_after', sa.BigInteger(), nullable=True),
        sa.Column('cancel_after', sa.BigInteger(), nullable=True),
        sa.Column('escrow_sequence', sa.BigInteger(), nullable=True),
        sa.Column('related_batch_id', sa.String(length=64), nullable=True),
        sa.Column('credential_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            'platform_fee_drops + seller_revenue_drops = total_drops',
            name='ck_purchase_batches_fee_split',
        ),
    )
    op.create_index('ix_purchase_batches_id', 'purchase_batches', ['id'])
    op.create_index('ix_purchase_batches_batch_id', 'purchase_batches', ['batch_id'], unique=True)
    op.create_index('ix_purchase_batches_kind', 'purchase_batches', ['kind'])
    op.create_index('ix_purchase_batches_buyer_address', 'purchase_batches', ['buyer_address'])
    op.create_index('ix_purchase_batches_seller_address', 'purchase_batches', ['seller_address'])
    op.create_index('ix_purchase_batches_asset_id', 'purchase_batches', ['asset_id'])
    op.create_index('ix_purchase_batches_settlement_state', 'purchase_batches', ['settlement_state'])
    op.create_index('ix_purchase_batches_related_batch_id', 'purchase_batches', ['related_batch_id'])
    op.create_index('ix_purchase_batches_created_at', 'purchase_batches', ['created_at'])

    op.create_table(
        'transaction_legs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('leg_id', sa.String(length=64), nullable=False),
        sa.Column('batch_id', sa.String(length=64), sa.ForeignKey('purchase_batches.batch_id'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('from_address', sa.String(length=64), nullable=False),
        sa.Column('to_address', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=16), nullable=False, server_default='XRP'),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('ledger_ref', sa.String(length=128), nullable=True),
        sa.Column('ledger_result', sa.String(length=64), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('outcome_unknown', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('batch_id', 'sequence', name='uq_transaction_legs_batch_sequence'),
        sa.UniqueConstraint('batch_id', 'kind', name='uq_transaction_legs_batch_kind'),
        sa.CheckConstraint('amount >= 0', name='ck_transaction_legs_amount'),
    )
    op.create_index('ix_transaction_legs_id', 'transaction_legs', ['id'])
    op.create_index('ix_transaction_legs_leg_id', 'transaction_legs', ['leg_id'], unique=True)
    op.create_index('ix_transaction_legs_batch_id', 'transaction_legs', ['batch_id'])
    op.create_index('ix_transaction_legs_status', 'transaction_legs', ['status'])
    op.create_index('ix_transaction_legs_ledger_ref', 'transaction_legs', ['ledger_ref'])

    op.create_table(
        'credentials',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('credential_id', sa.String(length=64), nullable=False),
        sa.Column('batch_id', sa.String(length=64), sa.ForeignKey('purchase_batches.batch_id'), nullable=False),
        sa.Column('buyer_address', sa.String(length=64), nullable=False),
        sa.Column('asset_id', sa.String(length=64), nullable=False),
        sa.Column('credential_type', sa.String(length=128), nullable=False),
        sa.Column('ledger_ref', sa.String(length=128), nullable=True),
        sa.Column('issued_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint('batch_id', name='uq_credentials_batch_id'),
    )
    op.create_index('ix_credentials_id', 'credentials', ['id'])
    op.create_index('ix_credentials_credential_id', 'credentials', ['credential_id'], unique=True)
    op.create_index('ix_credentials_buyer_address', 'credentials', ['buyer_address'])
    op.create_index('ix_credentials_asset_id', 'credentials', ['asset_id'])
    op.create_index(
        'uq_credentials_active_buyer_asset',
        'credentials',
        ['buyer_address', 'asset_id'],
        unique=True,
        sqlite_where=sa.text('is_active'),
        postgresql_where=sa.text('is_active'),
    )

    op.create_table(
        'download_tokens',
        sa.Column('token', sa.String(length=64), primary_key=True),
        sa.Column(
            'credential_id',
            sa.String(length=64),
            sa.ForeignKey('credentials.credential_id'),
            nullable=False,
        ),
        sa.Column('buyer_address', sa.String(length=64), nullable=False),
        sa.Column('client_address', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('remaining_attempts', sa.Integer(), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint('remaining_attempts >= 0', name='ck_download_tokens_remaining'),
    )
    op.create_index('ix_download_tokens_credential_id', 'download_tokens', ['credential_id'])
    op.create_index('ix_download_tokens_buyer_address', 'download_tokens', ['buyer_address'])
    op.create_index('ix_download_tokens_expires_at', 'download_tokens', ['expires_at'])
    op.create_index('ix_download_tokens_is_active', 'download_tokens', ['is_active'])
    op.create_index(
        'uq_download_tokens_active_pair',
        'download_tokens',
        ['credential_id', 'buyer_address'],
        unique=True,
        sqlite_where=sa.text('is_active'),
        postgresql_where=sa.text('is_active'),
    )

    op.create_table(
        'reward_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('record_id', sa.String(length=64), nullable=False),
        sa.Column('evaluator_address', sa.String(length=64), nullable=False),
        sa.Column('target_address', sa.String(length=64), nullable=False),
        sa.Column(
            'purchase_batch_id',
            sa.String(length=64),
            sa.ForeignKey('purchase_batches.batch_id'),
            nullable=False,
        ),
        sa.Column('credential_id', sa.String(length=64), nullable=True),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('amount_units', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('balance_before_units', sa.BigInteger(), nullable=False),
        sa.Column('balance_after_units', sa.BigInteger(), nullable=False),
        sa.Column('reward_batch_id', sa.String(length=64), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            'evaluator_address', 'purchase_batch_id', name='uq_reward_records_evaluator_purchase'
        ),
    )
    op.create_index('ix_reward_records_id', 'reward_records', ['id'])
    op.create_index('ix_reward_records_record_id', 'reward_records', ['record_id'], unique=True)
    op.create_index('ix_reward_records_evaluator_address', 'reward_records', ['evaluator_address'])
    op.create_index('ix_reward_records_target_address', 'reward_records', ['target_address'])


def downgrade() -> None:
    op.drop_table('reward_records')
    op.drop_table('download_tokens')
    op.drop_table('credentials')
    op.drop_table('transaction_legs')
    op.drop_table('purchase_batches')
    op.drop_table('assets')
    op.drop_table('accounts')
