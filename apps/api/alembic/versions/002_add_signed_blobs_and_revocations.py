"""Add signed leg blobs, credential revocation reasons and the open purchase index.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None

OPEN_PURCHASE_PREDICATE = "kind = 'purchase' AND settlement_state NOT IN ('completed', 'failed')"


def upgrade() -> None:
    # Platform legs are signed once and resubmitted as the same blob
    op.add_column('transaction_legs', sa.Column('signed_blob', sa.Text(), nullable=True))

    op.add_column('credentials', sa.Column('revocation_reason', sa.String(length=255), nullable=True))

    # At most one open purchase per (buyer, asset)
    op.create_index(
        'uq_purchase_batches_open_purchase',
        'purchase_batches',
        ['buyer_address', 'asset_id'],
        unique=True,
        sqlite_where=sa.text(OPEN_PURCHASE_PREDICATE),
        postgresql_where=sa.text(OPEN_PURCHASE_PREDICATE),
    )


def downgrade() -> None:
    op.drop_index('uq_purchase_batches_open_purchase', table_name='purchase_batches')
    op.drop_column('credentials', 'revocation_reason')
    op.drop_column('transaction_legs', 'signed_blob')
