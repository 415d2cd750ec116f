"""Add post-purchase queue, receipt and subscription tables

Adds the tables behind server-side receipt verification:
- post_purchase_queue: one pending verification job per transaction
- iap_receipts: audit row for every verification attempt
- subscriptions: one row per renewal lineage (original transaction id)

Revision ID: a1c2e3f4b5d6
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'a1c2e3f4b5d6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """Add post-purchase tables."""

    op.create_table(
        'post_purchase_queue',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.String(255), unique=True, nullable=False),
        sa.Column('payload', JSONType, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('pending', 'processing', 'failed')", name='chk_post_purchase_queue_status'),
    )

    # Index for the processor's due-job scan
    op.create_index('idx_post_purchase_queue_due', 'post_purchase_queue', ['status', 'next_attempt_at'])

    op.create_table(
        'iap_receipts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.String(255), unique=True, nullable=False),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('product_id', sa.String(255), nullable=True),
        sa.Column('raw_receipt', sa.Text(), nullable=True),
        sa.Column('verification_status', sa.String(20), nullable=False),
        sa.Column('verification_response', JSONType, nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('plan', sa.String(20), nullable=False, server_default='free'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('original_transaction_id', sa.String(255), unique=True, nullable=False),
        sa.Column('transaction_id', sa.String(255), nullable=True),
        sa.Column('product_id', sa.String(255), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_index('idx_subscriptions_user_id', 'subscriptions', ['user_id'])


def downgrade() -> None:
    """Remove post-purchase tables."""
    op.drop_index('idx_subscriptions_user_id', 'subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('iap_receipts')
    op.drop_index('idx_post_purchase_queue_due', 'post_purchase_queue')
    op.drop_table('post_purchase_queue')
