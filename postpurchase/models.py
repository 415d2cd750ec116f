"""Table definitions for the post-purchase queue, receipts and subscriptions."""
from __future__ import annotations

from datetime import datetime, UTC

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite

metadata = sa.MetaData()

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

# Queue job states. A deleted row means the job succeeded.
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_FAILED = "failed"

post_purchase_queue = sa.Table(
    "post_purchase_queue",
    metadata,
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("transaction_id", sa.String(255), nullable=False, unique=True),
    sa.Column("payload", JSONType, nullable=False),
    sa.Column("status", sa.String(20), nullable=False, server_default=STATUS_PENDING),
    sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.Index("idx_post_purchase_queue_due", "status", "next_attempt_at"),
)

iap_receipts = sa.Table(
    "iap_receipts",
    metadata,
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("transaction_id", sa.String(255), nullable=False, unique=True),
    sa.Column("user_id", sa.String(255), nullable=True),
    sa.Column("product_id", sa.String(255), nullable=True),
    sa.Column("raw_receipt", sa.Text(), nullable=True),
    sa.Column("verification_status", sa.String(20), nullable=False),
    sa.Column("verification_response", JSONType, nullable=True),
    sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
    sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
)

subscriptions = sa.Table(
    "subscriptions",
    metadata,
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("user_id", sa.String(255), nullable=True),
    sa.Column("plan", sa.String(20), nullable=False, server_default="free"),
    sa.Column("status", sa.String(20), nullable=False, server_default="active"),
    sa.Column("original_transaction_id", sa.String(255), nullable=False, unique=True),
    sa.Column("transaction_id", sa.String(255), nullable=True),
    sa.Column("product_id", sa.String(255), nullable=True),
    sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
    sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
    sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.Index("idx_subscriptions_user_id", "user_id"),
)


def upsert_insert(conn: sa.Connection, table: sa.Table):
    """Return a dialect-specific INSERT that supports ON CONFLICT clauses."""
    if conn.dialect.name == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)
