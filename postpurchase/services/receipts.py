"""Receipt and subscription persistence.

Receipts are keyed by the per-purchase ``transaction_id``; subscriptions by
the ``original_transaction_id`` that stays the same across renewals, so a
renewal always lands on the existing row. Every write is an upsert and is
safe to repeat.
"""

import json
import logging
from datetime import datetime, UTC
from typing import Any

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from ..models import as_utc, iap_receipts, subscriptions, upsert_insert

log = logging.getLogger(__name__)

VERIFIED = "verified"
FAILED = "failed"

SUBSCRIPTION_STATUSES = {"active", "past_due", "cancelled", "refunded", "revoked", "expired"}


class ReceiptStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def record_receipt(
        self,
        *,
        transaction_id: str,
        verification_status: str,
        verification_response: dict | None,
        user_id: str | None = None,
        product_id: str | None = None,
        raw_receipt: Any = None,
        now: datetime | None = None,
    ) -> None:
        """Upsert the audit row for one verification attempt."""
        now = now or datetime.now(UTC)
        if raw_receipt is not None and not isinstance(raw_receipt, str):
            raw_receipt = json.dumps(raw_receipt)

        with self.engine.begin() as conn:
            stmt = upsert_insert(conn, iap_receipts).values(
                transaction_id=transaction_id,
                user_id=user_id,
                product_id=product_id,
                raw_receipt=raw_receipt,
                verification_status=verification_status,
                verification_response=verification_response,
                attempts=1,
                last_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["transaction_id"],
                set_={
                    "user_id": sa.func.coalesce(stmt.excluded.user_id, iap_receipts.c.user_id),
                    "product_id": sa.func.coalesce(stmt.excluded.product_id, iap_receipts.c.product_id),
                    "raw_receipt": sa.func.coalesce(stmt.excluded.raw_receipt, iap_receipts.c.raw_receipt),
                    "verification_status": stmt.excluded.verification_status,
                    "verification_response": stmt.excluded.verification_response,
                    "attempts": iap_receipts.c.attempts + 1,
                    "last_attempt_at": stmt.excluded.last_attempt_at,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            conn.execute(stmt)

    def get_receipt(self, transaction_id: str) -> dict | None:
        with self.engine.begin() as conn:
            row = conn.execute(
                sa.select(iap_receipts).where(iap_receipts.c.transaction_id == transaction_id)
            ).mappings().fetchone()
        return dict(row) if row else None

    def upsert_subscription(
        self,
        *,
        original_transaction_id: str,
        plan: str,
        status: str = "active",
        transaction_id: str | None = None,
        user_id: str | None = None,
        product_id: str | None = None,
        current_period_start: datetime | None = None,
        current_period_end: datetime | None = None,
        cancel_at_period_end: bool = False,
        now: datetime | None = None,
    ) -> None:
        """Create or update the subscription for a renewal lineage.

        A known ``user_id`` is never replaced by NULL, so a webhook that
        created the row without a user can later be claimed by verification.
        """
        if status not in SUBSCRIPTION_STATUSES:
            raise ValueError(f"Unknown subscription status: {status}")
        now = now or datetime.now(UTC)

        with self.engine.begin() as conn:
            stmt = upsert_insert(conn, subscriptions).values(
                original_transaction_id=original_transaction_id,
                transaction_id=transaction_id,
                user_id=user_id,
                plan=plan,
                status=status,
                product_id=product_id,
                current_period_start=current_period_start,
                current_period_end=current_period_end,
                cancel_at_period_end=cancel_at_period_end,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["original_transaction_id"],
                set_={
                    "user_id": sa.func.coalesce(stmt.excluded.user_id, subscriptions.c.user_id),
                    "transaction_id": sa.func.coalesce(stmt.excluded.transaction_id, subscriptions.c.transaction_id),
                    "plan": stmt.excluded.plan,
                    "status": stmt.excluded.status,
                    "product_id": sa.func.coalesce(stmt.excluded.product_id, subscriptions.c.product_id),
                    "current_period_start": stmt.excluded.current_period_start,
                    "current_period_end": stmt.excluded.current_period_end,
                    "cancel_at_period_end": stmt.excluded.cancel_at_period_end,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            conn.execute(stmt)

        log.info(
            f"[Receipts] Subscription upserted: original_transaction_id={original_transaction_id}, "
            f"plan={plan}, status={status}"
        )

    def get_subscription(self, original_transaction_id: str) -> dict | None:
        with self.engine.begin() as conn:
            row = conn.execute(
                sa.select(subscriptions).where(subscriptions.c.original_transaction_id == original_transaction_id)
            ).mappings().fetchone()

        if not row:
            return None
        subscription = dict(row)
        for field in ("current_period_start", "current_period_end", "created_at", "updated_at"):
            subscription[field] = as_utc(subscription[field])
        return subscription

    def update_subscription(self, original_transaction_id: str, now: datetime | None = None, **fields) -> bool:
        """Apply a partial update to an existing subscription. Returns False if none matched."""
        status = fields.get("status")
        if status is not None and status not in SUBSCRIPTION_STATUSES:
            raise ValueError(f"Unknown subscription status: {status}")
        fields["updated_at"] = now or datetime.now(UTC)

        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(subscriptions)
                .where(subscriptions.c.original_transaction_id == original_transaction_id)
                .values(**fields)
            )
        return result.rowcount > 0
