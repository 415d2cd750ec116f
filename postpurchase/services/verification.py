"""Receipt verification: ask Apple, then record the receipt and subscription."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any

from ..errors import ValidationError
from .apple_receipts import (
    STATUS_OK,
    AppleReceiptClient,
    billing_period,
    latest_receipt_entry,
    product_id_to_plan,
    status_message,
)
from .receipts import FAILED, VERIFIED, ReceiptStore

logger = logging.getLogger(__name__)


@dataclass
class VerificationOutcome:
    """Result of verifying one receipt.

    ``ok`` is False only when the verification could not be carried out;
    a receipt Apple rejects is ``ok=True, verified=False``.
    """
    ok: bool
    verified: bool
    plan: str | None = None
    error: str | None = None
    apple_response: dict[str, Any] = field(default_factory=dict)
    original_transaction_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "ok": self.ok,
            "verified": self.verified,
            "plan": self.plan,
            "appleResp": self.apple_response,
        }
        if self.error:
            data["error"] = self.error
        if self.verified:
            data["originalTransactionId"] = self.original_transaction_id
            data["currentPeriodStart"] = self.current_period_start.isoformat()
            data["currentPeriodEnd"] = self.current_period_end.isoformat()
        return data


class ReceiptVerifier:
    def __init__(self, apple: AppleReceiptClient, store: ReceiptStore):
        self.apple = apple
        self.store = store

    async def verify(
        self,
        *,
        transaction_id: str | None,
        raw_receipt: Any,
        product_id: str | None,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> VerificationOutcome:
        """Verify a receipt with Apple and reconcile the datastore.

        Raises ValidationError for missing input and UpstreamError when Apple
        cannot be reached; any verdict Apple returns becomes an outcome.
        """
        missing = [
            name
            for name, value in (("transactionId", transaction_id), ("rawReceipt", raw_receipt), ("productId", product_id))
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        now = now or datetime.now(UTC)
        apple_resp = await self.apple.verify(raw_receipt)
        apple_status = apple_resp.get("status")

        def record(verification_status: str, receipt_product_id: str | None = product_id) -> None:
            self.store.record_receipt(
                transaction_id=transaction_id,
                verification_status=verification_status,
                verification_response=apple_resp,
                user_id=user_id,
                product_id=receipt_product_id,
                raw_receipt=raw_receipt,
                now=now,
            )

        if apple_status != STATUS_OK:
            record(FAILED)
            return VerificationOutcome(
                ok=True,
                verified=False,
                plan=product_id_to_plan(product_id),
                error=f"Apple verification failed with status: {apple_status} ({status_message(apple_status)})",
                apple_response={"status": apple_status, "error": status_message(apple_status)},
            )

        entry = latest_receipt_entry(apple_resp)
        if entry is None:
            logger.warning(f"[Verify] No receipt info in Apple response for transaction {transaction_id}")
            record(FAILED)
            return VerificationOutcome(
                ok=True,
                verified=False,
                plan=product_id_to_plan(product_id),
                error="No receipt info in Apple response",
                apple_response={"status": apple_status, "environment": apple_resp.get("environment")},
            )

        verified_product_id = entry.get("product_id") or product_id
        plan = product_id_to_plan(verified_product_id)
        period = billing_period(entry, verified_product_id, now=now)
        original_transaction_id = entry.get("original_transaction_id") or transaction_id

        record(VERIFIED, verified_product_id)
        self.store.upsert_subscription(
            original_transaction_id=original_transaction_id,
            transaction_id=transaction_id,
            user_id=user_id,
            plan=plan,
            status="active",
            product_id=verified_product_id,
            current_period_start=period.start,
            current_period_end=period.end,
            cancel_at_period_end=False,
            now=now,
        )

        logger.info(
            f"[Verify] Transaction {transaction_id} verified: plan={plan}, "
            f"original_transaction_id={original_transaction_id}, period_end={period.end.isoformat()}"
        )
        return VerificationOutcome(
            ok=True,
            verified=True,
            plan=plan,
            apple_response={"status": apple_status, "environment": apple_resp.get("environment")},
            original_transaction_id=original_transaction_id,
            current_period_start=period.start,
            current_period_end=period.end,
        )
