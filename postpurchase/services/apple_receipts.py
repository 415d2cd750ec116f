"""Apple App Store receipt validation (legacy ``verifyReceipt`` endpoint).

Receipts are always sent to production first. Apple answers status 21007
when a sandbox receipt reaches production (TestFlight builds, App Review),
in which case the same receipt is sent once more to the sandbox endpoint.

Documentation:
https://developer.apple.com/documentation/appstorereceipts/verifyreceipt
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Any

import httpx

from ..errors import UpstreamError

logger = logging.getLogger(__name__)

STATUS_OK = 0
STATUS_SANDBOX_RECEIPT_IN_PRODUCTION = 21007

STATUS_MESSAGES = {
    0: "Valid receipt",
    21000: "The App Store could not read the JSON object you provided",
    21002: "The receipt data property was malformed or missing",
    21003: "The receipt could not be authenticated",
    21004: "The shared secret you provided does not match the shared secret on file",
    21005: "The receipt server is not currently available",
    21006: "This receipt is valid but the subscription has expired",
    21007: "This receipt is from the test environment, but it was sent to the production environment for verification",
    21008: "This receipt is from the production environment, but it was sent to the test environment for verification",
    21010: "This receipt could not be authorized",
}

# Product ids that predate the current naming scheme
LEGACY_PRODUCT_PLANS = {
    "com.myora.creator.monthly": "essentials",
    "com.myora.pro.monthly": "pro",
    "com.myora.premium.monthly": "elite",
}

FREE_PLAN = "free"

MONTHLY_PERIOD = timedelta(days=30)
ANNUAL_PERIOD = timedelta(days=365)
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def status_message(status: int | None) -> str:
    return STATUS_MESSAGES.get(status, f"Unknown error (status code: {status})")


def product_id_to_plan(product_id: str | None) -> str:
    """Map an App Store product id to a plan name."""
    if not isinstance(product_id, str) or not product_id:
        return FREE_PLAN
    if product_id in LEGACY_PRODUCT_PLANS:
        return LEGACY_PRODUCT_PLANS[product_id]

    lowered = product_id.lower()
    for plan in ("essentials", "pro", "elite"):
        if plan in lowered:
            return plan
    return FREE_PLAN


def is_annual_product(product_id: str | None) -> bool:
    lowered = (product_id or "").lower()
    return "annual" in lowered or "yearly" in lowered


def ms_to_datetime(value: Any) -> datetime | None:
    """Convert Apple's millisecond timestamps (sent as strings) to UTC datetimes."""
    if value in (None, ""):
        return None
    try:
        return EPOCH + timedelta(milliseconds=int(value))
    except (TypeError, ValueError, OverflowError):
        return None


def latest_receipt_entry(apple_response: dict) -> dict | None:
    """Pick the most recent transaction from a verifyReceipt response.

    A receipt bundles the whole renewal history, so the entry with the latest
    expiry (or purchase time for non-renewing products) wins.
    """
    if not isinstance(apple_response, dict):
        return None
    entries = apple_response.get("latest_receipt_info")
    if not entries:
        receipt = apple_response.get("receipt")
        entries = receipt.get("in_app") if isinstance(receipt, dict) else None
    if not isinstance(entries, list):
        return None
    entries = [entry for entry in entries if isinstance(entry, dict)]
    if not entries:
        return None

    def sort_key(entry: dict) -> int:
        for field in ("expires_date_ms", "purchase_date_ms", "original_purchase_date_ms"):
            try:
                return int(entry[field])
            except (KeyError, TypeError, ValueError):
                continue
        return 0

    return max(entries, key=sort_key)


@dataclass
class BillingPeriod:
    start: datetime
    end: datetime


def billing_period(entry: dict, product_id: str | None = None, now: datetime | None = None) -> BillingPeriod:
    """Compute the current period from a receipt entry.

    Missing expiry (non-renewing products) falls back to one month, or one
    year for annual products.
    """
    now = now or datetime.now(UTC)
    start = (
        ms_to_datetime(entry.get("purchase_date_ms"))
        or ms_to_datetime(entry.get("original_purchase_date_ms"))
        or now
    )
    end = ms_to_datetime(entry.get("expires_date_ms"))
    if end is None:
        end = start + (ANNUAL_PERIOD if is_annual_product(product_id) else MONTHLY_PERIOD)
    return BillingPeriod(start=start, end=end)


class AppleReceiptClient:
    """Client for Apple's verifyReceipt endpoints."""

    PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
    SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

    def __init__(self, http: httpx.AsyncClient, shared_secret: str = "", timeout: float = 30.0):
        self.http = http
        self.shared_secret = shared_secret
        self.timeout = timeout

    def _get_url(self, environment: str = "production") -> str:
        return self.SANDBOX_URL if environment == "sandbox" else self.PRODUCTION_URL

    async def _post(self, raw_receipt: str, environment: str) -> dict:
        body = {
            "receipt-data": raw_receipt,
            "exclude-old-transactions": False,
        }
        if self.shared_secret:
            body["password"] = self.shared_secret

        try:
            response = await self.http.post(self._get_url(environment), json=body, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Apple {environment} verifyReceipt request failed: {e}") from e

        if response.status_code != 200:
            raise UpstreamError(
                f"Apple {environment} verifyReceipt returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(f"Failed to parse Apple response: {e}") from e

        if not isinstance(data, dict) or "status" not in data:
            raise UpstreamError("Apple response has no status field")
        return data

    async def verify(self, raw_receipt: str) -> dict:
        """Verify a receipt, falling back to the sandbox on status 21007.

        Returns Apple's decoded response. The caller decides what a non-zero
        status means; only transport and parse failures raise.
        """
        data = await self._post(raw_receipt, "production")

        if data.get("status") == STATUS_SANDBOX_RECEIPT_IN_PRODUCTION:
            logger.info("[AppleReceipts] Sandbox receipt sent to production, retrying with sandbox endpoint")
            data = await self._post(raw_receipt, "sandbox")
            data.setdefault("environment", "Sandbox")

        if data.get("status") != STATUS_OK:
            logger.warning(
                f"[AppleReceipts] Receipt validation failed: status={data.get('status')} "
                f"({status_message(data.get('status'))})"
            )
        return data
