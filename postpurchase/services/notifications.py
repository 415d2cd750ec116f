"""App Store Server Notifications.

Handles both notification formats Apple has shipped:

* v1: a plain JSON body with ``notification_type`` and ``unified_receipt``
* v2: ``{"signedPayload": <JWS>}`` whose ``data`` carries nested JWS
  ``signedTransactionInfo`` / ``signedRenewalInfo``

Notifications never carry our user id, so the user is resolved from the
existing subscription row. Events for a lineage we have never seen are
dropped unless they are the initial purchase; the verification queue will
create the row once the app's receipt is verified.

See: https://developer.apple.com/documentation/appstoreservernotifications
"""

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from .apple_receipts import FREE_PLAN, billing_period, latest_receipt_entry, product_id_to_plan
from .receipts import ReceiptStore

logger = logging.getLogger(__name__)

INITIAL_PURCHASE = "initial_purchase"
RENEWED = "renewed"
REACTIVATED = "reactivated"
RENEWAL_FAILED = "renewal_failed"
CANCELLED = "cancelled"
REFUNDED = "refunded"
REVOKED = "revoked"
EXPIRED = "expired"
TEST = "test"
IGNORED = "ignored"

V1_EVENTS = {
    "INITIAL_BUY": INITIAL_PURCHASE,
    "DID_RENEW": RENEWED,
    "INTERACTIVE_RENEWAL": RENEWED,
    "DID_RECOVER": RENEWED,
    "DID_FAIL_TO_RENEW": RENEWAL_FAILED,
    "DID_CANCEL": CANCELLED,
    "REFUND": REFUNDED,
    "REVOKE": REVOKED,
}

V2_EVENTS = {
    "DID_RENEW": RENEWED,
    "DID_FAIL_TO_RENEW": RENEWAL_FAILED,
    "EXPIRED": EXPIRED,
    "GRACE_PERIOD_EXPIRED": EXPIRED,
    "REFUND": REFUNDED,
    "REVOKE": REVOKED,
    "TEST": TEST,
}

# Subscription status written for each event; None means "upsert as active"
EVENT_STATUS = {
    RENEWAL_FAILED: "past_due",
    CANCELLED: "cancelled",
    REFUNDED: "refunded",
    REVOKED: "revoked",
    EXPIRED: "expired",
}
ACTIVATING_EVENTS = {INITIAL_PURCHASE, RENEWED, REACTIVATED}


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def load_root_certificates(paths: list[str]) -> list[x509.Certificate]:
    """Load trusted root certificates (PEM or DER files), e.g. Apple Root CA - G3."""
    certificates = []
    for path in paths:
        with open(path, "rb") as f:
            data = f.read()
        if b"-----BEGIN CERTIFICATE-----" in data:
            certificates.extend(x509.load_pem_x509_certificates(data))
        else:
            certificates.append(x509.load_der_x509_certificate(data))
    return certificates


def _verify_chain(chain: list[x509.Certificate], roots: list[x509.Certificate]) -> None:
    """Check that each certificate is issued by the next and the chain ends at a trusted root."""
    for cert, issuer in zip(chain, chain[1:]):
        cert.verify_directly_issued_by(issuer)

    root_fingerprints = {root.fingerprint(hashes.SHA256()) for root in roots}
    last = chain[-1]
    if last.fingerprint(hashes.SHA256()) in root_fingerprints:
        return
    for root in roots:
        try:
            last.verify_directly_issued_by(root)
            return
        except (ValueError, TypeError, InvalidSignature):
            continue
    raise ValueError("Certificate chain does not end at a trusted root")


def decode_jws_payload(
    signed_payload: str,
    verify: bool = True,
    root_certificates: list[x509.Certificate] | None = None,
) -> dict:
    """Decode and optionally verify a JWS signed payload from Apple.

    Verification checks the ES256 signature against the leaf certificate of
    the ``x5c`` chain in the header. With ``root_certificates`` the chain
    must also lead to one of them; without, only the leaf signature is
    checked.

    Raises:
        ValueError: malformed JWS, bad signature or untrusted chain
    """
    parts = signed_payload.split(".") if isinstance(signed_payload, str) else []
    if len(parts) != 3:
        raise ValueError("Invalid JWS format")

    header_b64, payload_b64, signature_b64 = parts
    try:
        header = json.loads(_b64url_decode(header_b64))
        payload = json.loads(_b64url_decode(payload_b64))
    except ValueError as e:
        raise ValueError(f"Invalid JWS encoding: {e}") from e
    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise ValueError("Invalid JWS encoding: header and payload must be JSON objects")

    if not verify:
        return payload

    x5c = header.get("x5c")
    if not x5c or not isinstance(x5c, list):
        raise ValueError("No certificate chain in JWS header")

    try:
        chain = [x509.load_der_x509_certificate(base64.b64decode(cert)) for cert in x5c]
        if root_certificates:
            _verify_chain(chain, root_certificates)

        public_key = chain[0].public_key()
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            raise ValueError("Unexpected key type in certificate")

        raw_signature = _b64url_decode(signature_b64)
        # JWS ES256 signatures are raw R||S; cryptography expects DER
        if len(raw_signature) == 64:
            r = int.from_bytes(raw_signature[:32], byteorder="big")
            s = int.from_bytes(raw_signature[32:], byteorder="big")
            der_signature = encode_dss_signature(r, s)
        else:
            der_signature = raw_signature

        public_key.verify(der_signature, f"{header_b64}.{payload_b64}".encode(), ec.ECDSA(hashes.SHA256()))
    except Exception as e:
        logger.error(f"JWS signature verification failed: {e}")
        raise ValueError(f"Invalid JWS signature: {e}") from e

    return payload


@dataclass
class SubscriptionEvent:
    """A notification reduced to what the subscription table needs."""
    event: str
    notification_type: str
    subtype: str | None = None
    transaction_id: str | None = None
    original_transaction_id: str | None = None
    product_id: str | None = None
    purchase_date_ms: Any = None
    expires_date_ms: Any = None
    notification_uuid: str | None = None


def _parse_v1(body: dict) -> SubscriptionEvent:
    notification_type = body.get("notification_type")
    if not isinstance(notification_type, str):
        raise ValueError("Invalid notification_type")
    unified_receipt = body.get("unified_receipt") or {}
    if not isinstance(unified_receipt, dict):
        raise ValueError("Invalid unified_receipt")
    entry = latest_receipt_entry(unified_receipt) or {}

    event = V1_EVENTS.get(notification_type, IGNORED)
    if notification_type == "DID_CHANGE_RENEWAL_STATUS":
        auto_renew = str(body.get("auto_renew_status", "true")).lower()
        event = REACTIVATED if auto_renew == "true" else CANCELLED

    return SubscriptionEvent(
        event=event,
        notification_type=notification_type,
        transaction_id=entry.get("transaction_id"),
        original_transaction_id=entry.get("original_transaction_id") or body.get("original_transaction_id"),
        product_id=entry.get("product_id"),
        purchase_date_ms=entry.get("purchase_date_ms"),
        expires_date_ms=entry.get("expires_date_ms"),
    )


def _v2_event(notification_type: str, subtype: str | None) -> str:
    if notification_type == "SUBSCRIBED":
        return INITIAL_PURCHASE if subtype in (None, "INITIAL_BUY") else REACTIVATED
    if notification_type == "DID_CHANGE_RENEWAL_STATUS":
        return CANCELLED if subtype == "AUTO_RENEW_DISABLED" else REACTIVATED
    return V2_EVENTS.get(notification_type, IGNORED)


def _parse_v2(body: dict, verify: bool, root_certificates: list[x509.Certificate] | None) -> SubscriptionEvent:
    payload = decode_jws_payload(body["signedPayload"], verify=verify, root_certificates=root_certificates)
    notification_type = payload.get("notificationType")
    subtype = payload.get("subtype")
    if not isinstance(notification_type, str) or not isinstance(subtype, (str, type(None))):
        raise ValueError("Invalid notificationType")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError("Invalid notification data")

    transaction_info = {}
    if data.get("signedTransactionInfo"):
        transaction_info = decode_jws_payload(
            data["signedTransactionInfo"], verify=verify, root_certificates=root_certificates
        )
    renewal_info = {}
    if data.get("signedRenewalInfo"):
        renewal_info = decode_jws_payload(
            data["signedRenewalInfo"], verify=verify, root_certificates=root_certificates
        )

    if notification_type == "DID_CHANGE_RENEWAL_STATUS" and subtype is None and "autoRenewStatus" in renewal_info:
        subtype = "AUTO_RENEW_ENABLED" if renewal_info["autoRenewStatus"] == 1 else "AUTO_RENEW_DISABLED"

    return SubscriptionEvent(
        event=_v2_event(notification_type, subtype),
        notification_type=notification_type,
        subtype=subtype,
        transaction_id=transaction_info.get("transactionId"),
        original_transaction_id=(
            transaction_info.get("originalTransactionId") or renewal_info.get("originalTransactionId")
        ),
        product_id=transaction_info.get("productId") or renewal_info.get("productId"),
        purchase_date_ms=transaction_info.get("purchaseDate"),
        expires_date_ms=transaction_info.get("expiresDate"),
        notification_uuid=payload.get("notificationUUID"),
    )


def parse_notification(
    body: Any,
    verify_signature: bool = True,
    root_certificates: list[x509.Certificate] | None = None,
) -> SubscriptionEvent:
    """Normalize a webhook body.

    Raises:
        ValueError: unknown format, malformed fields, malformed JWS, bad
            signature or untrusted certificate chain
    """
    if not isinstance(body, dict):
        raise ValueError("Invalid notification format")
    if body.get("signedPayload"):
        return _parse_v2(body, verify_signature, root_certificates)
    if body.get("notification_type"):
        return _parse_v1(body)
    raise ValueError("Invalid notification format")


class NotificationHandler:
    def __init__(self, store: ReceiptStore):
        self.store = store

    def handle(self, event: SubscriptionEvent, now: datetime | None = None) -> dict:
        """Apply a notification to the subscription table.

        Returns a dict with ``processed`` and either the applied status or
        the reason the event was skipped.
        """
        now = now or datetime.now(UTC)

        if event.event == TEST:
            logger.info("Received TEST notification from Apple")
            return {"processed": True, "type": "TEST"}

        if event.event == IGNORED:
            logger.info(f"Unhandled notification type: {event.notification_type} ({event.subtype})")
            return {"processed": False, "reason": f"Unhandled notification type: {event.notification_type}"}

        original_transaction_id = event.original_transaction_id
        if not original_transaction_id:
            logger.warning(f"No original transaction id in {event.notification_type} notification")
            return {"processed": False, "reason": "No original transaction ID"}

        existing = self.store.get_subscription(original_transaction_id)
        if existing is None and event.event != INITIAL_PURCHASE:
            logger.warning(
                f"Dropping {event.notification_type} for unknown original_transaction_id "
                f"{original_transaction_id}; verification will create the subscription"
            )
            return {"processed": False, "reason": "Subscription not found"}

        user_id = existing["user_id"] if existing else None

        if event.event in ACTIVATING_EVENTS:
            product_id = event.product_id or (existing or {}).get("product_id")
            plan = product_id_to_plan(product_id)
            if plan == FREE_PLAN:
                logger.warning(
                    f"Ignoring {event.notification_type} for unknown product {product_id} "
                    f"(original_transaction_id {original_transaction_id})"
                )
                return {"processed": False, "reason": f"Unknown product: {product_id}"}

            entry = {"purchase_date_ms": event.purchase_date_ms, "expires_date_ms": event.expires_date_ms}
            period = billing_period(entry, product_id, now=now)
            self.store.upsert_subscription(
                original_transaction_id=original_transaction_id,
                transaction_id=event.transaction_id,
                user_id=user_id,
                plan=plan,
                status="active",
                product_id=event.product_id,
                current_period_start=period.start,
                current_period_end=period.end,
                cancel_at_period_end=False,
                now=now,
            )
            new_status = "active"
        else:
            new_status = EVENT_STATUS[event.event]
            fields = {"status": new_status}
            if event.event == CANCELLED:
                fields["cancel_at_period_end"] = True
            self.store.update_subscription(original_transaction_id, now=now, **fields)

        logger.info(
            f"Applied {event.notification_type} to subscription {original_transaction_id} "
            f"(user {user_id}): status={new_status}"
        )
        return {
            "processed": True,
            "notificationType": event.notification_type,
            "event": event.event,
            "userId": user_id,
            "status": new_status,
        }
