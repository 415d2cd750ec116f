"""Tests for App Store Server Notification parsing and handling"""
import base64
import json
from datetime import datetime, timedelta, UTC

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

from postpurchase.services.notifications import (
    CANCELLED,
    INITIAL_PURCHASE,
    REACTIVATED,
    RENEWED,
    NotificationHandler,
    decode_jws_payload,
    load_root_certificates,
    parse_notification,
)

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=UTC)


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def make_certificate(common_name, key, issuer_name=None, issuer_key=None, ca=False):
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(issuer_name or name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW - timedelta(days=1))
        .not_valid_after(NOW + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(issuer_key or key, hashes.SHA256())
    )


def make_signer(key, chain):
    """Sign payloads the way Apple does: ES256 JWS with the cert chain in x5c."""
    x5c = [base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode() for cert in chain]

    def _sign(payload) -> str:
        header = b64url(json.dumps({"alg": "ES256", "x5c": x5c}).encode())
        body = b64url(json.dumps(payload).encode())
        der = key.sign(f"{header}.{body}".encode(), ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        signature = b64url(r.to_bytes(32, "big") + s.to_bytes(32, "big"))
        return f"{header}.{body}.{signature}"

    return _sign


@pytest.fixture(scope="module")
def signing_key():
    key = ec.generate_private_key(ec.SECP256R1())
    return key, make_certificate("Test App Store Signing", key)


@pytest.fixture(scope="module")
def apple_chain():
    """A root CA and a leaf it issued, standing in for Apple's signing chain."""
    root_key = ec.generate_private_key(ec.SECP256R1())
    root = make_certificate("Test Root CA", root_key, ca=True)
    leaf_key = ec.generate_private_key(ec.SECP256R1())
    leaf = make_certificate("Test Leaf", leaf_key, issuer_name=root.subject, issuer_key=root_key)
    return root, leaf, leaf_key


@pytest.fixture
def sign(signing_key):
    key, cert = signing_key
    return make_signer(key, [cert])


@pytest.fixture
def handler(receipt_store):
    return NotificationHandler(receipt_store)


def seed_subscription(receipt_store, original_transaction_id="orig_1", user_id="user-1"):
    receipt_store.upsert_subscription(
        original_transaction_id=original_transaction_id,
        transaction_id="tx1",
        user_id=user_id,
        plan="pro",
        status="active",
        product_id="com.app.pro.monthly",
        current_period_start=NOW - timedelta(days=10),
        current_period_end=NOW + timedelta(days=20),
        cancel_at_period_end=False,
        now=NOW - timedelta(days=10),
    )


def v1_body(notification_type, original_transaction_id="orig_1", expires=None, **extra):
    expires = expires or NOW + timedelta(days=30)
    entry = {
        "transaction_id": "tx2",
        "original_transaction_id": original_transaction_id,
        "product_id": "com.app.pro.monthly",
        "purchase_date_ms": str(int((expires - timedelta(days=30)).timestamp()) * 1000),
        "expires_date_ms": str(int(expires.timestamp()) * 1000),
    }
    return {"notification_type": notification_type, "unified_receipt": {"latest_receipt_info": [entry]}, **extra}


# ==================== JWS ====================

def test_decode_jws_payload_verifies_signature(sign):
    token = sign({"notificationType": "TEST", "notificationUUID": "abc"})
    assert decode_jws_payload(token)["notificationUUID"] == "abc"


def test_decode_jws_payload_rejects_tampered_payload(sign):
    header, _, signature = sign({"notificationType": "TEST"}).split(".")
    forged = b64url(json.dumps({"notificationType": "REFUND"}).encode())

    with pytest.raises(ValueError, match="Invalid JWS signature"):
        decode_jws_payload(f"{header}.{forged}.{signature}")

    # Without verification the forged payload is readable
    assert decode_jws_payload(f"{header}.{forged}.{signature}", verify=False)["notificationType"] == "REFUND"


def test_decode_jws_payload_requires_certificate_chain():
    header = b64url(json.dumps({"alg": "ES256"}).encode())
    body = b64url(b"{}")
    with pytest.raises(ValueError, match="No certificate chain"):
        decode_jws_payload(f"{header}.{body}.sig")


@pytest.mark.parametrize("token", ["", "only.two", "a.b.c.d", None])
def test_decode_jws_payload_malformed(token):
    with pytest.raises(ValueError):
        decode_jws_payload(token)


def test_decode_jws_payload_trusted_chain(apple_chain):
    root, leaf, leaf_key = apple_chain

    token = make_signer(leaf_key, [leaf, root])({"notificationType": "TEST"})
    assert decode_jws_payload(token, root_certificates=[root])["notificationType"] == "TEST"

    # The root may be left out of x5c when the leaf is issued by a trusted root
    token = make_signer(leaf_key, [leaf])({"notificationType": "TEST"})
    assert decode_jws_payload(token, root_certificates=[root])["notificationType"] == "TEST"


def test_decode_jws_payload_rejects_self_signed_chain(apple_chain, sign):
    """A correctly signed payload from a certificate the trusted root never issued"""
    root, _, _ = apple_chain
    token = sign({"notificationType": "REFUND"})

    # Leaf-only verification accepts it
    assert decode_jws_payload(token)["notificationType"] == "REFUND"

    with pytest.raises(ValueError, match="Invalid JWS signature"):
        decode_jws_payload(token, root_certificates=[root])


def test_decode_jws_payload_rejects_forged_intermediate(apple_chain):
    root, leaf, _ = apple_chain
    attacker_key = ec.generate_private_key(ec.SECP256R1())
    # Claims to be issued by the leaf, but the leaf never signed it
    forged = make_certificate("Forged", attacker_key, issuer_name=leaf.subject, issuer_key=attacker_key)
    token = make_signer(attacker_key, [forged, leaf, root])({"notificationType": "REVOKE"})

    with pytest.raises(ValueError, match="Invalid JWS signature"):
        decode_jws_payload(token, root_certificates=[root])


def test_load_root_certificates(tmp_path, apple_chain):
    root, leaf, _ = apple_chain
    pem_path = tmp_path / "roots.pem"
    pem_path.write_bytes(
        root.public_bytes(serialization.Encoding.PEM) + leaf.public_bytes(serialization.Encoding.PEM)
    )
    der_path = tmp_path / "root.cer"
    der_path.write_bytes(root.public_bytes(serialization.Encoding.DER))

    certificates = load_root_certificates([str(pem_path), str(der_path)])

    assert [cert.subject for cert in certificates] == [root.subject, leaf.subject, root.subject]


@pytest.mark.parametrize("payload", [[1, 2], "text", 5])
def test_decode_jws_payload_requires_json_object(sign, payload):
    with pytest.raises(ValueError, match="must be JSON objects"):
        decode_jws_payload(sign(payload))


# ==================== Parsing ====================

def test_parse_v2_notification(sign):
    expires_ms = int((NOW + timedelta(days=30)).timestamp()) * 1000
    body = {"signedPayload": sign({
        "notificationType": "DID_RENEW",
        "notificationUUID": "uuid-1",
        "data": {"signedTransactionInfo": sign({
            "transactionId": "tx2",
            "originalTransactionId": "orig_1",
            "productId": "com.app.elite.monthly",
            "purchaseDate": expires_ms - 30 * 86400 * 1000,
            "expiresDate": expires_ms,
        })},
    })}

    event = parse_notification(body)

    assert event.event == RENEWED
    assert event.original_transaction_id == "orig_1"
    assert event.product_id == "com.app.elite.monthly"
    assert event.notification_uuid == "uuid-1"


@pytest.mark.parametrize("notification_type,subtype,expected", [
    ("SUBSCRIBED", "INITIAL_BUY", INITIAL_PURCHASE),
    ("SUBSCRIBED", "RESUBSCRIBE", REACTIVATED),
    ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_DISABLED", CANCELLED),
    ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_ENABLED", REACTIVATED),
])
def test_parse_v2_subtypes(sign, notification_type, subtype, expected):
    body = {"signedPayload": sign({"notificationType": notification_type, "subtype": subtype, "data": {}})}
    assert parse_notification(body).event == expected


def test_parse_v2_renewal_info(sign):
    body = {"signedPayload": sign({
        "notificationType": "DID_CHANGE_RENEWAL_STATUS",
        "data": {"signedRenewalInfo": sign({
            "originalTransactionId": "orig_1",
            "productId": "com.app.pro.monthly",
            "autoRenewStatus": 0,
        })},
    })}

    event = parse_notification(body)

    assert event.event == CANCELLED
    assert event.original_transaction_id == "orig_1"
    assert event.product_id == "com.app.pro.monthly"


def test_parse_v1_renewal_status_change():
    body = v1_body("DID_CHANGE_RENEWAL_STATUS", auto_renew_status="false")
    assert parse_notification(body).event == CANCELLED


@pytest.mark.parametrize("body", [{}, {"foo": "bar"}, [], "text"])
def test_parse_unknown_format(body):
    with pytest.raises(ValueError, match="Invalid notification format"):
        parse_notification(body)


@pytest.mark.parametrize("body", [
    {"notification_type": "DID_RENEW", "unified_receipt": [1]},
    {"notification_type": "DID_RENEW", "unified_receipt": "receipt"},
    {"notification_type": ["DID_RENEW"]},
])
def test_parse_v1_malformed_fields(body):
    with pytest.raises(ValueError):
        parse_notification(body)


def test_parse_v2_malformed_data(sign):
    with pytest.raises(ValueError, match="Invalid notification data"):
        parse_notification({"signedPayload": sign({"notificationType": "DID_RENEW", "data": ["x"]})})

    with pytest.raises(ValueError, match="Invalid notificationType"):
        parse_notification({"signedPayload": sign({"notificationType": {"type": "DID_RENEW"}})})

    with pytest.raises(ValueError, match="Invalid JWS format"):
        parse_notification({"signedPayload": sign({
            "notificationType": "DID_RENEW",
            "data": {"signedTransactionInfo": 42},
        })})

    with pytest.raises(ValueError, match="must be JSON objects"):
        parse_notification({"signedPayload": sign({
            "notificationType": "DID_RENEW",
            "data": {"signedTransactionInfo": sign(["not", "an", "object"])},
        })})


# ==================== Handling ====================

def test_unknown_lineage_is_dropped(handler, receipt_store):
    """A renewal for a subscription we've never seen creates nothing"""
    result = handler.handle(parse_notification(v1_body("DID_RENEW", "orig_unknown")), now=NOW)

    assert result == {"processed": False, "reason": "Subscription not found"}
    assert receipt_store.get_subscription("orig_unknown") is None


def test_initial_purchase_creates_subscription_without_user(handler, receipt_store):
    result = handler.handle(parse_notification(v1_body("INITIAL_BUY", "orig_new")), now=NOW)

    assert result["processed"] is True
    assert result["status"] == "active"
    sub = receipt_store.get_subscription("orig_new")
    assert sub["user_id"] is None
    assert sub["plan"] == "pro"


def test_renewal_extends_period_and_keeps_user(handler, receipt_store):
    seed_subscription(receipt_store)
    expires = NOW + timedelta(days=50)

    result = handler.handle(parse_notification(v1_body("DID_RENEW", expires=expires)), now=NOW)

    assert result["userId"] == "user-1"
    sub = receipt_store.get_subscription("orig_1")
    assert sub["status"] == "active"
    assert sub["transaction_id"] == "tx2"
    assert sub["current_period_end"] == expires.replace(microsecond=0)


def test_cancel_marks_cancel_at_period_end(handler, receipt_store):
    seed_subscription(receipt_store)

    result = handler.handle(parse_notification(v1_body("DID_CANCEL")), now=NOW)

    assert result["status"] == "cancelled"
    sub = receipt_store.get_subscription("orig_1")
    assert sub["status"] == "cancelled"
    assert sub["cancel_at_period_end"] is True
    assert sub["user_id"] == "user-1"


@pytest.mark.parametrize("notification_type,status", [
    ("REFUND", "refunded"),
    ("REVOKE", "revoked"),
    ("DID_FAIL_TO_RENEW", "past_due"),
])
def test_status_events(handler, receipt_store, notification_type, status):
    seed_subscription(receipt_store)

    handler.handle(parse_notification(v1_body(notification_type)), now=NOW)

    assert receipt_store.get_subscription("orig_1")["status"] == status


def test_v2_expired(handler, receipt_store, sign):
    seed_subscription(receipt_store)
    body = {"signedPayload": sign({
        "notificationType": "EXPIRED",
        "data": {"signedTransactionInfo": sign({"originalTransactionId": "orig_1", "transactionId": "tx1"})},
    })}

    result = handler.handle(parse_notification(body), now=NOW)

    assert result["status"] == "expired"
    assert receipt_store.get_subscription("orig_1")["status"] == "expired"


def test_test_notification(handler, sign):
    event = parse_notification({"signedPayload": sign({"notificationType": "TEST"})})
    assert handler.handle(event) == {"processed": True, "type": "TEST"}


def test_unhandled_type(handler):
    result = handler.handle(parse_notification({"notification_type": "PRICE_INCREASE_CONSENT"}))
    assert result == {"processed": False, "reason": "Unhandled notification type: PRICE_INCREASE_CONSENT"}


def test_missing_original_transaction_id(handler):
    result = handler.handle(parse_notification({"notification_type": "DID_RENEW"}))
    assert result == {"processed": False, "reason": "No original transaction ID"}


def test_unknown_product_is_ignored(handler, receipt_store):
    body = v1_body("INITIAL_BUY", "orig_coins")
    body["unified_receipt"]["latest_receipt_info"][0]["product_id"] = "com.app.coins.pack100"

    result = handler.handle(parse_notification(body), now=NOW)

    assert result == {"processed": False, "reason": "Unknown product: com.app.coins.pack100"}
    assert receipt_store.get_subscription("orig_coins") is None


def test_unknown_product_renewal_leaves_subscription_untouched(handler, receipt_store):
    seed_subscription(receipt_store)
    body = v1_body("DID_RENEW")
    body["unified_receipt"]["latest_receipt_info"][0]["product_id"] = "com.app.unknown"

    result = handler.handle(parse_notification(body), now=NOW)

    assert result["processed"] is False
    sub = receipt_store.get_subscription("orig_1")
    assert sub["plan"] == "pro"
    assert sub["transaction_id"] == "tx1"
