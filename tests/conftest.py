"""Shared fixtures: an in-memory datastore and a stubbed Apple endpoint."""
from datetime import datetime, timedelta, UTC

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from postpurchase.config import Settings
from postpurchase.models import metadata
from postpurchase.services.apple_receipts import AppleReceiptClient
from postpurchase.services.receipts import ReceiptStore
from postpurchase.services.verification import ReceiptVerifier


class AppleStub:
    """Fake verifyReceipt endpoint.

    Queued responses are served in order; once the queue is empty the
    ``default`` response is repeated. A queued exception class is raised as
    a transport error.
    """

    def __init__(self):
        self.queue = []
        self.default = {"status": 21002}
        self.requests = []
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self._handle))

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.queue.pop(0) if self.queue else self.default
        if isinstance(response, type) and issubclass(response, httpx.HTTPError):
            raise response("Connection refused", request=request)
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    @property
    def urls(self) -> list[str]:
        return [str(request.url) for request in self.requests]


def to_ms(value: datetime) -> int:
    return int(value.timestamp()) * 1000 + value.microsecond // 1000


def receipt_response(
    status=0,
    product_id="com.app.pro.monthly",
    transaction_id="tx1",
    original_transaction_id="orig_tx1",
    purchase_date=None,
    expires_date=None,
    environment="Production",
    entries=None,
):
    """Build a verifyReceipt response body with one renewal entry."""
    purchase_date = purchase_date or datetime.now(UTC)
    expires_date = expires_date or purchase_date + timedelta(days=30)
    if entries is None:
        entries = [
            {
                "product_id": product_id,
                "transaction_id": transaction_id,
                "original_transaction_id": original_transaction_id,
                "purchase_date_ms": str(to_ms(purchase_date)),
                "expires_date_ms": str(to_ms(expires_date)),
            }
        ]
    return {"status": status, "environment": environment, "latest_receipt_info": entries}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def apple():
    return AppleStub()


@pytest.fixture
def make_receipt_response():
    return receipt_response


@pytest.fixture
def receipt_store(engine):
    return ReceiptStore(engine)


@pytest.fixture
def verifier(apple, receipt_store):
    client = AppleReceiptClient(apple.client, shared_secret="test-shared-secret")
    return ReceiptVerifier(client, receipt_store)


@pytest.fixture
def settings():
    settings = Settings()
    settings.POSTGRES_URI = "sqlite://"
    settings.APPLE_SHARED_SECRET = "test-shared-secret"
    settings.APPLE_WEBHOOK_VERIFY_SIGNATURE = False
    settings.APPLE_ROOT_CERT_PATHS = []
    settings.CRON_SECRET = ""
    settings.QUEUE_SCHEDULER_ENABLED = False
    settings.CORS_ALLOW_ORIGINS = "*"
    return settings
