"""FastAPI dependencies.

Services are built once in ``create_app`` and kept on ``app.state``; these
providers hand them to the route handlers.
"""
import secrets

from cryptography import x509
from fastapi import Depends, Request

from postpurchase.config import Settings
from postpurchase.errors import AuthError
from postpurchase.services.notifications import NotificationHandler
from postpurchase.services.queue import QueueProcessor, QueueStore
from postpurchase.services.verification import ReceiptVerifier


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_queue_store(request: Request) -> QueueStore:
    return request.app.state.queue_store


def get_queue_processor(request: Request) -> QueueProcessor:
    return request.app.state.queue_processor


def get_receipt_verifier(request: Request) -> ReceiptVerifier:
    return request.app.state.receipt_verifier


def get_notification_handler(request: Request) -> NotificationHandler:
    return request.app.state.notification_handler


def get_apple_root_certificates(request: Request) -> list[x509.Certificate]:
    return request.app.state.apple_root_certificates


def _bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization")
    if not auth:
        return None
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return auth.strip()


def require_cron_secret(request: Request, settings: Settings = Depends(get_settings)) -> None:
    """Check the shared secret sent by the scheduler.

    Accepted as ``Authorization: Bearer <secret>`` or the ``secret`` /
    ``cron_secret`` query parameters. With no CRON_SECRET configured every
    caller is let through.
    """
    expected = settings.CRON_SECRET
    if not expected:
        return

    candidates = (
        _bearer_token(request),
        request.query_params.get("secret"),
        request.query_params.get("cron_secret"),
    )
    for candidate in candidates:
        if candidate and secrets.compare_digest(candidate.encode(), expected.encode()):
            return

    raise AuthError("Unauthorized")
