"""Apple App Store Server Notifications webhook."""

import logging

from cryptography import x509
from fastapi import APIRouter, Depends, Request

from postpurchase.api.deps import get_apple_root_certificates, get_notification_handler, get_settings
from postpurchase.config import Settings
from postpurchase.errors import ValidationError
from postpurchase.services.notifications import NotificationHandler, parse_notification

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.get("/apple-webhook")
async def apple_webhook_info():
    """Reachability check; Apple only sends POSTs."""
    return {
        "status": "ok",
        "message": "Apple App Store Server Notifications webhook is active",
        "method": "POST requests only for notifications",
    }


@router.post("/apple-webhook")
async def apple_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    handler: NotificationHandler = Depends(get_notification_handler),
    root_certificates: list[x509.Certificate] = Depends(get_apple_root_certificates),
):
    """Receive a v1 or v2 App Store server notification."""
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body")

    try:
        event = parse_notification(
            body,
            verify_signature=settings.APPLE_WEBHOOK_VERIFY_SIGNATURE,
            root_certificates=root_certificates,
        )
    except ValueError as e:
        logger.warning(f"Rejected Apple notification: {e}")
        raise ValidationError(str(e))

    logger.info(
        f"Apple webhook: type={event.notification_type}, subtype={event.subtype}, "
        f"uuid={event.notification_uuid}, original_transaction_id={event.original_transaction_id}"
    )

    try:
        result = handler.handle(event)
    except Exception as e:
        logger.exception(f"Apple webhook error: {e}")
        # Answer 200 so Apple does not retry forever; the error is in the logs
        return {"ok": False, "received": True, "error": str(e)}

    return {"ok": True, "received": True, **result}
