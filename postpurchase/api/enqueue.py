"""Post-purchase enqueue endpoint.

Called by the app right after a StoreKit purchase completes. Apple and the
client may both report the same purchase more than once, so enqueueing is
idempotent per transaction id.
"""

import logging
from datetime import datetime, UTC
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from postpurchase.api.deps import get_queue_store
from postpurchase.errors import ValidationError
from postpurchase.services.queue import QueueStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["queue"])


class EnqueueRequest(BaseModel):
    transactionId: str | None = None
    rawReceipt: Any = None
    productId: str | None = None
    userId: str | int | None = None
    email: str | None = None


class EnqueueResponse(BaseModel):
    ok: bool
    message: str
    transactionId: str
    queueId: int | None = None


@router.post("/enqueue", response_model=EnqueueResponse)
def enqueue(body: EnqueueRequest, store: QueueStore = Depends(get_queue_store)):
    """Queue a purchase for server-side receipt verification."""
    if not body.transactionId:
        raise ValidationError("Missing required field: transactionId")

    now = datetime.now(UTC)
    payload = {
        "transactionId": body.transactionId,
        "rawReceipt": body.rawReceipt,
        "productId": body.productId,
        "userId": str(body.userId) if body.userId is not None else None,
        "email": body.email,
        "enqueuedAt": now.isoformat(),
    }

    logger.info(f"[Enqueue] Attempting to enqueue transaction {body.transactionId} (product={body.productId})")
    result = store.enqueue(body.transactionId, payload, now=now)

    if not result.created:
        logger.info(f"[Enqueue] Transaction {body.transactionId} already enqueued (queueId={result.queue_id})")
        return EnqueueResponse(
            ok=True,
            message="Transaction already enqueued",
            transactionId=body.transactionId,
            queueId=result.queue_id,
        )

    logger.info(f"[Enqueue] Enqueued transaction {body.transactionId} (queueId={result.queue_id})")
    return EnqueueResponse(
        ok=True,
        message="Transaction enqueued successfully",
        transactionId=body.transactionId,
        queueId=result.queue_id,
    )
