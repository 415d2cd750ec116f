import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from postpurchase.api.deps import get_receipt_verifier
from postpurchase.services.verification import ReceiptVerifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["receipts"])


class VerifyReceiptRequest(BaseModel):
    transactionId: str | None = None
    rawReceipt: Any = None
    productId: str | None = None
    userId: str | int | None = None


@router.post("/verify-receipt")
async def verify_receipt(body: VerifyReceiptRequest, verifier: ReceiptVerifier = Depends(get_receipt_verifier)):
    """Verify one receipt with Apple (production, then sandbox on 21007).

    A receipt Apple rejects still returns 200 with ``verified: false``.
    """
    outcome = await verifier.verify(
        transaction_id=body.transactionId,
        raw_receipt=body.rawReceipt,
        product_id=body.productId,
        user_id=str(body.userId) if body.userId is not None else None,
    )
    return outcome.to_dict()
