"""Queue processor endpoint, called by an external cron."""

from fastapi import APIRouter, Depends

from postpurchase.api.deps import get_queue_processor, require_cron_secret
from postpurchase.services.queue import QueueProcessor

router = APIRouter(tags=["queue"])


@router.api_route("/process-queue", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def process_queue(processor: QueueProcessor = Depends(get_queue_processor)):
    """Verify up to one batch of due jobs.

    Per-job failures only show up in the counts; the request itself fails
    only when the datastore does.
    """
    results = await processor.process()
    message = "Queue processed" if results.processed else "No pending items"
    return {"ok": True, "message": message, "results": results.to_dict()}
