from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import Settings
from .queue import QueueProcessor

log = logging.getLogger(__name__)

QUEUE_JOB_ID = "process_post_purchase_queue"


async def run_queue(processor: QueueProcessor):
    """Process one batch of the post-purchase queue."""
    try:
        results = await processor.process()
        if results.processed:
            log.info(f"[Scheduler] Queue run finished: {results.to_dict()}")
    except Exception as e:
        log.error(f"Error processing post-purchase queue: {e}", exc_info=True)


def init_scheduler(processor: QueueProcessor, settings: Settings) -> AsyncIOScheduler:
    """Create a scheduler that drains the queue every QUEUE_INTERVAL_MINUTES."""
    scheduler = AsyncIOScheduler(timezone=settings.TIMEZONE)

    scheduler.add_job(
        run_queue,
        IntervalTrigger(minutes=settings.QUEUE_INTERVAL_MINUTES),
        args=[processor],
        id=QUEUE_JOB_ID,
        name="Process post-purchase verification queue",
        replace_existing=True,
        max_instances=1,
    )

    return scheduler


def start_scheduler(scheduler: AsyncIOScheduler):
    if not scheduler.running:
        scheduler.start()
        log.info("Scheduler started")


def stop_scheduler(scheduler: AsyncIOScheduler | None):
    if scheduler and scheduler.running:
        scheduler.shutdown()
        log.info("Scheduler stopped")
