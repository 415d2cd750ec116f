"""Post-purchase verification queue.

One row per purchase transaction waits in ``post_purchase_queue`` until a
processor run verifies it:

    pending -> processing -> deleted            (verified)
                          -> pending            (retry, exponential backoff)
                          -> failed             (MAX_ATTEMPTS reached, kept for audit)

There are no leases; two overlapping runs may verify the same job twice,
which is harmless because every downstream write is an upsert.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Any, Callable

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from ..models import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    as_utc,
    post_purchase_queue,
    upsert_insert,
)
from .verification import ReceiptVerifier

log = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
BASE_DELAY = timedelta(minutes=1)
MAX_DELAY = timedelta(hours=1)
BATCH_SIZE = 10


def utcnow() -> datetime:
    return datetime.now(UTC)


def backoff_delay(attempts: int, base: timedelta = BASE_DELAY, maximum: timedelta = MAX_DELAY) -> timedelta:
    """Delay before the next attempt after ``attempts`` failures."""
    # Cap the exponent so huge attempt counts don't overflow timedelta
    return min(base * (2 ** min(attempts, 32)), maximum)


@dataclass
class QueueJob:
    id: int
    transaction_id: str
    payload: dict[str, Any]
    status: str
    attempts: int
    next_attempt_at: datetime
    error_message: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row) -> "QueueJob":
        return cls(
            id=row.id,
            transaction_id=row.transaction_id,
            payload=row.payload or {},
            status=row.status,
            attempts=row.attempts,
            next_attempt_at=as_utc(row.next_attempt_at),
            error_message=row.error_message,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )


@dataclass
class EnqueueResult:
    queue_id: int | None
    created: bool


class QueueStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def enqueue(self, transaction_id: str, payload: dict[str, Any], now: datetime | None = None) -> EnqueueResult:
        """Insert a job unless one already exists for this transaction."""
        now = now or datetime.now(UTC)
        try:
            with self.engine.begin() as conn:
                stmt = (
                    upsert_insert(conn, post_purchase_queue)
                    .values(
                        transaction_id=transaction_id,
                        payload=payload,
                        status=STATUS_PENDING,
                        attempts=0,
                        next_attempt_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                    .on_conflict_do_nothing(index_elements=["transaction_id"])
                    .returning(post_purchase_queue.c.id)
                )
                row = conn.execute(stmt).fetchone()
                if row is not None:
                    return EnqueueResult(queue_id=row.id, created=True)
        except IntegrityError:
            # Lost a race with a concurrent enqueue of the same transaction
            log.info(f"[Queue] Concurrent enqueue for transaction {transaction_id}")

        existing = self.get(transaction_id)
        return EnqueueResult(queue_id=existing.id if existing else None, created=False)

    def get(self, transaction_id: str) -> QueueJob | None:
        with self.engine.begin() as conn:
            row = conn.execute(
                sa.select(post_purchase_queue).where(post_purchase_queue.c.transaction_id == transaction_id)
            ).fetchone()
        return QueueJob.from_row(row) if row else None

    def fetch_due(self, now: datetime, limit: int = BATCH_SIZE, max_attempts: int = MAX_ATTEMPTS) -> list[QueueJob]:
        """Oldest-first jobs that are not failed and whose retry time has come."""
        with self.engine.begin() as conn:
            rows = conn.execute(
                sa.select(post_purchase_queue)
                .where(
                    post_purchase_queue.c.status.in_([STATUS_PENDING, STATUS_PROCESSING]),
                    post_purchase_queue.c.attempts < max_attempts,
                    post_purchase_queue.c.next_attempt_at <= now,
                )
                .order_by(post_purchase_queue.c.created_at.asc(), post_purchase_queue.c.id.asc())
                .limit(limit)
            ).fetchall()
        return [QueueJob.from_row(row) for row in rows]

    def mark_processing(self, job_id: int, now: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                sa.update(post_purchase_queue)
                .where(post_purchase_queue.c.id == job_id)
                .values(status=STATUS_PROCESSING, updated_at=now)
            )

    def delete(self, job_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(sa.delete(post_purchase_queue).where(post_purchase_queue.c.id == job_id))

    def record_failure(
        self,
        job_id: int,
        *,
        attempts: int,
        status: str,
        next_attempt_at: datetime | None,
        error_message: str,
        now: datetime,
    ) -> None:
        values = {
            "attempts": attempts,
            "status": status,
            "error_message": error_message,
            "updated_at": now,
        }
        if next_attempt_at is not None:
            values["next_attempt_at"] = next_attempt_at

        with self.engine.begin() as conn:
            conn.execute(
                sa.update(post_purchase_queue).where(post_purchase_queue.c.id == job_id).values(**values)
            )


@dataclass
class QueueResults:
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retried": self.retried,
            "failed": self.failed,
        }


class QueueProcessor:
    def __init__(
        self,
        store: QueueStore,
        verifier: ReceiptVerifier,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: timedelta = BASE_DELAY,
        max_delay: timedelta = MAX_DELAY,
        batch_size: int = BATCH_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.verifier = verifier
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.batch_size = batch_size
        self.clock = clock

    async def process(self, now: datetime | None = None) -> QueueResults:
        """Run one batch. Datastore errors propagate; verifier errors never do.

        A fixed ``now`` is used for every job; otherwise each job reads the
        clock when it starts and again when it fails, so its backoff counts
        from its own failure.
        """
        fixed_now = now
        results = QueueResults()

        jobs = self.store.fetch_due(fixed_now or self.clock(), limit=self.batch_size, max_attempts=self.max_attempts)
        if not jobs:
            log.info("[Queue] No pending items")
            return results

        log.info(f"[Queue] Processing {len(jobs)} job(s)")
        for job in jobs:
            results.processed += 1
            self.store.mark_processing(job.id, fixed_now or self.clock())

            error_message = None
            try:
                outcome = await self._verify(job)
                if outcome.ok and outcome.verified:
                    self.store.delete(job.id)
                    results.succeeded += 1
                    log.info(f"[Queue] Transaction {job.transaction_id} verified and removed from queue")
                    continue
                error_message = outcome.error or "Verification failed"
            except Exception as e:
                log.warning(f"[Queue] Verification error for transaction {job.transaction_id}: {e}")
                error_message = str(e) or e.__class__.__name__

            if self._record_failure(job, error_message, fixed_now or self.clock()):
                results.failed += 1
            else:
                results.retried += 1

        log.info(f"[Queue] Batch done: {results.to_dict()}")
        return results

    async def _verify(self, job: QueueJob):
        payload = job.payload
        return await self.verifier.verify(
            transaction_id=payload.get("transactionId") or job.transaction_id,
            raw_receipt=payload.get("rawReceipt"),
            product_id=payload.get("productId"),
            user_id=payload.get("userId"),
        )

    def _record_failure(self, job: QueueJob, error_message: str, now: datetime) -> bool:
        """Reschedule or fail the job. Returns True if it is now terminally failed."""
        attempts = job.attempts + 1

        if attempts >= self.max_attempts:
            self.store.record_failure(
                job.id,
                attempts=attempts,
                status=STATUS_FAILED,
                next_attempt_at=None,
                error_message=error_message,
                now=now,
            )
            log.error(
                f"[Queue] Transaction {job.transaction_id} failed permanently after {attempts} attempts: {error_message}"
            )
            return True

        next_attempt_at = now + backoff_delay(attempts, self.base_delay, self.max_delay)
        self.store.record_failure(
            job.id,
            attempts=attempts,
            status=STATUS_PENDING,
            next_attempt_at=next_attempt_at,
            error_message=error_message,
            now=now,
        )
        log.info(
            f"[Queue] Transaction {job.transaction_id} rescheduled (attempt {attempts}) "
            f"for {next_attempt_at.isoformat()}"
        )
        return False
