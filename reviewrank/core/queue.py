"""Storage-backed ingestion queue for per-business review sync jobs.

Job lifecycle::

    pending -> processing -> completed
                          -> pending   (failure below the retry limit, or stuck reset)
                          -> failed    (retry limit reached)

The store performs the pending -> processing transition as a compare-and-swap that
also checks the processing count, so several worker processes can share a queue
without double dispatch or exceeding ``max_connections``.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Collection, Dict, Iterable, List, Optional, Tuple

from reviewrank.core.models import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    IngestionJob,
)
from reviewrank.core.store import ReviewStore, new_id

logger = logging.getLogger(__name__)

MAX_BULK_ENQUEUE = 100
STUCK_ERROR = "Processing timeout - marked as stuck"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestionQueue:
    def __init__(
        self,
        store: ReviewStore,
        *,
        max_connections: int = 3,
        stuck_threshold: timedelta = timedelta(minutes=5),
        max_retries: int = 3,
        default_priority: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self.store = store
        self.max_connections = max_connections
        self.stuck_threshold = stuck_threshold
        self.max_retries = max_retries
        self.default_priority = default_priority
        self.clock = clock

    @classmethod
    def from_settings(cls, store: ReviewStore, settings) -> "IngestionQueue":
        return cls(
            store,
            max_connections=settings.max_connections,
            stuck_threshold=timedelta(seconds=settings.stuck_threshold_seconds),
            max_retries=settings.max_retries,
            default_priority=settings.default_priority,
        )

    def enqueue(self, business_id: str, place_id: str, priority: Optional[int] = None) -> IngestionJob:
        """Queue a sync for ``business_id``; returns the existing job if one is still open."""
        existing = self.store.find_open_job(business_id)
        if existing is not None:
            logger.debug("Business %s already queued as job %s", business_id, existing.id)
            return existing

        job = IngestionJob(
            id=new_id(),
            business_id=business_id,
            place_id=place_id,
            status=JOB_PENDING,
            priority=self.default_priority if priority is None else priority,
            requested_at=self.clock(),
        )
        job = self.store.insert_job(job)
        logger.info("Queued review sync job %s for business %s (priority=%s)", job.id, business_id, job.priority)
        return job

    def bulk_enqueue(self, items: Iterable[Tuple[str, str]], priority: Optional[int] = None) -> Dict[str, Any]:
        items = list(items)
        if len(items) > MAX_BULK_ENQUEUE:
            raise ValueError(f"Batch size {len(items)} exceeds maximum of {MAX_BULK_ENQUEUE}")

        added = 0
        existing = 0
        jobs: List[IngestionJob] = []
        for business_id, place_id in items:
            before = self.store.find_open_job(business_id)
            job = before or self.enqueue(business_id, place_id, priority)
            if before is None:
                added += 1
            else:
                existing += 1
            jobs.append(job)
        return {"total": len(items), "added": added, "existing": existing, "jobs": jobs}

    def available_slots(self) -> int:
        processing = self.store.count_jobs_by_status().get(JOB_PROCESSING, 0)
        return max(0, self.max_connections - processing)

    def next_jobs(self, limit: Optional[int] = None, exclude: Collection[str] = ()) -> List[IngestionJob]:
        """Pending jobs in dispatch order, excluding paused ones, capped at the free slots."""
        slots = self.available_slots()
        if limit is not None:
            slots = min(slots, limit)
        if slots <= 0:
            return []
        pending = [
            job for job in self.store.jobs_by_status(JOB_PENDING) if job.priority >= 0 and job.id not in exclude
        ]
        pending.sort(key=lambda job: (-job.priority, job.requested_at or datetime.min.replace(tzinfo=timezone.utc)))
        return pending[:slots]

    def claim_next(self, limit: Optional[int] = None, exclude: Collection[str] = ()) -> List[IngestionJob]:
        """Move the next jobs to processing. Jobs another worker claimed first are skipped."""
        claimed: List[IngestionJob] = []
        for job in self.next_jobs(limit, exclude):
            started_at = self.clock()
            if self.store.claim_job(job.id, started_at, self.max_connections):
                job.status = JOB_PROCESSING
                job.started_at = started_at
                claimed.append(job)
            else:
                logger.debug("Job %s was not claimable", job.id)
        if claimed:
            logger.info("Claimed %d job(s) for processing", len(claimed))
        return claimed

    def _settle(self, job: IngestionJob, claimed_at: Optional[datetime]) -> bool:
        if self.store.settle_job(job, claimed_at):
            return True
        logger.warning("Job %s was reclaimed elsewhere; dropping stale result", job.id)
        return False

    def complete(self, job: IngestionJob, results: Optional[Dict[str, int]] = None) -> IngestionJob:
        """Mark a claimed job completed. A job reclaimed since is left untouched."""
        claimed_at = job.started_at
        job.status = JOB_COMPLETED
        job.completed_at = self.clock()
        job.results = dict(results or {})
        if not self._settle(job, claimed_at):
            return self.store.get_job(job.id) or job
        logger.info("Job %s completed: %s", job.id, job.results)
        return job

    def fail(self, job: IngestionJob, error: str) -> IngestionJob:
        """Record a failure; requeue below the retry limit, otherwise fail permanently."""
        now = self.clock()
        claimed_at = job.started_at
        job.retry_count += 1
        job.last_error = error
        job.last_error_at = now
        if job.retry_count < self.max_retries:
            job.status = JOB_PENDING
            job.started_at = None
            logger.warning(
                "Job %s failed (attempt %d/%d), requeued: %s", job.id, job.retry_count, self.max_retries, error
            )
        else:
            job.status = JOB_FAILED
            job.completed_at = now
            logger.error("Job %s for business %s failed permanently: %s", job.id, job.business_id, error)
        if not self._settle(job, claimed_at):
            return self.store.get_job(job.id) or job
        return job

    def clear_stuck(self) -> int:
        """Reset jobs processing longer than the stuck threshold back to pending."""
        now = self.clock()
        cleared = 0
        for job in self.store.jobs_by_status(JOB_PROCESSING):
            if job.started_at is None or now - job.started_at <= self.stuck_threshold:
                continue
            claimed_at = job.started_at
            job.status = JOB_PENDING
            job.retry_count += 1
            job.started_at = None
            job.last_error = STUCK_ERROR
            job.last_error_at = now
            if not self.store.settle_job(job, claimed_at):
                continue
            cleared += 1
            logger.warning("Reset stuck job %s for business %s", job.id, job.business_id)
        return cleared

    def pause(self, job_id: str) -> Optional[IngestionJob]:
        job = self.store.get_job(job_id)
        if job is None or job.status != JOB_PENDING:
            return None
        job.priority = -abs(job.priority) if job.priority else -1
        self.store.update_job(job)
        return job

    def resume(self, job_id: str, priority: Optional[int] = None) -> Optional[IngestionJob]:
        job = self.store.get_job(job_id)
        if job is None or job.status != JOB_PENDING:
            return None
        job.priority = self.default_priority if priority is None else max(0, priority)
        self.store.update_job(job)
        return job

    def requeue_failed(self) -> int:
        requeued = 0
        for job in self.store.jobs_by_status(JOB_FAILED):
            if self.store.find_open_job(job.business_id) is not None:
                continue
            job.status = JOB_PENDING
            job.retry_count = 0
            job.completed_at = None
            job.started_at = None
            job.requested_at = self.clock()
            self.store.update_job(job)
            requeued += 1
        if requeued:
            logger.info("Requeued %d failed job(s)", requeued)
        return requeued

    def status(self) -> Dict[str, int]:
        counts = self.store.count_jobs_by_status()
        return {
            "pending": counts.get(JOB_PENDING, 0),
            "processing": counts.get(JOB_PROCESSING, 0),
            "maxConnections": self.max_connections,
            "completed": counts.get(JOB_COMPLETED, 0),
            "failed": counts.get(JOB_FAILED, 0),
        }
