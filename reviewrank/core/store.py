"""Storage contract for the pipeline plus a thread-safe in-memory implementation."""

from __future__ import annotations

import abc
import copy
import logging
import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from reviewrank.core.errors import PersistenceFailure
from reviewrank.core.models import (
    JOB_PENDING,
    JOB_PROCESSING,
    OPEN_JOB_STATUSES,
    Business,
    IngestionJob,
    RankingRecord,
    Review,
)
from reviewrank.matching.text import name_block_keys, normalize_name, normalize_phone

logger = logging.getLogger(__name__)

ReviewKey = Tuple[str, str]


def new_id() -> str:
    return uuid.uuid4().hex


def average_rating(ratings: Sequence[int]) -> float:
    if not ratings:
        return 0.0
    return round(sum(ratings) / len(ratings), 1)


class ReviewStore(abc.ABC):
    """Everything the pipeline persists. Implementations must make ``claim_job`` atomic."""

    # businesses
    @abc.abstractmethod
    def add_business(self, business: Business) -> Business: ...

    @abc.abstractmethod
    def get_business(self, business_id: str) -> Optional[Business]: ...

    @abc.abstractmethod
    def businesses_for_hints(
        self,
        place_ids: Iterable[str] = (),
        business_ids: Iterable[str] = (),
        phones: Iterable[str] = (),
        name_keys: Iterable[str] = (),
    ) -> List[Business]: ...

    @abc.abstractmethod
    def mark_synced(self, business_id: str, synced_at: datetime) -> None: ...

    @abc.abstractmethod
    def businesses_due_for_sync(self, synced_before: datetime, limit: int) -> List[Business]: ...

    @abc.abstractmethod
    def unranked_businesses(self, limit: int = 1000) -> List[Business]: ...

    # reviews
    @abc.abstractmethod
    def existing_review_keys(self, keys: Iterable[ReviewKey]) -> Set[ReviewKey]: ...

    @abc.abstractmethod
    def reviews_for_business(self, business_id: str) -> List[Review]: ...

    @abc.abstractmethod
    def insert_review(self, review: Review) -> bool:
        """Insert ``review``; return ``False`` when its (source, source id) already exists."""

    @abc.abstractmethod
    def flag_reviews(self, review_ids: Iterable[str], keyword: str) -> int: ...

    @abc.abstractmethod
    def recount_business(self, business_id: str) -> Tuple[int, float]:
        """Recompute review count and one-decimal average from displayed reviews."""

    @abc.abstractmethod
    def businesses_with_reviews_since(self, since: datetime) -> List[str]: ...

    @contextmanager
    def business_lock(self, business_id: str) -> Iterator[None]:
        """Serialise imports for one business. Default implementation does not lock."""
        yield

    # ingestion jobs
    @abc.abstractmethod
    def find_open_job(self, business_id: str) -> Optional[IngestionJob]: ...

    @abc.abstractmethod
    def insert_job(self, job: IngestionJob) -> IngestionJob: ...

    @abc.abstractmethod
    def get_job(self, job_id: str) -> Optional[IngestionJob]: ...

    @abc.abstractmethod
    def jobs_by_status(self, status: str, limit: Optional[int] = None) -> List[IngestionJob]: ...

    @abc.abstractmethod
    def count_jobs_by_status(self) -> Dict[str, int]: ...

    @abc.abstractmethod
    def claim_job(self, job_id: str, started_at: datetime, max_processing: int) -> bool:
        """Atomically move a pending job to processing if a slot is free."""

    @abc.abstractmethod
    def update_job(self, job: IngestionJob) -> None: ...

    @abc.abstractmethod
    def settle_job(self, job: IngestionJob, claimed_at: Optional[datetime]) -> bool:
        """Write back a job only if it is still the processing run claimed at ``claimed_at``."""

    # rankings
    @abc.abstractmethod
    def get_ranking(self, business_id: str) -> Optional[RankingRecord]: ...

    @abc.abstractmethod
    def save_ranking(self, record: RankingRecord) -> None: ...

    @abc.abstractmethod
    def rankings_for_cohort(self, category: str, city: str) -> List[RankingRecord]: ...

    @abc.abstractmethod
    def list_rankings(
        self, category: Optional[str] = None, city: Optional[str] = None
    ) -> List[RankingRecord]: ...


class MemoryStore(ReviewStore):
    """In-process store guarded by one re-entrant lock. Returned objects are copies."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._business_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._businesses: Dict[str, Business] = {}
        self._place_index: Dict[str, str] = {}
        self._reviews: Dict[str, Review] = {}
        self._review_keys: Dict[ReviewKey, str] = {}
        self._reviews_by_business: Dict[str, List[str]] = defaultdict(list)
        self._jobs: Dict[str, IngestionJob] = {}
        self._rankings: Dict[str, RankingRecord] = {}

    # businesses

    def add_business(self, business: Business) -> Business:
        with self._lock:
            if business.place_id and self._place_index.get(business.place_id, business.id) != business.id:
                raise PersistenceFailure(f"place_id {business.place_id} already belongs to another business")
            stored = copy.deepcopy(business)
            if not stored.normalized_name:
                stored.normalized_name = normalize_name(stored.name)
            self._businesses[stored.id] = stored
            if stored.place_id:
                self._place_index[stored.place_id] = stored.id
            return copy.deepcopy(stored)

    def get_business(self, business_id: str) -> Optional[Business]:
        with self._lock:
            business = self._businesses.get(business_id)
            return copy.deepcopy(business) if business else None

    def businesses_for_hints(self, place_ids=(), business_ids=(), phones=(), name_keys=()) -> List[Business]:
        place_ids, business_ids = set(place_ids), set(business_ids)
        phones, name_keys = set(phones), set(name_keys)
        with self._lock:
            found = []
            for business in self._businesses.values():
                if not business.active:
                    continue
                if (
                    (business.place_id and business.place_id in place_ids)
                    or business.id in business_ids
                    or (phones and normalize_phone(business.phone) in phones)
                    or (name_keys and name_block_keys(business.normalized_name) & name_keys)
                ):
                    found.append(copy.deepcopy(business))
            return found

    def mark_synced(self, business_id: str, synced_at: datetime) -> None:
        with self._lock:
            if business_id in self._businesses:
                self._businesses[business_id].last_synced_at = synced_at

    def businesses_due_for_sync(self, synced_before: datetime, limit: int) -> List[Business]:
        with self._lock:
            due = [
                b
                for b in self._businesses.values()
                if b.active and b.place_id and (b.last_synced_at is None or b.last_synced_at < synced_before)
            ]
            due.sort(key=lambda b: (b.last_synced_at is not None, b.last_synced_at or datetime.min))
            return [copy.deepcopy(b) for b in due[:limit]]

    def unranked_businesses(self, limit: int = 1000) -> List[Business]:
        with self._lock:
            missing = [b for b in self._businesses.values() if b.active and b.id not in self._rankings]
            return [copy.deepcopy(b) for b in missing[:limit]]

    # reviews

    def existing_review_keys(self, keys: Iterable[ReviewKey]) -> Set[ReviewKey]:
        with self._lock:
            return {key for key in keys if key in self._review_keys}

    def reviews_for_business(self, business_id: str) -> List[Review]:
        with self._lock:
            return [copy.deepcopy(self._reviews[rid]) for rid in self._reviews_by_business.get(business_id, [])]

    def insert_review(self, review: Review) -> bool:
        key = (review.source, review.source_review_id)
        with self._lock:
            if key in self._review_keys:
                return False
            if review.business_id not in self._businesses:
                raise PersistenceFailure(f"unknown business {review.business_id}")
            stored = copy.deepcopy(review)
            if not stored.id:
                stored.id = new_id()
            self._reviews[stored.id] = stored
            self._review_keys[key] = stored.id
            self._reviews_by_business[stored.business_id].append(stored.id)
            return True

    def flag_reviews(self, review_ids: Iterable[str], keyword: str) -> int:
        flagged = 0
        with self._lock:
            for review_id in review_ids:
                review = self._reviews.get(review_id)
                if review is None:
                    continue
                review.flagged = True
                review.displayed = False
                if keyword not in review.keywords:
                    review.keywords.append(keyword)
                flagged += 1
        return flagged

    def recount_business(self, business_id: str) -> Tuple[int, float]:
        with self._lock:
            ratings = [
                self._reviews[rid].rating
                for rid in self._reviews_by_business.get(business_id, [])
                if self._reviews[rid].displayed
            ]
            count, rating = len(ratings), average_rating(ratings)
            business = self._businesses.get(business_id)
            if business is not None:
                business.review_count = count
                business.rating = rating
            return count, rating

    def businesses_with_reviews_since(self, since: datetime) -> List[str]:
        with self._lock:
            ids = {
                r.business_id
                for r in self._reviews.values()
                if (r.imported_at or r.created_at) >= since
            }
            return sorted(ids)

    @contextmanager
    def business_lock(self, business_id: str) -> Iterator[None]:
        with self._lock:
            lock = self._business_locks[business_id]
        with lock:
            yield

    # ingestion jobs

    def find_open_job(self, business_id: str) -> Optional[IngestionJob]:
        with self._lock:
            for job in self._jobs.values():
                if job.business_id == business_id and job.status in OPEN_JOB_STATUSES:
                    return copy.deepcopy(job)
            return None

    def insert_job(self, job: IngestionJob) -> IngestionJob:
        with self._lock:
            stored = copy.deepcopy(job)
            if not stored.id:
                stored.id = new_id()
            self._jobs[stored.id] = stored
            return copy.deepcopy(stored)

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def jobs_by_status(self, status: str, limit: Optional[int] = None) -> List[IngestionJob]:
        with self._lock:
            jobs = [copy.deepcopy(job) for job in self._jobs.values() if job.status == status]
            return jobs if limit is None else jobs[:limit]

    def count_jobs_by_status(self) -> Dict[str, int]:
        with self._lock:
            counts: Dict[str, int] = defaultdict(int)
            for job in self._jobs.values():
                counts[job.status] += 1
            return dict(counts)

    def claim_job(self, job_id: str, started_at: datetime, max_processing: int) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JOB_PENDING:
                return False
            processing = sum(1 for j in self._jobs.values() if j.status == JOB_PROCESSING)
            if processing >= max_processing:
                return False
            job.status = JOB_PROCESSING
            job.started_at = started_at
            return True

    def update_job(self, job: IngestionJob) -> None:
        with self._lock:
            if job.id not in self._jobs:
                raise PersistenceFailure(f"unknown job {job.id}")
            self._jobs[job.id] = copy.deepcopy(job)

    def settle_job(self, job: IngestionJob, claimed_at: Optional[datetime]) -> bool:
        with self._lock:
            current = self._jobs.get(job.id)
            if current is None or current.status != JOB_PROCESSING or current.started_at != claimed_at:
                return False
            self._jobs[job.id] = copy.deepcopy(job)
            return True

    # rankings

    def get_ranking(self, business_id: str) -> Optional[RankingRecord]:
        with self._lock:
            record = self._rankings.get(business_id)
            return copy.deepcopy(record) if record else None

    def save_ranking(self, record: RankingRecord) -> None:
        with self._lock:
            self._rankings[record.business_id] = copy.deepcopy(record)

    def rankings_for_cohort(self, category: str, city: str) -> List[RankingRecord]:
        return self.list_rankings(category=category, city=city)

    def list_rankings(self, category: Optional[str] = None, city: Optional[str] = None) -> List[RankingRecord]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._rankings.values()
                if (category is None or r.category == category) and (city is None or r.city == city)
            ]
