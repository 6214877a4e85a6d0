"""Core data models shared by the review ingestion and ranking pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

TIER_FREE = "free"
TIER_STARTER = "starter"
TIER_PRO = "pro"
TIER_POWER = "power"
TIERS = (TIER_FREE, TIER_STARTER, TIER_PRO, TIER_POWER)

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
OPEN_JOB_STATUSES = frozenset({JOB_PENDING, JOB_PROCESSING})

SOURCE_GMB_API = "gmb_api"
SOURCE_GMB_IMPORT = "gmb_import"
SOURCE_FACEBOOK_IMPORT = "facebook_import"
SOURCE_YELP_IMPORT = "yelp_import"
SOURCE_DIRECT = "direct"
SOURCE_MANUAL = "manual"

DUPLICATE_KEYWORD = "duplicate_removed"


@dataclass(slots=True)
class Business:
    """Catalog entry a review can be attached to."""

    id: str
    name: str
    city: str
    category: str
    normalized_name: str = ""
    phone: Optional[str] = None
    place_id: Optional[str] = None
    tier: str = TIER_FREE
    active: bool = True
    review_count: int = 0
    rating: float = 0.0
    last_synced_at: Optional[datetime] = None


@dataclass(slots=True)
class ReviewRecord:
    """Inbound review as produced by a scrape provider, before identity resolution."""

    source_review_id: str
    rating: int
    comment: str
    author: str
    created_at: datetime
    source: str = SOURCE_GMB_API
    place_id: Optional[str] = None
    business_id: Optional[str] = None
    phone: Optional[str] = None
    business_name: Optional[str] = None
    source_url: Optional[str] = None
    raw_snapshot: Optional[Dict[str, Any]] = field(default=None, repr=False)


@dataclass(slots=True)
class Review:
    id: str
    business_id: str
    source: str
    source_review_id: str
    author: str
    rating: int
    comment: str
    created_at: datetime
    flagged: bool = False
    displayed: bool = True
    keywords: List[str] = field(default_factory=list)
    imported_at: Optional[datetime] = None


@dataclass(slots=True)
class IngestionJob:
    id: str
    business_id: str
    place_id: str
    status: str = JOB_PENDING
    priority: int = 5
    retry_count: int = 0
    requested_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    results: Optional[Dict[str, int]] = None


@dataclass(slots=True)
class RankingRecord:
    """Persisted ranking of one business inside its (category, city) cohort."""

    business_id: str
    category: str
    city: str
    overall_score: float
    quality_score: float
    volume_score: float
    tier_bonus: float
    quality_multiplier: float
    confidence: float
    reviews_analyzed: int
    rank_position: int = 0
    previous_position: Optional[int] = None
    total_in_cohort: int = 0
    keywords: List[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    @property
    def movement(self) -> int:
        """Positions gained since the previous recompute (negative means the business dropped)."""
        if self.previous_position is None or not self.rank_position:
            return 0
        return self.previous_position - self.rank_position


@dataclass(slots=True)
class ImportSummary:
    processed: int = 0
    created: int = 0
    duplicates: int = 0
    business_not_found: int = 0
    superseded: int = 0
    errors: int = 0
    error_samples: List[str] = field(default_factory=list)
    affected_business_ids: List[str] = field(default_factory=list)
    flagged_for_review: bool = False

    @property
    def error_rate(self) -> float:
        if not self.processed:
            return 0.0
        return self.errors / self.processed

    def merge(self, other: "ImportSummary") -> None:
        self.processed += other.processed
        self.created += other.created
        self.duplicates += other.duplicates
        self.business_not_found += other.business_not_found
        self.superseded += other.superseded
        self.errors += other.errors
        self.error_samples.extend(other.error_samples[: max(0, 10 - len(self.error_samples))])
        for business_id in other.affected_business_ids:
            if business_id not in self.affected_business_ids:
                self.affected_business_ids.append(business_id)
        self.flagged_for_review = self.flagged_for_review or other.flagged_for_review

    def as_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "duplicates": self.duplicates,
            "businessNotFound": self.business_not_found,
            "superseded": self.superseded,
            "errors": self.errors,
            "errorSamples": list(self.error_samples),
            "flaggedForReview": self.flagged_for_review,
        }
