"""Duplicate review detection and cross-source reconciliation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from reviewrank.core.config import DuplicateWeights
from reviewrank.core.models import (
    DUPLICATE_KEYWORD,
    SOURCE_DIRECT,
    SOURCE_FACEBOOK_IMPORT,
    SOURCE_GMB_API,
    SOURCE_GMB_IMPORT,
    SOURCE_MANUAL,
    SOURCE_YELP_IMPORT,
    Review,
    ReviewRecord,
)
from reviewrank.matching.text import normalize_text, similarity

logger = logging.getLogger(__name__)

# Higher wins. Unknown sources rank below everything listed here.
SOURCE_AUTHORITY: Dict[str, int] = {
    SOURCE_GMB_API: 10,
    SOURCE_GMB_IMPORT: 9,
    SOURCE_FACEBOOK_IMPORT: 5,
    SOURCE_YELP_IMPORT: 5,
    SOURCE_DIRECT: 3,
    SOURCE_MANUAL: 1,
}

ReviewKey = Tuple[str, str]


def review_key(source: str, source_review_id: str) -> ReviewKey:
    return (source, source_review_id)


def source_authority(source: str, table: Optional[Mapping[str, int]] = None) -> int:
    return (table if table is not None else SOURCE_AUTHORITY).get(source, 0)


@dataclass
class DuplicateCheck:
    is_duplicate: bool
    confidence: float
    reasons: List[str] = field(default_factory=list)
    match: Optional[Review] = None
    exact: bool = False


@dataclass
class DuplicatePair:
    primary: Review
    duplicate: Review
    confidence: float
    reasons: List[str]


@dataclass
class ReconcileAction:
    keep: Review
    remove: Review
    reason: str


def _same_author(left: str, right: str) -> bool:
    return (left or "").strip().casefold() == (right or "").strip().casefold()


class DuplicateDetector:
    """Two stage duplicate check: exact (source, id) key, then content similarity within a business."""

    def __init__(
        self,
        weights: Optional[DuplicateWeights] = None,
        authority: Optional[Mapping[str, int]] = None,
    ) -> None:
        self.weights = weights or DuplicateWeights()
        self.authority = dict(authority if authority is not None else SOURCE_AUTHORITY)

    def score(
        self,
        author: str,
        rating: int,
        comment: str,
        created_at: datetime,
        other: Review,
    ) -> Tuple[float, List[str]]:
        """Accumulate the content-similarity confidence that two reviews are the same."""
        w = self.weights
        confidence = 0.0
        reasons: List[str] = []

        if _same_author(author, other.author) and int(rating) == int(other.rating):
            confidence += w.same_author_and_rating
            reasons.append("same author and rating")

        text_similarity = similarity(normalize_text(comment), normalize_text(other.comment))
        if text_similarity > w.very_similar_cutoff:
            confidence += w.very_similar_text
            reasons.append(f"very similar content ({round(text_similarity * 100)}% match)")
        elif text_similarity > w.similar_cutoff:
            confidence += w.similar_text
            reasons.append(f"similar content ({round(text_similarity * 100)}% match)")

        days_apart = abs((created_at - other.created_at).total_seconds()) / 86400.0
        if days_apart <= 1:
            confidence += w.within_one_day
            reasons.append("posted within 1 day")
        elif days_apart <= 7:
            confidence += w.within_one_week
            reasons.append("posted within 1 week")

        return round(confidence, 6), reasons

    def check(
        self,
        record: ReviewRecord,
        existing_keys: Set[ReviewKey],
        business_reviews: Iterable[Review],
    ) -> DuplicateCheck:
        """Decide whether ``record`` already exists.

        ``existing_keys`` holds every known (source, source id) pair regardless of
        business; ``business_reviews`` are the stored reviews of the resolved business.
        """
        if review_key(record.source, record.source_review_id) in existing_keys:
            return DuplicateCheck(True, 1.0, ["same review id from same source"], exact=True)

        best = DuplicateCheck(False, 0.0)
        for existing in business_reviews:
            confidence, reasons = self.score(
                record.author, record.rating, record.comment, record.created_at, existing
            )
            if confidence >= self.weights.threshold and confidence > best.confidence:
                best = DuplicateCheck(True, confidence, reasons, match=existing)
        return best

    def outranks(self, source: str, other_source: str) -> bool:
        return source_authority(source, self.authority) > source_authority(other_source, self.authority)

    def choose_survivor(self, left: Review, right: Review) -> ReconcileAction:
        """Keep the higher-authority review; equal authority keeps the more recent one."""
        left_rank = source_authority(left.source, self.authority)
        right_rank = source_authority(right.source, self.authority)
        if left_rank != right_rank:
            keep, remove = (left, right) if left_rank > right_rank else (right, left)
            return ReconcileAction(keep, remove, f"keeping {keep.source} over {remove.source} (higher authority)")
        keep, remove = (left, right) if left.created_at > right.created_at else (right, left)
        return ReconcileAction(keep, remove, "keeping more recent review")

    def find_pairs(self, reviews: Sequence[Review]) -> List[DuplicatePair]:
        """Pairwise scan of one business's reviews; a review flagged as duplicate is not reused."""
        pairs: List[DuplicatePair] = []
        consumed: Set[str] = set()
        candidates = [review for review in reviews if not review.flagged]
        for i, primary in enumerate(candidates):
            if primary.id in consumed:
                continue
            for other in candidates[i + 1:]:
                if other.id in consumed:
                    continue
                if review_key(primary.source, primary.source_review_id) == review_key(
                    other.source, other.source_review_id
                ):
                    pairs.append(DuplicatePair(primary, other, 1.0, ["same review id from same source"]))
                    consumed.add(other.id)
                    continue
                confidence, reasons = self.score(
                    primary.author, primary.rating, primary.comment, primary.created_at, other
                )
                if confidence >= self.weights.threshold:
                    pairs.append(DuplicatePair(primary, other, confidence, reasons))
                    consumed.add(other.id)
            consumed.add(primary.id)
        return pairs


def reconcile_duplicates(
    store,
    pairs: Iterable[DuplicatePair],
    detector: Optional[DuplicateDetector] = None,
    dry_run: bool = False,
) -> Dict[str, object]:
    """Soft-flag the losing side of every pair. Reviews are never deleted."""
    detector = detector or DuplicateDetector()
    actions: List[Dict[str, str]] = []
    to_flag: List[str] = []

    for pair in pairs:
        action = detector.choose_survivor(pair.primary, pair.duplicate)
        actions.append(
            {
                "keep": action.keep.source_review_id,
                "remove": action.remove.source_review_id,
                "source": action.remove.source,
                "reason": action.reason,
            }
        )
        if action.remove.id not in to_flag:
            to_flag.append(action.remove.id)

    if to_flag and not dry_run:
        store.flag_reviews(to_flag, DUPLICATE_KEYWORD)
        logger.info("Flagged %d reviews as duplicates", len(to_flag))

    return {"removed": 0 if dry_run else len(to_flag), "kept": len(actions), "actions": actions, "dry_run": dry_run}


def find_duplicate_pairs(store, business_id: str, detector: Optional[DuplicateDetector] = None) -> List[DuplicatePair]:
    """Audit the stored reviews of one business for duplicates that slipped past import."""
    detector = detector or DuplicateDetector()
    reviews = sorted(store.reviews_for_business(business_id), key=lambda review: review.created_at)
    pairs = detector.find_pairs(reviews)
    if pairs:
        logger.info("Found %d duplicate pair(s) for business %s", len(pairs), business_id)
    return pairs
