"""Ranking engine: score businesses and order them inside their (category, city) cohort."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from reviewrank.core.config import CategoryProfile, ScoringConfig, get_category_profile
from reviewrank.core.models import RankingRecord
from reviewrank.core.store import ReviewStore, average_rating
from reviewrank.ranking.classifier import ContentClassifier, summarize
from reviewrank.ranking.scoring import DEFAULT_SCORING, score_business

logger = logging.getLogger(__name__)

Cohort = Tuple[str, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RankingEngine:
    def __init__(
        self,
        store: ReviewStore,
        *,
        classifier: Optional[ContentClassifier] = None,
        config: ScoringConfig = DEFAULT_SCORING,
        profiles: Optional[Mapping[str, CategoryProfile]] = None,
        refresh_window: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.config = config
        self.profiles = profiles
        self.refresh_window = refresh_window
        self.clock = clock

    def recompute_business(self, business_id: str) -> Optional[RankingRecord]:
        """Score one business and persist it. The cohort position is left for ``update_cohort_positions``."""
        business = self.store.get_business(business_id)
        if business is None:
            logger.warning("Cannot rank unknown business %s", business_id)
            return None

        reviews = [review for review in self.store.reviews_for_business(business_id) if review.displayed]
        ratings = [review.rating for review in reviews]
        profile = get_category_profile(business.category, self.profiles)

        multiplier = None
        keywords: List[str] = []
        if self.classifier is not None:
            analysis = summarize(self.classifier, [review.comment for review in reviews])
            multiplier = analysis["quality_multiplier"]
            keywords = list(analysis["keywords"])

        breakdown = score_business(
            len(ratings), average_rating(ratings), business.tier, profile, multiplier, self.config
        )

        existing = self.store.get_ranking(business_id)
        same_cohort = existing is not None and (existing.category, existing.city) == (business.category, business.city)

        record = RankingRecord(
            business_id=business_id,
            category=business.category,
            city=business.city,
            overall_score=breakdown.overall_score,
            quality_score=breakdown.quality_score,
            volume_score=breakdown.volume_score,
            tier_bonus=breakdown.tier_bonus,
            quality_multiplier=breakdown.quality_multiplier,
            confidence=breakdown.confidence,
            reviews_analyzed=len(ratings),
            rank_position=existing.rank_position if same_cohort else 0,
            previous_position=existing.previous_position if same_cohort else None,
            total_in_cohort=existing.total_in_cohort if same_cohort else 0,
            keywords=keywords,
            updated_at=self.clock(),
        )
        self.store.save_ranking(record)
        logger.debug("Scored business %s: %.2f", business_id, record.overall_score)
        return record

    def update_cohort_positions(self, category: str, city: str) -> List[RankingRecord]:
        """Assign 1-indexed positions by descending score, keeping each prior position for movement."""
        records = self.store.rankings_for_cohort(category, city)
        records.sort(key=lambda record: (-record.overall_score, record.business_id))
        for position, record in enumerate(records, start=1):
            record.previous_position = record.rank_position or None
            record.rank_position = position
            record.total_in_cohort = len(records)
            self.store.save_ranking(record)
        logger.info("Ranked %d businesses in %s / %s", len(records), category, city)
        return records

    def businesses_needing_refresh(self, since: Optional[datetime] = None) -> List[str]:
        """Businesses with reviews imported since ``since`` plus every business never ranked."""
        since = since or self.clock() - self.refresh_window
        ids: Set[str] = set(self.store.businesses_with_reviews_since(since))
        ids.update(business.id for business in self.store.unranked_businesses())
        return sorted(ids)

    def refresh(self, since: Optional[datetime] = None, business_ids: Optional[List[str]] = None) -> Dict[str, int]:
        """Recompute stale businesses, then reorder every cohort one of them belongs to."""
        targets = business_ids if business_ids is not None else self.businesses_needing_refresh(since)
        recomputed = 0
        failed = 0
        cohorts: Set[Cohort] = set()

        for business_id in targets:
            try:
                before = self.store.get_ranking(business_id)
                record = self.recompute_business(business_id)
            except Exception as exc:  # noqa: BLE001
                failed += 1
                logger.exception("Ranking recompute failed for business %s: %s", business_id, exc)
                continue
            if record is not None:
                recomputed += 1
                cohorts.add((record.category, record.city))
                if before is not None:
                    # a business that changed category or city leaves a gap in its old cohort
                    cohorts.add((before.category, before.city))

        for category, city in sorted(cohorts):
            try:
                self.update_cohort_positions(category, city)
            except Exception as exc:  # noqa: BLE001
                failed += 1
                logger.exception("Cohort update failed for %s / %s: %s", category, city, exc)

        logger.info("Ranking refresh: %d recomputed, %d failed, %d cohorts", recomputed, failed, len(cohorts))
        return {"recomputed": recomputed, "failed": failed, "cohorts": len(cohorts)}

    def get_business_ranking(self, business_id: str) -> Optional[RankingRecord]:
        return self.store.get_ranking(business_id)

    def get_top_ranked(
        self, category: Optional[str] = None, city: Optional[str] = None, limit: int = 10
    ) -> List[RankingRecord]:
        records = self.store.list_rankings(category=category, city=city)
        records.sort(key=lambda record: (-record.overall_score, record.business_id))
        return records[: max(0, limit)]

    def get_biggest_movers(self, limit: int = 10) -> List[RankingRecord]:
        movers = [record for record in self.store.list_rankings() if record.movement]
        movers.sort(key=lambda record: (-abs(record.movement), record.business_id))
        return movers[: max(0, limit)]
