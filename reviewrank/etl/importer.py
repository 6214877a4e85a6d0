"""Batch importer: resolve, deduplicate and persist scraped reviews."""

import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set

from reviewrank.core.models import DUPLICATE_KEYWORD, ImportSummary, Review, ReviewRecord
from reviewrank.core.store import ReviewStore, new_id
from reviewrank.matching.duplicates import DuplicateDetector, ReviewKey, review_key
from reviewrank.matching.identity import IdentityMatcher, hint_summary

logger = logging.getLogger(__name__)

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 1000
MAX_ERROR_SAMPLES = 10


class BatchImporter:
    def __init__(
        self,
        store: ReviewStore,
        *,
        detector: Optional[DuplicateDetector] = None,
        batch_size: int = 500,
        failure_rate_threshold: float = 0.2,
        pacing_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.detector = detector or DuplicateDetector()
        self.batch_size = min(max(batch_size, MIN_BATCH_SIZE), MAX_BATCH_SIZE)
        self.failure_rate_threshold = failure_rate_threshold
        self.pacing_seconds = pacing_seconds
        self._sleep = sleep

    def import_records(self, records: Sequence[ReviewRecord]) -> ImportSummary:
        """Import any number of records in bounded batches, pausing between batches."""
        total = ImportSummary()
        batches = [records[i:i + self.batch_size] for i in range(0, len(records), self.batch_size)]
        for index, batch in enumerate(batches, start=1):
            total.merge(self.import_batch(batch))
            if index < len(batches) and self.pacing_seconds > 0:
                self._sleep(self.pacing_seconds)
        return total

    def import_batch(self, records: Sequence[ReviewRecord]) -> ImportSummary:
        """Import one batch. Record-level failures are counted; the batch never aborts."""
        if len(records) > MAX_BATCH_SIZE:
            raise ValueError(f"Batch of {len(records)} exceeds maximum of {MAX_BATCH_SIZE}")

        summary = ImportSummary(processed=len(records))
        if not records:
            return summary

        hints = hint_summary(records)
        matcher = IdentityMatcher(self.store.businesses_for_hints(**hints))
        logger.info("Importing batch of %d reviews against %d candidate businesses", len(records), len(matcher))

        known_keys: Set[ReviewKey] = self.store.existing_review_keys(
            review_key(record.source, record.source_review_id) for record in records
        )

        grouped: Dict[str, List[ReviewRecord]] = OrderedDict()
        for record in records:
            try:
                match = matcher.match(record)
            except Exception as exc:  # noqa: BLE001
                self._record_error(summary, record, exc)
                continue
            if match is None:
                summary.business_not_found += 1
                logger.debug("No business for review %s (place_id=%s)", record.source_review_id, record.place_id)
                continue
            grouped.setdefault(match.business.id, []).append(record)

        for business_id, business_records in grouped.items():
            with self.store.business_lock(business_id):
                self._import_for_business(business_id, business_records, known_keys, summary)

        for business_id in summary.affected_business_ids:
            try:
                count, rating = self.store.recount_business(business_id)
                logger.debug("Business %s now has %d reviews at %.1f", business_id, count, rating)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to recount business %s: %s", business_id, exc)

        if summary.error_rate > self.failure_rate_threshold:
            summary.flagged_for_review = True
            logger.error(
                "Import batch flagged for manual inspection: %d/%d records failed (samples: %s)",
                summary.errors,
                summary.processed,
                summary.error_samples[:3],
            )

        logger.info(
            "Batch complete: created=%d duplicates=%d not_found=%d errors=%d",
            summary.created,
            summary.duplicates,
            summary.business_not_found,
            summary.errors,
        )
        return summary

    def _import_for_business(
        self,
        business_id: str,
        records: Sequence[ReviewRecord],
        known_keys: Set[ReviewKey],
        summary: ImportSummary,
    ) -> None:
        try:
            existing = self.store.reviews_for_business(business_id)
        except Exception as exc:  # noqa: BLE001
            for record in records:
                self._record_error(summary, record, exc)
            return

        changed = False
        for record in records:
            try:
                check = self.detector.check(record, known_keys, existing)
                superseded: Optional[Review] = None
                if check.is_duplicate:
                    if check.exact or check.match is None or not self.detector.outranks(
                        record.source, check.match.source
                    ):
                        summary.duplicates += 1
                        continue
                    superseded = check.match

                review = Review(
                    id=new_id(),
                    business_id=business_id,
                    source=record.source,
                    source_review_id=record.source_review_id,
                    author=record.author,
                    rating=record.rating,
                    comment=record.comment,
                    created_at=record.created_at,
                    imported_at=datetime.now(timezone.utc),
                )
                if not self.store.insert_review(review):
                    summary.duplicates += 1
                    known_keys.add(review_key(record.source, record.source_review_id))
                    continue

                known_keys.add(review_key(record.source, record.source_review_id))
                existing.append(review)
                summary.created += 1
                changed = True

                if superseded is not None:
                    self.store.flag_reviews([superseded.id], DUPLICATE_KEYWORD)
                    superseded.flagged = True
                    superseded.displayed = False
                    summary.superseded += 1
                    logger.info(
                        "Review %s from %s supersedes %s from %s",
                        record.source_review_id,
                        record.source,
                        superseded.source_review_id,
                        superseded.source,
                    )
            except Exception as exc:  # noqa: BLE001
                self._record_error(summary, record, exc)

        if changed and business_id not in summary.affected_business_ids:
            summary.affected_business_ids.append(business_id)

    @staticmethod
    def _record_error(summary: ImportSummary, record: ReviewRecord, exc: Exception) -> None:
        summary.errors += 1
        message = f"{record.source}:{record.source_review_id}: {exc}"
        if len(summary.error_samples) < MAX_ERROR_SAMPLES:
            summary.error_samples.append(message)
        logger.warning("Failed to import review %s", message)
