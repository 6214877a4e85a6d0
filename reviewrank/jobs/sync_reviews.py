"""Fetch, shape and import the reviews of one business."""

import argparse
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from reviewrank.core.config import get_settings
from reviewrank.core.errors import ConfigurationFailure
from reviewrank.core.models import SOURCE_GMB_API, IngestionJob
from reviewrank.core.pg_store import build_store
from reviewrank.core.queue import IngestionQueue
from reviewrank.core.store import ReviewStore
from reviewrank.etl.importer import BatchImporter
from reviewrank.etl.transform import to_review_records
from reviewrank.vendors.providers import ReviewProvider, get_provider

logger = logging.getLogger(__name__)


def sync_business(
    business_id: str,
    place_id: str,
    *,
    store: ReviewStore,
    provider: ReviewProvider,
    importer: BatchImporter,
    max_reviews: int,
) -> Dict[str, Any]:
    """Pull up to ``max_reviews`` reviews for one business and import them. Provider errors propagate."""
    raw_reviews = provider.fetch_reviews(place_id, max_reviews)
    records, skipped = to_review_records(
        raw_reviews, place_id=place_id, business_id=business_id, source=SOURCE_GMB_API
    )
    logger.info(
        "Business %s: fetched=%d usable=%d skipped=%d", business_id, len(raw_reviews), len(records), skipped
    )

    summary = importer.import_records(records)
    store.mark_synced(business_id, datetime.now(timezone.utc))
    if summary.flagged_for_review:
        logger.error("Import for business %s needs manual inspection: %s", business_id, summary.error_samples)

    return {
        "fetched": len(raw_reviews),
        "filtered": len(records),
        "imported": summary.created,
        "duplicates": summary.duplicates,
        "skipped": skipped,
    }


def run_job(
    job: IngestionJob,
    *,
    store: ReviewStore,
    queue: IngestionQueue,
    provider: ReviewProvider,
    importer: BatchImporter,
    max_reviews: int,
) -> Optional[Dict[str, Any]]:
    """Process one claimed job and settle it on the queue. Returns the results, or ``None`` on failure."""
    try:
        results = sync_business(
            job.business_id,
            job.place_id,
            store=store,
            provider=provider,
            importer=importer,
            max_reviews=max_reviews,
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("Review sync failed for business %s: %s", job.business_id, exc)
        queue.fail(job, str(exc))
        return None

    queue.complete(job, results)
    return results


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync reviews for a single business")
    parser.add_argument("--business-id", dest="business_id", required=True, help="Internal business id")
    parser.add_argument("--place-id", dest="place_id", help="Google place id (defaults to the stored one)")
    parser.add_argument(
        "--max-reviews",
        dest="max_reviews",
        type=int,
        default=None,
        help="Maximum number of reviews to fetch",
    )
    return parser


def main(argv: Optional[list] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)
    settings = get_settings()

    try:
        store = build_store(settings)
        provider = get_provider(settings)
        business = store.get_business(args.business_id)
        place_id = args.place_id or (business.place_id if business else None)
        if not place_id:
            raise ConfigurationFailure(f"No place id known for business {args.business_id}")
        importer = BatchImporter(
            store,
            batch_size=settings.import_batch_size,
            failure_rate_threshold=settings.failure_rate_threshold,
            pacing_seconds=settings.batch_pacing_seconds,
        )
        results = sync_business(
            args.business_id,
            place_id,
            store=store,
            provider=provider,
            importer=importer,
            max_reviews=args.max_reviews or settings.sync_max_reviews,
        )
    except ConfigurationFailure as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    except Exception as exc:  # noqa: BLE001
        logger.exception("Review sync failed: %s", exc)
        return 1

    logger.info("Sync complete: %s", results)
    return 0


if __name__ == "__main__":
    sys.exit(main())
