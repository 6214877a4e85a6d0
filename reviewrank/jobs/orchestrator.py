"""Scheduled pipeline cycle: queue due businesses, drain the queue, refresh rankings.

Run daily (cron, Cloud Scheduler) or on demand through ``POST /sync``::

    python -m reviewrank.jobs.orchestrator [--max-jobs N] [--skip-ranking] [--enqueue-only]
"""

import argparse
import logging
import sys
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Set

from reviewrank.core.config import Settings, get_settings
from reviewrank.core.errors import ConfigurationFailure
from reviewrank.core.models import IngestionJob
from reviewrank.core.pg_store import build_store
from reviewrank.core.queue import MAX_BULK_ENQUEUE, IngestionQueue, utcnow
from reviewrank.core.store import ReviewStore
from reviewrank.etl.importer import BatchImporter
from reviewrank.jobs.sync_reviews import run_job
from reviewrank.ranking.engine import RankingEngine
from reviewrank.vendors.providers import ReviewProvider, get_provider

logger = logging.getLogger(__name__)

MAX_DUE_BUSINESSES = 1000


@dataclass
class Pipeline:
    store: ReviewStore
    queue: IngestionQueue
    provider: ReviewProvider
    importer: BatchImporter
    engine: RankingEngine
    max_reviews: int = 200
    review_refresh: timedelta = timedelta(days=7)


def build_pipeline(settings: Settings, store: Optional[ReviewStore] = None) -> Pipeline:
    store = store or build_store(settings)
    return Pipeline(
        store=store,
        queue=IngestionQueue.from_settings(store, settings),
        provider=get_provider(settings),
        importer=BatchImporter(
            store,
            batch_size=settings.import_batch_size,
            failure_rate_threshold=settings.failure_rate_threshold,
            pacing_seconds=settings.batch_pacing_seconds,
        ),
        engine=RankingEngine(store, refresh_window=timedelta(hours=settings.ranking_refresh_hours)),
        max_reviews=settings.sync_max_reviews,
        review_refresh=timedelta(days=settings.review_refresh_days),
    )


def enqueue_due_businesses(pipeline: Pipeline, now: Optional[datetime] = None) -> int:
    """Queue every active business with a place id that has not been synced within the refresh window."""
    now = now or utcnow()
    due = pipeline.store.businesses_due_for_sync(now - pipeline.review_refresh, MAX_DUE_BUSINESSES)
    added = 0
    for start in range(0, len(due), MAX_BULK_ENQUEUE):
        chunk = due[start:start + MAX_BULK_ENQUEUE]
        result = pipeline.queue.bulk_enqueue((business.id, business.place_id) for business in chunk)
        added += result["added"]
    logger.info("%d businesses due for a review refresh, %d newly queued", len(due), added)
    return added


def drain_queue(pipeline: Pipeline, max_jobs: Optional[int] = None) -> Dict[str, int]:
    """Claim and run jobs until the queue is empty. A job that fails is not retried in the same drain.

    A freed slot is refilled as soon as any running job finishes.
    """
    queue = pipeline.queue
    attempted: Set[str] = set()
    running: Dict[Future, IngestionJob] = {}
    completed = 0
    failed = 0

    with ThreadPoolExecutor(max_workers=queue.max_connections) as executor:
        while True:
            if max_jobs is None or len(attempted) < max_jobs:
                remaining = None if max_jobs is None else max_jobs - len(attempted)
                for job in queue.claim_next(remaining, exclude=attempted):
                    attempted.add(job.id)
                    future = executor.submit(
                        run_job,
                        job,
                        store=pipeline.store,
                        queue=queue,
                        provider=pipeline.provider,
                        importer=pipeline.importer,
                        max_reviews=pipeline.max_reviews,
                    )
                    running[future] = job
            if not running:
                break
            done, _ = wait(running, return_when=FIRST_COMPLETED)
            for future in done:
                running.pop(future)
                if future.result() is None:
                    failed += 1
                else:
                    completed += 1

    logger.info("Queue drained: %d completed, %d failed", completed, failed)
    return {"processed": len(attempted), "completed": completed, "failed": failed}


def run_cycle(
    pipeline: Pipeline,
    *,
    max_jobs: Optional[int] = None,
    skip_ranking: bool = False,
    enqueue_only: bool = False,
) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"stuck_reset": pipeline.queue.clear_stuck()}
    summary["enqueued"] = enqueue_due_businesses(pipeline)
    if enqueue_only:
        summary["queue"] = pipeline.queue.status()
        return summary

    summary["jobs"] = drain_queue(pipeline, max_jobs)
    if not skip_ranking:
        summary["rankings"] = pipeline.engine.refresh()
    summary["queue"] = pipeline.queue.status()
    logger.info("Cycle complete: %s", summary)
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one review ingestion and ranking cycle")
    parser.add_argument("--max-jobs", dest="max_jobs", type=int, help="Stop after this many sync jobs")
    parser.add_argument("--skip-ranking", dest="skip_ranking", action="store_true", help="Do not refresh rankings")
    parser.add_argument(
        "--enqueue-only", dest="enqueue_only", action="store_true", help="Only queue due businesses"
    )
    return parser


def main(argv: Optional[list] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)

    try:
        pipeline = build_pipeline(get_settings())
        run_cycle(pipeline, max_jobs=args.max_jobs, skip_ranking=args.skip_ranking, enqueue_only=args.enqueue_only)
    except ConfigurationFailure as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    except Exception as exc:  # noqa: BLE001
        logger.exception("Pipeline cycle failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
