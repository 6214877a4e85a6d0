"""HTTP entrypoint exposing rankings and the ingestion queue (Cloud Run friendly)."""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from reviewrank.core.config import get_settings
from reviewrank.core.models import IngestionJob, RankingRecord
from reviewrank.jobs.orchestrator import Pipeline, build_pipeline, run_cycle

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App & executor ----------
app = Flask(__name__)
_executor = ThreadPoolExecutor(max_workers=1)
_pipeline: Optional[Pipeline] = None
_pipeline_lock = threading.Lock()

DEFAULT_LIMIT = 10
MAX_LIMIT = 100


def get_pipeline() -> Pipeline:
    global _pipeline
    with _pipeline_lock:
        if _pipeline is None:
            _pipeline = build_pipeline(get_settings())
        return _pipeline


def _ranking_payload(record: RankingRecord) -> Dict[str, Any]:
    payload = asdict(record)
    payload["movement"] = record.movement
    payload["updated_at"] = record.updated_at.isoformat() if record.updated_at else None
    return payload


def _job_payload(job: IngestionJob) -> Dict[str, Any]:
    payload = asdict(job)
    for key in ("requested_at", "started_at", "completed_at", "last_error_at"):
        payload[key] = payload[key].isoformat() if payload[key] else None
    return payload


def _parse_limit(raw: Optional[str]) -> int:
    if raw is None or raw == "":
        return DEFAULT_LIMIT
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        raise ValueError("limit must be numeric") from None
    if not 1 <= limit <= MAX_LIMIT:
        raise ValueError(f"limit must be between 1 and {MAX_LIMIT}")
    return limit


# ---------- Routes ----------


@app.get("/healthz")
def healthcheck() -> Any:
    """Lightweight health endpoint; reads settings only, never touches the database."""
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "provider": settings.scrape_provider,
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.get("/rankings/<business_id>")
def business_ranking(business_id: str) -> Any:
    record = get_pipeline().engine.get_business_ranking(business_id)
    if record is None:
        return jsonify({"error": "ranking not found"}), 404
    return jsonify({"data": _ranking_payload(record)}), 200


@app.get("/rankings")
def top_ranked() -> Any:
    try:
        limit = _parse_limit(request.args.get("limit"))
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    records = get_pipeline().engine.get_top_ranked(
        category=request.args.get("category") or None,
        city=request.args.get("city") or None,
        limit=limit,
    )
    return jsonify({"data": [_ranking_payload(record) for record in records]}), 200


@app.get("/rankings/movers")
def biggest_movers() -> Any:
    try:
        limit = _parse_limit(request.args.get("limit"))
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    records = get_pipeline().engine.get_biggest_movers(limit)
    return jsonify({"data": [_ranking_payload(record) for record in records]}), 200


@app.get("/queue/status")
def queue_status() -> Any:
    return jsonify({"data": get_pipeline().queue.status()}), 200


@app.post("/queue")
def enqueue_business() -> Any:
    """
    Queue a review sync for one business.
    Required JSON fields: business_id
    Optional: place_id (defaults to the stored one), priority (int)
    """
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    business_id = str(payload.get("business_id") or "").strip()
    if not business_id:
        return jsonify({"error": "missing fields: business_id"}), 400

    priority = payload.get("priority")
    if priority is not None:
        try:
            priority = int(priority)
        except (TypeError, ValueError):
            return jsonify({"error": "priority must be numeric"}), 400

    pipeline = get_pipeline()
    place_id = str(payload.get("place_id") or "").strip()
    if not place_id:
        business = pipeline.store.get_business(business_id)
        if business is None:
            return jsonify({"error": "business not found"}), 404
        if not business.place_id:
            return jsonify({"error": "business has no place_id"}), 400
        place_id = business.place_id

    job = pipeline.queue.enqueue(business_id, place_id, priority)
    return jsonify({"data": _job_payload(job)}), 202


@app.post("/sync")
def trigger_sync() -> Any:
    """Run one pipeline cycle in the background."""
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    max_jobs = payload.get("max_jobs")
    if max_jobs is not None:
        try:
            max_jobs = int(max_jobs)
            if max_jobs <= 0:
                return jsonify({"error": "max_jobs must be positive"}), 400
        except (TypeError, ValueError):
            return jsonify({"error": "max_jobs must be numeric"}), 400

    job_args = dict(max_jobs=max_jobs, skip_ranking=bool(payload.get("skip_ranking", False)))
    logger.info("Queueing pipeline cycle: %s", job_args)
    _executor.submit(_run_cycle_safe, job_args)
    return jsonify({"data": {"status": "queued"}}), 202


# ---------- Internals ----------


def _run_cycle_safe(job_args: Dict[str, Any]) -> None:
    try:
        run_cycle(get_pipeline(), **job_args)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Pipeline cycle failed: %s", exc)


def main() -> None:
    """Cloud Run injects PORT; locally fall back to WORKER_PORT."""
    port = int(os.getenv("PORT") or get_settings().worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
