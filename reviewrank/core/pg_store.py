"""PostgreSQL implementation of the review store (see ``sql/schema.sql``)."""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

import psycopg2
from psycopg2 import extras

from reviewrank.core.db import get_connection, init_pool
from reviewrank.core.errors import PersistenceFailure
from reviewrank.core.models import Business, IngestionJob, RankingRecord, Review
from reviewrank.core.store import MemoryStore, ReviewKey, ReviewStore, new_id
from reviewrank.matching.text import name_block_keys, normalize_name, normalize_phone

logger = logging.getLogger(__name__)

KEY_CHUNK_SIZE = 500
QUEUE_LOCK_ID = 724_301

_BUSINESS_COLUMNS = (
    "id, name, normalized_name, phone, place_id, city, category, tier, active, "
    "review_count, rating, last_synced_at"
)
_REVIEW_COLUMNS = (
    "id, business_id, source, source_review_id, author, rating, comment, created_at, "
    "flagged, displayed, keywords, imported_at"
)
_JOB_COLUMNS = (
    "id, business_id, place_id, status, priority, retry_count, requested_at, started_at, "
    "completed_at, last_error, last_error_at, results"
)
_RANKING_COLUMNS = (
    "business_id, category, city, overall_score, quality_score, volume_score, tier_bonus, "
    "quality_multiplier, confidence, reviews_analyzed, rank_position, previous_position, "
    "total_in_cohort, keywords, updated_at"
)

_UPSERT_BUSINESS = """
INSERT INTO businesses (
    id, name, normalized_name, name_keys, phone, phone_digits, place_id, city, category,
    tier, active, review_count, rating, last_synced_at, updated_at
) VALUES (
    %(id)s, %(name)s, %(normalized_name)s, %(name_keys)s, %(phone)s, %(phone_digits)s,
    %(place_id)s, %(city)s, %(category)s, %(tier)s, %(active)s, %(review_count)s,
    %(rating)s, %(last_synced_at)s, NOW()
)
ON CONFLICT (id) DO UPDATE SET
    name = EXCLUDED.name,
    normalized_name = EXCLUDED.normalized_name,
    name_keys = EXCLUDED.name_keys,
    phone = EXCLUDED.phone,
    phone_digits = EXCLUDED.phone_digits,
    place_id = EXCLUDED.place_id,
    city = EXCLUDED.city,
    category = EXCLUDED.category,
    tier = EXCLUDED.tier,
    active = EXCLUDED.active,
    updated_at = NOW();
"""

_INSERT_REVIEW = f"""
INSERT INTO reviews ({_REVIEW_COLUMNS}) VALUES (
    %(id)s, %(business_id)s, %(source)s, %(source_review_id)s, %(author)s, %(rating)s,
    %(comment)s, %(created_at)s, %(flagged)s, %(displayed)s, %(keywords)s,
    COALESCE(%(imported_at)s, NOW())
)
ON CONFLICT (source, source_review_id) DO NOTHING
RETURNING id;
"""

_RECOUNT_BUSINESS = """
UPDATE businesses AS b SET
    review_count = s.review_count,
    rating = s.rating,
    updated_at = NOW()
FROM (
    SELECT COUNT(*) AS review_count, COALESCE(ROUND(AVG(rating)::numeric, 1), 0) AS rating
    FROM reviews
    WHERE business_id = %(business_id)s AND displayed
) AS s
WHERE b.id = %(business_id)s
RETURNING b.review_count, b.rating;
"""

_INSERT_JOB = f"""
INSERT INTO ingestion_jobs ({_JOB_COLUMNS}) VALUES (
    %(id)s, %(business_id)s, %(place_id)s, %(status)s, %(priority)s, %(retry_count)s,
    %(requested_at)s, %(started_at)s, %(completed_at)s, %(last_error)s, %(last_error_at)s,
    %(results)s
)
ON CONFLICT (business_id) WHERE status IN ('pending', 'processing') DO NOTHING
RETURNING id;
"""

_CLAIM_JOB = """
UPDATE ingestion_jobs SET status = 'processing', started_at = %(started_at)s
WHERE id = %(id)s
  AND status = 'pending'
  AND (SELECT COUNT(*) FROM ingestion_jobs WHERE status = 'processing') < %(max_processing)s
RETURNING id;
"""

_UPDATE_JOB = """
UPDATE ingestion_jobs SET
    status = %(status)s,
    priority = %(priority)s,
    retry_count = %(retry_count)s,
    started_at = %(started_at)s,
    completed_at = %(completed_at)s,
    last_error = %(last_error)s,
    last_error_at = %(last_error_at)s,
    results = %(results)s
WHERE id = %(id)s;
"""

_SETTLE_JOB = """
UPDATE ingestion_jobs SET
    status = %(status)s,
    priority = %(priority)s,
    retry_count = %(retry_count)s,
    started_at = %(started_at)s,
    completed_at = %(completed_at)s,
    last_error = %(last_error)s,
    last_error_at = %(last_error_at)s,
    results = %(results)s
WHERE id = %(id)s
  AND status = 'processing'
  AND started_at = %(claimed_at)s
RETURNING id;
"""

_UPSERT_RANKING = f"""
INSERT INTO rankings ({_RANKING_COLUMNS}) VALUES (
    %(business_id)s, %(category)s, %(city)s, %(overall_score)s, %(quality_score)s,
    %(volume_score)s, %(tier_bonus)s, %(quality_multiplier)s, %(confidence)s,
    %(reviews_analyzed)s, %(rank_position)s, %(previous_position)s, %(total_in_cohort)s,
    %(keywords)s, COALESCE(%(updated_at)s, NOW())
)
ON CONFLICT (business_id) DO UPDATE SET
    category = EXCLUDED.category,
    city = EXCLUDED.city,
    overall_score = EXCLUDED.overall_score,
    quality_score = EXCLUDED.quality_score,
    volume_score = EXCLUDED.volume_score,
    tier_bonus = EXCLUDED.tier_bonus,
    quality_multiplier = EXCLUDED.quality_multiplier,
    confidence = EXCLUDED.confidence,
    reviews_analyzed = EXCLUDED.reviews_analyzed,
    rank_position = EXCLUDED.rank_position,
    previous_position = EXCLUDED.previous_position,
    total_in_cohort = EXCLUDED.total_in_cohort,
    keywords = EXCLUDED.keywords,
    updated_at = EXCLUDED.updated_at;
"""


def _business_params(business: Business) -> Dict[str, Any]:
    normalized = business.normalized_name or normalize_name(business.name)
    return {
        "id": business.id,
        "name": business.name,
        "normalized_name": normalized,
        "name_keys": sorted(name_block_keys(normalized)),
        "phone": business.phone,
        "phone_digits": normalize_phone(business.phone) or None,
        "place_id": business.place_id,
        "city": business.city,
        "category": business.category,
        "tier": business.tier,
        "active": business.active,
        "review_count": business.review_count,
        "rating": business.rating,
        "last_synced_at": business.last_synced_at,
    }


def _job_params(job: IngestionJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "business_id": job.business_id,
        "place_id": job.place_id,
        "status": job.status,
        "priority": job.priority,
        "retry_count": job.retry_count,
        "requested_at": job.requested_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "last_error": job.last_error,
        "last_error_at": job.last_error_at,
        "results": extras.Json(job.results) if job.results is not None else None,
    }


def _row_to_business(row: Dict[str, Any]) -> Business:
    return Business(
        id=row["id"],
        name=row["name"],
        normalized_name=row["normalized_name"],
        phone=row["phone"],
        place_id=row["place_id"],
        city=row["city"],
        category=row["category"],
        tier=row["tier"],
        active=row["active"],
        review_count=row["review_count"],
        rating=float(row["rating"]),
        last_synced_at=row["last_synced_at"],
    )


def _row_to_review(row: Dict[str, Any]) -> Review:
    return Review(
        id=row["id"],
        business_id=row["business_id"],
        source=row["source"],
        source_review_id=row["source_review_id"],
        author=row["author"],
        rating=row["rating"],
        comment=row["comment"],
        created_at=row["created_at"],
        flagged=row["flagged"],
        displayed=row["displayed"],
        keywords=list(row["keywords"] or []),
        imported_at=row["imported_at"],
    )


def _row_to_job(row: Dict[str, Any]) -> IngestionJob:
    return IngestionJob(**{key: row[key] for key in _JOB_COLUMNS.replace(" ", "").split(",")})


def _row_to_ranking(row: Dict[str, Any]) -> RankingRecord:
    values = {key: row[key] for key in _RANKING_COLUMNS.replace(" ", "").split(",")}
    values["keywords"] = list(values["keywords"] or [])
    return RankingRecord(**values)


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class PostgresStore(ReviewStore):
    """Review store on top of the shared psycopg2 pool.

    Inside ``business_lock`` every query of the locking thread runs on the connection
    that holds the advisory lock, so an import never needs a second pooled connection.
    """

    def __init__(self) -> None:
        self._local = threading.local()

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        held = getattr(self._local, "conn", None)
        if held is None:
            with get_connection() as conn:
                yield conn
            return
        try:
            yield held
        except Exception:
            held.rollback()
            raise

    def _fetch(self, sql: str, params: Any = None) -> List[Dict[str, Any]]:
        with self._connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
        return rows

    def _write(self, sql: str, params: Any = None) -> Optional[Dict[str, Any]]:
        try:
            with self._connection() as conn:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, params)
                    row = cur.fetchone() if cur.description else None
                conn.commit()
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc).strip()) from exc
        return row

    # businesses

    def add_business(self, business: Business) -> Business:
        params = _business_params(business)
        self._write(_UPSERT_BUSINESS, params)
        logger.debug("Upserted business %s", business.id)
        return self.get_business(business.id) or business

    def get_business(self, business_id: str) -> Optional[Business]:
        rows = self._fetch(f"SELECT {_BUSINESS_COLUMNS} FROM businesses WHERE id = %s", (business_id,))
        return _row_to_business(rows[0]) if rows else None

    def businesses_for_hints(self, place_ids=(), business_ids=(), phones=(), name_keys=()) -> List[Business]:
        params = {
            "place_ids": list(place_ids),
            "ids": list(business_ids),
            "phones": list(phones),
            "name_keys": list(name_keys),
        }
        if not any(params.values()):
            return []
        sql = (
            f"SELECT {_BUSINESS_COLUMNS} FROM businesses WHERE active AND ("
            "place_id = ANY(%(place_ids)s::text[]) OR id = ANY(%(ids)s::text[]) "
            "OR phone_digits = ANY(%(phones)s::text[]) OR name_keys && %(name_keys)s::text[])"
        )
        return [_row_to_business(row) for row in self._fetch(sql, params)]

    def mark_synced(self, business_id: str, synced_at: datetime) -> None:
        self._write("UPDATE businesses SET last_synced_at = %s WHERE id = %s", (synced_at, business_id))

    def businesses_due_for_sync(self, synced_before: datetime, limit: int) -> List[Business]:
        sql = (
            f"SELECT {_BUSINESS_COLUMNS} FROM businesses "
            "WHERE active AND place_id IS NOT NULL AND (last_synced_at IS NULL OR last_synced_at < %s) "
            "ORDER BY last_synced_at NULLS FIRST LIMIT %s"
        )
        return [_row_to_business(row) for row in self._fetch(sql, (synced_before, limit))]

    def unranked_businesses(self, limit: int = 1000) -> List[Business]:
        sql = (
            f"SELECT {', '.join('b.' + c.strip() for c in _BUSINESS_COLUMNS.split(','))} "
            "FROM businesses b LEFT JOIN rankings r ON r.business_id = b.id "
            "WHERE b.active AND r.business_id IS NULL LIMIT %s"
        )
        return [_row_to_business(row) for row in self._fetch(sql, (limit,))]

    # reviews

    def existing_review_keys(self, keys: Iterable[ReviewKey]) -> Set[ReviewKey]:
        unique = sorted(set(keys))
        found: Set[ReviewKey] = set()
        sql = (
            "SELECT source, source_review_id FROM reviews "
            "WHERE (source, source_review_id) IN (SELECT * FROM unnest(%s::text[], %s::text[]))"
        )
        for chunk in _chunks(unique, KEY_CHUNK_SIZE):
            sources = [key[0] for key in chunk]
            ids = [key[1] for key in chunk]
            for row in self._fetch(sql, (sources, ids)):
                found.add((row["source"], row["source_review_id"]))
        return found

    def reviews_for_business(self, business_id: str) -> List[Review]:
        sql = f"SELECT {_REVIEW_COLUMNS} FROM reviews WHERE business_id = %s ORDER BY created_at"
        return [_row_to_review(row) for row in self._fetch(sql, (business_id,))]

    def insert_review(self, review: Review) -> bool:
        params = {
            "id": review.id or new_id(),
            "business_id": review.business_id,
            "source": review.source,
            "source_review_id": review.source_review_id,
            "author": review.author,
            "rating": review.rating,
            "comment": review.comment,
            "created_at": review.created_at,
            "flagged": review.flagged,
            "displayed": review.displayed,
            "keywords": list(review.keywords),
            "imported_at": review.imported_at,
        }
        return self._write(_INSERT_REVIEW, params) is not None

    def flag_reviews(self, review_ids: Iterable[str], keyword: str) -> int:
        ids = list(review_ids)
        if not ids:
            return 0
        sql = (
            "UPDATE reviews SET flagged = TRUE, displayed = FALSE, "
            "keywords = CASE WHEN %(keyword)s = ANY(keywords) THEN keywords "
            "ELSE array_append(keywords, %(keyword)s) END "
            "WHERE id = ANY(%(ids)s::text[]) RETURNING id"
        )
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, {"keyword": keyword, "ids": ids})
                flagged = cur.rowcount
            conn.commit()
        return flagged

    def recount_business(self, business_id: str) -> Tuple[int, float]:
        row = self._write(_RECOUNT_BUSINESS, {"business_id": business_id})
        if row is None:
            return 0, 0.0
        return int(row["review_count"]), float(row["rating"])

    def businesses_with_reviews_since(self, since: datetime) -> List[str]:
        rows = self._fetch(
            "SELECT DISTINCT business_id FROM reviews WHERE COALESCE(imported_at, created_at) >= %s ORDER BY business_id",
            (since,),
        )
        return [row["business_id"] for row in rows]

    @contextmanager
    def business_lock(self, business_id: str) -> Iterator[None]:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_lock(hashtext(%s))", (business_id,))
            conn.commit()
            previous = getattr(self._local, "conn", None)
            self._local.conn = conn
            try:
                yield
            finally:
                self._local.conn = previous
                conn.rollback()
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_advisory_unlock(hashtext(%s))", (business_id,))
                conn.commit()

    # ingestion jobs

    def find_open_job(self, business_id: str) -> Optional[IngestionJob]:
        sql = (
            f"SELECT {_JOB_COLUMNS} FROM ingestion_jobs "
            "WHERE business_id = %s AND status IN ('pending', 'processing') LIMIT 1"
        )
        rows = self._fetch(sql, (business_id,))
        return _row_to_job(rows[0]) if rows else None

    def insert_job(self, job: IngestionJob) -> IngestionJob:
        if not job.id:
            job.id = new_id()
        if self._write(_INSERT_JOB, _job_params(job)) is None:
            existing = self.find_open_job(job.business_id)
            if existing is not None:
                return existing
        return job

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        rows = self._fetch(f"SELECT {_JOB_COLUMNS} FROM ingestion_jobs WHERE id = %s", (job_id,))
        return _row_to_job(rows[0]) if rows else None

    def jobs_by_status(self, status: str, limit: Optional[int] = None) -> List[IngestionJob]:
        sql = f"SELECT {_JOB_COLUMNS} FROM ingestion_jobs WHERE status = %s ORDER BY priority DESC, requested_at"
        params: Tuple[Any, ...] = (status,)
        if limit is not None:
            sql += " LIMIT %s"
            params = (status, limit)
        return [_row_to_job(row) for row in self._fetch(sql, params)]

    def count_jobs_by_status(self) -> Dict[str, int]:
        rows = self._fetch("SELECT status, COUNT(*) AS total FROM ingestion_jobs GROUP BY status")
        return {row["status"]: int(row["total"]) for row in rows}

    def claim_job(self, job_id: str, started_at: datetime, max_processing: int) -> bool:
        # the transaction-scoped advisory lock serialises claims across workers
        try:
            with self._connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_advisory_xact_lock(%s)", (QUEUE_LOCK_ID,))
                    cur.execute(
                        _CLAIM_JOB,
                        {"id": job_id, "started_at": started_at, "max_processing": max_processing},
                    )
                    claimed = cur.fetchone() is not None
                conn.commit()
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc).strip()) from exc
        return claimed

    def update_job(self, job: IngestionJob) -> None:
        self._write(_UPDATE_JOB, _job_params(job))

    def settle_job(self, job: IngestionJob, claimed_at: Optional[datetime]) -> bool:
        params = _job_params(job)
        params["claimed_at"] = claimed_at
        return self._write(_SETTLE_JOB, params) is not None

    # rankings

    def get_ranking(self, business_id: str) -> Optional[RankingRecord]:
        rows = self._fetch(f"SELECT {_RANKING_COLUMNS} FROM rankings WHERE business_id = %s", (business_id,))
        return _row_to_ranking(rows[0]) if rows else None

    def save_ranking(self, record: RankingRecord) -> None:
        params = {key: getattr(record, key) for key in _RANKING_COLUMNS.replace(" ", "").split(",")}
        params["keywords"] = list(record.keywords)
        self._write(_UPSERT_RANKING, params)

    def rankings_for_cohort(self, category: str, city: str) -> List[RankingRecord]:
        return self.list_rankings(category=category, city=city)

    def list_rankings(self, category: Optional[str] = None, city: Optional[str] = None) -> List[RankingRecord]:
        clauses, params = [], []
        if category is not None:
            clauses.append("category = %s")
            params.append(category)
        if city is not None:
            clauses.append("city = %s")
            params.append(city)
        sql = f"SELECT {_RANKING_COLUMNS} FROM rankings"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY overall_score DESC"
        return [_row_to_ranking(row) for row in self._fetch(sql, params)]


def build_store(settings) -> ReviewStore:
    """PostgreSQL when ``DATABASE_URL`` is configured, otherwise a process-local memory store."""
    if settings.database_url:
        init_pool()
        return PostgresStore()
    logger.warning("Using the in-memory store; nothing will be persisted.")
    return MemoryStore()
