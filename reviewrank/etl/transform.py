"""Utilities for transforming scrape provider review payloads into review records."""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from reviewrank.core.models import SOURCE_GMB_API, ReviewRecord

logger = logging.getLogger(__name__)

MICROSECOND_TIMESTAMP_FLOOR = 2_000_000_000_000
SECOND_TIMESTAMP_CEILING = 100_000_000_000


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_author(raw: Dict[str, Any]) -> str:
    user = raw.get("user") if isinstance(raw.get("user"), dict) else {}
    author = _first(raw, "user_name", "author_name") or user.get("name")
    return str(author).strip() if author else "Anonymous"


def parse_comment(raw: Dict[str, Any]) -> str:
    text = _first(raw, "snippet", "text", "translated_snippet")
    if isinstance(text, dict):
        text = text.get("text") or ""
    return str(text or "").strip()


def parse_rating(value: Any) -> Optional[int]:
    try:
        rating = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    if rating < 1:
        return None
    return min(rating, 5)


def parse_timestamp(raw: Dict[str, Any], fallback: Optional[datetime] = None) -> datetime:
    """Accept epoch milliseconds, epoch microseconds, epoch seconds or ISO 8601 strings."""
    stamp = _first(raw, "publishedAtDate_timestamp", "timestamp")
    if stamp is not None:
        try:
            value = float(stamp)
            if value > MICROSECOND_TIMESTAMP_FLOOR:
                value /= 1000
            if value > SECOND_TIMESTAMP_CEILING:
                value /= 1000
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            logger.debug("Unparseable review timestamp %r", stamp)

    text = _first(raw, "publishedAtDate", "iso_date", "iso_date_of_last_edit")
    if isinstance(text, str):
        try:
            parsed = datetime.fromisoformat(text.strip().replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            logger.debug("Unparseable review date %r", text)

    return fallback or datetime.now(timezone.utc)


def fallback_review_id(place_id: Optional[str], author: str, comment: str) -> str:
    digest = hashlib.sha1(f"{place_id}|{author}|{comment}".encode("utf-8")).hexdigest()[:20]
    return f"geo_{digest}"


def to_review_record(
    raw: Dict[str, Any],
    *,
    place_id: Optional[str],
    business_id: Optional[str] = None,
    source: str = SOURCE_GMB_API,
    fetched_at: Optional[datetime] = None,
) -> Optional[ReviewRecord]:
    """Shape one provider review; returns ``None`` for records without a usable rating."""
    rating = parse_rating(raw.get("rating"))
    if rating is None:
        return None

    author = parse_author(raw)
    comment = parse_comment(raw)
    user = raw.get("user") if isinstance(raw.get("user"), dict) else {}
    review_id = _first(raw, "review_id", "reviewId") or fallback_review_id(place_id, author, comment)

    return ReviewRecord(
        source_review_id=str(review_id),
        rating=rating,
        comment=comment,
        author=author,
        created_at=parse_timestamp(raw, fallback=fetched_at),
        source=source,
        place_id=place_id,
        business_id=business_id,
        source_url=_first(raw, "user_link", "link") or user.get("link"),
        raw_snapshot=raw,
    )


def to_review_records(
    raw_reviews: Iterable[Dict[str, Any]],
    *,
    place_id: Optional[str],
    business_id: Optional[str] = None,
    source: str = SOURCE_GMB_API,
) -> Tuple[List[ReviewRecord], int]:
    """Shape a fetched page set, dropping blank-comment and unrated reviews.

    Returns the kept records and how many were skipped.
    """
    fetched_at = datetime.now(timezone.utc)
    records: List[ReviewRecord] = []
    skipped = 0
    for raw in raw_reviews:
        if not isinstance(raw, dict):
            skipped += 1
            continue
        record = to_review_record(
            raw, place_id=place_id, business_id=business_id, source=source, fetched_at=fetched_at
        )
        if record is None or not record.comment:
            skipped += 1
            continue
        records.append(record)
    return records, skipped
