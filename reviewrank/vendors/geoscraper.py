"""Client for the GeoScraper Google Maps review endpoint."""

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from reviewrank.core.errors import SourceRequestError, TransientSourceFailure

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_REVIEW_URL = "https://api.geoscraper.net/google/map/review"

MAX_RETRIES = 3
BASE_DELAY_SECONDS = 1.0
NETWORK_RETRY_DELAY_SECONDS = 1.0
PAGE_DELAY_SECONDS = 0.5
MAX_PAGES = 50
MIN_TOKEN_LENGTH = 10


def split_page(payload: Any) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """Separate the reviews of one response page from its pagination token.

    The endpoint returns a JSON array of reviews whose last element, when more
    pages exist, is the token for the next page instead of a review.
    """
    if isinstance(payload, dict):
        for key in ("data", "reviews"):
            if isinstance(payload.get(key), list):
                return [item for item in payload[key] if isinstance(item, dict)], None
        return [], None
    if not isinstance(payload, list) or not payload:
        return [], None

    last = payload[-1]
    token: Optional[str] = None
    if isinstance(last, str) and len(last) > MIN_TOKEN_LENGTH:
        token = last
    elif isinstance(last, dict) and not any(last.get(k) for k in ("rating", "user_name", "snippet")):
        token = last.get("token") or last.get("next_page_token") or last.get("nextToken")
        if token is not None and not isinstance(token, str):
            token = json.dumps(token)

    items = payload[:-1] if token else payload
    return [item for item in items if isinstance(item, dict)], token


class GeoScraperClient:
    source = "geoscraper"

    def __init__(
        self,
        token: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY_SECONDS,
        page_delay: float = PAGE_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.token = token
        self.session = session or _SESSION
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.page_delay = page_delay
        self._sleep = sleep

    def request_page(self, place_id: str, page_token: Optional[str] = None) -> Any:
        """POST one page request, retrying rate limits, server errors and network failures."""
        if not self.token:
            raise SourceRequestError("GEOSCRAPER_API_TOKEN is not configured")

        body: Dict[str, Any] = {"data_id": place_id, "sort_by": "newest", "hl": "en"}
        if page_token:
            body["token"] = page_token
        headers = {"Content-Type": "application/json", "X-Berserker-Token": self.token}

        attempt = 0
        while True:
            try:
                response = self.session.post(_REVIEW_URL, json=body, headers=headers, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as exc:
                if attempt >= self.max_retries:
                    raise TransientSourceFailure(f"GeoScraper network failure for {place_id}: {exc}") from exc
                logger.warning(
                    "GeoScraper network error for %s, retry %d/%d: %s", place_id, attempt + 1, self.max_retries, exc
                )
                self._sleep(NETWORK_RETRY_DELAY_SECONDS)
                attempt += 1
                continue

            status = response.status_code
            if status < 400:
                return response.json()

            message = f"GeoScraper request failed: {status} - {response.text[:200]}"
            if status == 404:
                raise SourceRequestError(f"Unknown place id {place_id}: {message}", status)
            if status != 429 and status < 500:
                raise SourceRequestError(message, status)
            if attempt >= self.max_retries:
                logger.error("GeoScraper exhausted retries for place_id=%s", place_id)
                raise TransientSourceFailure(message, status)

            delay = self.base_delay * (2 ** attempt)
            if status == 429:
                delay *= 2
                logger.warning(
                    "GeoScraper rate limit hit, waiting %.1fs before retry %d/%d", delay, attempt + 1, self.max_retries
                )
            else:
                logger.warning(
                    "GeoScraper server error %s, waiting %.1fs before retry %d/%d",
                    status,
                    delay,
                    attempt + 1,
                    self.max_retries,
                )
            self._sleep(delay)
            attempt += 1

    def fetch_reviews(self, place_id: str, max_reviews: int = 200) -> List[Dict[str, Any]]:
        """Follow page tokens until ``max_reviews`` raw reviews are collected or pages run out."""
        reviews: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        pages = 0
        while pages < MAX_PAGES and len(reviews) < max_reviews:
            pages += 1
            page, page_token = split_page(self.request_page(place_id, page_token))
            if not page:
                logger.info("No reviews on page %d for %s, stopping", pages, place_id)
                break
            reviews.extend(page)
            if not page_token or len(reviews) >= max_reviews:
                break
            self._sleep(self.page_delay)

        logger.info("Fetched %d reviews for %s over %d page(s)", min(len(reviews), max_reviews), place_id, pages)
        return reviews[:max_reviews]
