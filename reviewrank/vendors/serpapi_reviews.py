"""SerpAPI Google Maps Reviews helpers."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

from serpapi import GoogleSearch

from reviewrank.core.errors import SourceRequestError, TransientSourceFailure

logger = logging.getLogger(__name__)

RETRY_LIMIT = 2
RETRY_DELAY_SECONDS = 1.2
PAGE_DELAY_SECONDS = 0.5
MAX_PAGES = 50


def build_review_params(place_id: str, api_key: str, next_page_token: Optional[str] = None) -> Dict[str, Any]:
    """Construct SerpAPI request parameters for the Google Maps Reviews engine."""
    if not place_id or not place_id.strip():
        raise ValueError("A place id must be provided for review lookups.")

    place_id = place_id.strip()
    params: Dict[str, Any] = {
        "engine": "google_maps_reviews",
        "api_key": api_key,
        "sort_by": "newestFirst",
        "hl": "en",
    }
    # "0x...:0x..." identifiers are Maps data ids; anything else is a Places place id
    if ":" in place_id:
        params["data_id"] = place_id
    else:
        params["place_id"] = place_id
    if next_page_token:
        params["next_page_token"] = next_page_token
    return params


class SerpApiReviewsClient:
    source = "serpapi"

    def __init__(
        self,
        api_key: str,
        *,
        search_factory: Callable[[Dict[str, Any]], Any] = GoogleSearch,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self._search_factory = search_factory
        self._sleep = sleep

    def request_page(self, place_id: str, next_page_token: Optional[str] = None) -> Dict[str, Any]:
        """Call SerpAPI and return the raw JSON response with retry logic."""
        if not self.api_key:
            raise SourceRequestError("SERPAPI_API_KEY is not configured")
        params = build_review_params(place_id, self.api_key, next_page_token)

        attempt = 0
        while True:
            attempt += 1
            try:
                logger.info("Calling SerpAPI reviews (attempt %s) for place_id=%s", attempt, place_id)
                data = self._search_factory(params).get_dict()
            except Exception as exc:  # noqa: BLE001
                logger.warning("SerpAPI request failed (attempt %s/%s): %s", attempt, RETRY_LIMIT + 1, exc)
                if attempt > RETRY_LIMIT:
                    logger.error("SerpAPI request exhausted retries for place_id=%s", place_id)
                    raise TransientSourceFailure(f"SerpAPI request failed for {place_id}: {exc}") from exc
                self._sleep(RETRY_DELAY_SECONDS + random.uniform(0, 0.8))
                continue

            if not data:
                raise TransientSourceFailure("SerpAPI returned an empty payload.")
            if "error" in data:
                message = data.get("error") or data
                raise SourceRequestError(f"SerpAPI returned an error response: {message}")
            return data

    def fetch_reviews(self, place_id: str, max_reviews: int = 200) -> List[Dict[str, Any]]:
        reviews: List[Dict[str, Any]] = []
        token: Optional[str] = None
        pages = 0
        while pages < MAX_PAGES and len(reviews) < max_reviews:
            pages += 1
            data = self.request_page(place_id, token)
            page = [item for item in data.get("reviews") or [] if isinstance(item, dict)]
            if not page:
                break
            reviews.extend(page)
            token = (data.get("serpapi_pagination") or {}).get("next_page_token")
            if not token or len(reviews) >= max_reviews:
                break
            self._sleep(PAGE_DELAY_SECONDS)

        logger.info("Fetched %d reviews for %s over %d page(s)", min(len(reviews), max_reviews), place_id, pages)
        return reviews[:max_reviews]
