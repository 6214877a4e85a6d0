"""Scrape provider selection."""

from typing import Any, Dict, List, Protocol

from reviewrank.core.config import Settings
from reviewrank.core.errors import ConfigurationFailure
from reviewrank.vendors.geoscraper import GeoScraperClient
from reviewrank.vendors.serpapi_reviews import SerpApiReviewsClient


class ReviewProvider(Protocol):
    source: str

    def fetch_reviews(self, place_id: str, max_reviews: int = 200) -> List[Dict[str, Any]]: ...


def get_provider(settings: Settings) -> ReviewProvider:
    if settings.scrape_provider == "geoscraper":
        return GeoScraperClient(settings.geoscraper_api_token, timeout=settings.source_timeout_seconds)
    if settings.scrape_provider == "serpapi":
        return SerpApiReviewsClient(settings.serpapi_api_key)
    raise ConfigurationFailure(f"Unknown SCRAPE_PROVIDER {settings.scrape_provider!r}")
