"""Application configuration helpers."""

import json
import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

from reviewrank.core.errors import ConfigurationFailure

logger = logging.getLogger(__name__)

MAX_IMPORT_BATCH_SIZE = 1000


@dataclass(frozen=True)
class CategoryProfile:
    expected_annual: int
    min_credible: int


DEFAULT_PROFILE_KEY = "default"

CATEGORY_PROFILES: Dict[str, CategoryProfile] = {
    # high frequency services
    "pest-control": CategoryProfile(expected_annual=200, min_credible=15),
    "landscaping": CategoryProfile(expected_annual=150, min_credible=15),
    "cleaning": CategoryProfile(expected_annual=180, min_credible=20),
    # medium frequency services
    "hvac": CategoryProfile(expected_annual=80, min_credible=10),
    "plumbing": CategoryProfile(expected_annual=60, min_credible=10),
    "electrical": CategoryProfile(expected_annual=50, min_credible=10),
    # low frequency services
    "roofing": CategoryProfile(expected_annual=30, min_credible=5),
    "remodeling": CategoryProfile(expected_annual=25, min_credible=5),
    "solar": CategoryProfile(expected_annual=20, min_credible=5),
    DEFAULT_PROFILE_KEY: CategoryProfile(expected_annual=50, min_credible=10),
}


@dataclass(frozen=True)
class ScoringConfig:
    """Ranking constants. Empirically chosen; adjust after calibration against real outcomes."""

    low_confidence_cap: float = 0.7
    building_confidence_cap: float = 0.95
    building_span_multiplier: int = 3
    asymptote_scale: float = 50.0
    base_quality_points: float = 80.0
    consistency_bonus_points: float = 20.0
    consistency_min_rating: float = 4.5
    consistency_floor_rating: float = 4.0
    volume_low_cutoff: float = 0.5
    volume_high_cutoff: float = 2.0
    volume_low_points: float = 5.0
    volume_mid_points: float = 12.0
    volume_max_points: float = 15.0
    max_quality_multiplier: float = 1.15
    tier_bonuses: Mapping[str, float] = field(
        default_factory=lambda: {"free": 0.0, "starter": 1.0, "pro": 2.0, "power": 3.0}
    )


@dataclass(frozen=True)
class DuplicateWeights:
    same_author_and_rating: float = 0.3
    very_similar_text: float = 0.5
    similar_text: float = 0.3
    very_similar_cutoff: float = 0.9
    similar_cutoff: float = 0.8
    within_one_day: float = 0.2
    within_one_week: float = 0.1
    threshold: float = 0.7


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    scrape_provider: str = "geoscraper"
    geoscraper_api_token: str = ""
    serpapi_api_key: str = ""
    worker_port: int = 9000
    max_connections: int = 3
    stuck_threshold_seconds: int = 300
    max_retries: int = 3
    default_priority: int = 5
    import_batch_size: int = 500
    failure_rate_threshold: float = 0.2
    sync_max_reviews: int = 200
    source_timeout_seconds: int = 30
    batch_pacing_seconds: float = 0.1
    ranking_refresh_hours: int = 24
    review_refresh_days: int = 7
    category_profiles_file: Optional[str] = None


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer; using %s", name, raw, default)
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number; using %s", name, raw, default)
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    scrape_provider = os.getenv("SCRAPE_PROVIDER", "geoscraper").strip().lower() or "geoscraper"
    geoscraper_api_token = os.getenv("GEOSCRAPER_API_TOKEN", "")
    serpapi_api_key = os.getenv("SERPAPI_API_KEY", "")

    batch_size = _int_env("IMPORT_BATCH_SIZE", 500)
    if not 1 <= batch_size <= MAX_IMPORT_BATCH_SIZE:
        clamped = min(max(batch_size, 1), MAX_IMPORT_BATCH_SIZE)
        logger.warning("IMPORT_BATCH_SIZE=%s out of range; using %s", batch_size, clamped)
        batch_size = clamped

    if not database_url:
        logger.warning("DATABASE_URL is not set; falling back to the in-memory store.")
    if scrape_provider == "geoscraper" and not geoscraper_api_token:
        logger.warning("GEOSCRAPER_API_TOKEN is not configured; review fetches will fail.")
    if scrape_provider == "serpapi" and not serpapi_api_key:
        logger.warning("SERPAPI_API_KEY is not configured; review fetches will fail.")

    return Settings(
        database_url=database_url,
        scrape_provider=scrape_provider,
        geoscraper_api_token=geoscraper_api_token,
        serpapi_api_key=serpapi_api_key,
        worker_port=_int_env("WORKER_PORT", 9000),
        max_connections=max(1, _int_env("QUEUE_MAX_CONNECTIONS", 3)),
        stuck_threshold_seconds=_int_env("QUEUE_STUCK_THRESHOLD_SECONDS", 300),
        max_retries=max(1, _int_env("QUEUE_MAX_RETRIES", 3)),
        default_priority=_int_env("QUEUE_DEFAULT_PRIORITY", 5),
        import_batch_size=batch_size,
        failure_rate_threshold=_float_env("IMPORT_FAILURE_RATE_THRESHOLD", 0.2),
        sync_max_reviews=_int_env("SYNC_MAX_REVIEWS", 200),
        source_timeout_seconds=_int_env("SOURCE_TIMEOUT_SECONDS", 30),
        batch_pacing_seconds=_float_env("BATCH_PACING_SECONDS", 0.1),
        ranking_refresh_hours=_int_env("RANKING_REFRESH_HOURS", 24),
        review_refresh_days=_int_env("REVIEW_REFRESH_DAYS", 7),
        category_profiles_file=os.getenv("CATEGORY_PROFILES_FILE") or None,
    )


def parse_category_profiles(payload: Mapping[str, Mapping[str, object]]) -> Dict[str, CategoryProfile]:
    """Validate a ``{category: {expected_annual, min_credible}}`` mapping."""
    profiles: Dict[str, CategoryProfile] = {}
    for key, values in payload.items():
        try:
            expected = int(values["expected_annual"])
            minimum = int(values["min_credible"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationFailure(f"category profile {key!r} is malformed: {exc}") from exc
        if expected <= 0 or minimum <= 0:
            raise ConfigurationFailure(f"category profile {key!r} must use positive values")
        profiles[str(key).strip().lower()] = CategoryProfile(expected_annual=expected, min_credible=minimum)
    return profiles


@lru_cache(maxsize=1)
def load_category_profiles() -> Dict[str, CategoryProfile]:
    """Built-in profiles, extended by ``CATEGORY_PROFILES_FILE`` when it is readable and well formed."""
    profiles = dict(CATEGORY_PROFILES)
    path = get_settings().category_profiles_file
    if not path:
        return profiles
    try:
        with open(path, "r", encoding="utf-8") as fh:
            profiles.update(parse_category_profiles(json.load(fh)))
    except (OSError, ValueError, ConfigurationFailure) as exc:
        logger.warning("Ignoring category profiles file %s: %s", path, exc)
    return profiles


def get_category_profile(
    category: Optional[str], profiles: Optional[Mapping[str, CategoryProfile]] = None
) -> CategoryProfile:
    """Return the profile for ``category``, substituting the default profile when it is unknown."""
    table = profiles if profiles is not None else load_category_profiles()
    key = (category or "").strip().lower()
    profile = table.get(key)
    if profile is None:
        logger.warning("No category profile for %r; using the default profile", category)
        profile = table.get(DEFAULT_PROFILE_KEY, CATEGORY_PROFILES[DEFAULT_PROFILE_KEY])
    return profile
