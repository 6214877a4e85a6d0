"""Pure scoring functions for business rankings.

A business is scored from its review count and average rating relative to the
norms of its category:

    total = (quality * confidence + volume) * quality_multiplier + tier_bonus

Confidence damps the quality score of businesses with few reviews so that a
handful of perfect reviews cannot outrank sustained volume.
"""

import math
from dataclasses import dataclass
from typing import Optional

from reviewrank.core.config import CategoryProfile, ScoringConfig

DEFAULT_SCORING = ScoringConfig()


@dataclass(frozen=True)
class ScoreBreakdown:
    overall_score: float
    quality_score: float
    volume_score: float
    tier_bonus: float
    quality_multiplier: float
    confidence: float


def calculate_confidence(
    review_count: int, profile: CategoryProfile, config: ScoringConfig = DEFAULT_SCORING
) -> float:
    """Statistical trust in the average rating, in ``[0, 1)``. Non-decreasing in ``review_count``."""
    if review_count <= 0:
        return 0.0
    minimum = profile.min_credible
    if review_count < minimum:
        return review_count / minimum * config.low_confidence_cap

    span_end = minimum * config.building_span_multiplier
    if review_count < span_end:
        progress = (review_count - minimum) / (span_end - minimum)
        return config.low_confidence_cap + progress * (config.building_confidence_cap - config.low_confidence_cap)

    # approaches 1.0 without reaching it
    remaining = 1.0 - config.building_confidence_cap
    return config.building_confidence_cap + remaining * (
        1.0 - math.exp(-(review_count - span_end) / config.asymptote_scale)
    )


def quality_score(average_rating: float, confidence: float, config: ScoringConfig = DEFAULT_SCORING) -> float:
    """Base points for the average rating plus a consistency bonus for well-established excellence."""
    base = (average_rating / 5.0) * config.base_quality_points
    if average_rating < config.consistency_min_rating:
        return base
    bonus = confidence * config.consistency_bonus_points * (average_rating - config.consistency_floor_rating)
    return base + min(config.consistency_bonus_points, bonus)


def volume_score(review_count: int, profile: CategoryProfile, config: ScoringConfig = DEFAULT_SCORING) -> float:
    """Reward review volume relative to what is normal for the category, capped at ``volume_max_points``."""
    if review_count <= 0 or profile.expected_annual <= 0:
        return 0.0
    normalized = review_count / profile.expected_annual

    if normalized < config.volume_low_cutoff:
        return normalized / config.volume_low_cutoff * config.volume_low_points
    if normalized <= config.volume_high_cutoff:
        slope = (config.volume_mid_points - config.volume_low_points) / (
            config.volume_high_cutoff - config.volume_low_cutoff
        )
        return config.volume_low_points + (normalized - config.volume_low_cutoff) * slope

    headroom = config.volume_max_points - config.volume_mid_points
    return min(
        config.volume_max_points,
        config.volume_mid_points + headroom * math.log10(normalized / config.volume_high_cutoff),
    )


def tier_bonus(tier: Optional[str], config: ScoringConfig = DEFAULT_SCORING) -> float:
    return float(config.tier_bonuses.get((tier or "").lower(), 0.0))


def clamp_multiplier(value: Optional[float], config: ScoringConfig = DEFAULT_SCORING) -> float:
    if value is None:
        return 1.0
    return max(0.0, min(float(value), config.max_quality_multiplier))


def score_business(
    review_count: int,
    average_rating: float,
    tier: Optional[str],
    profile: CategoryProfile,
    quality_multiplier: Optional[float] = None,
    config: ScoringConfig = DEFAULT_SCORING,
) -> ScoreBreakdown:
    confidence = calculate_confidence(review_count, profile, config)
    quality = quality_score(average_rating, confidence, config) if review_count > 0 else 0.0
    volume = volume_score(review_count, profile, config)
    multiplier = clamp_multiplier(quality_multiplier, config)
    bonus = tier_bonus(tier, config)
    total = (quality * confidence + volume) * multiplier + bonus
    return ScoreBreakdown(
        overall_score=round(total, 2),
        quality_score=round(quality, 2),
        volume_score=round(volume, 2),
        tier_bonus=bonus,
        quality_multiplier=multiplier,
        confidence=round(confidence, 4),
    )
