from datetime import datetime, timedelta, timezone

import pytest

from reviewrank.core.config import CATEGORY_PROFILES
from reviewrank.core.models import Business, Review
from reviewrank.core.store import MemoryStore
from reviewrank.ranking.classifier import NeutralClassifier, summarize
from reviewrank.ranking.engine import RankingEngine

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def add_reviews(store, business_id, ratings, *, imported_at=NOW, prefix=None):
    prefix = prefix or business_id
    for index, rating in enumerate(ratings):
        store.insert_review(
            Review(
                id=f"{prefix}-{index}",
                business_id=business_id,
                source="gmb_api",
                source_review_id=f"{prefix}-{index}",
                author=f"Author {index}",
                rating=rating,
                comment=f"Review number {index}",
                created_at=NOW - timedelta(days=index),
                imported_at=imported_at,
            )
        )


@pytest.fixture
def store():
    store = MemoryStore()
    for business_id, category in (("alpha", "roofing"), ("bravo", "roofing"), ("charlie", "roofing"), ("pipes", "plumbing")):
        store.add_business(Business(id=business_id, name=business_id.title(), city="Austin", category=category))
    add_reviews(store, "alpha", [5] * 5)
    add_reviews(store, "bravo", [4] * 10)
    add_reviews(store, "charlie", [3])
    add_reviews(store, "pipes", [4, 5])
    return store


@pytest.fixture
def engine(store):
    return RankingEngine(store, profiles=CATEGORY_PROFILES, clock=lambda: NOW)


def test_refresh_ranks_each_cohort(engine, store):
    summary = engine.refresh(business_ids=["alpha", "bravo", "charlie", "pipes"])

    assert summary == {"recomputed": 4, "failed": 0, "cohorts": 2}
    roofing = engine.get_top_ranked(category="roofing", city="Austin")
    assert [(r.business_id, r.rank_position, r.total_in_cohort) for r in roofing] == [
        ("alpha", 1, 3),
        ("bravo", 2, 3),
        ("charlie", 3, 3),
    ]
    pipes = engine.get_business_ranking("pipes")
    assert (pipes.rank_position, pipes.total_in_cohort) == (1, 1)
    assert pipes.previous_position is None


def test_recompute_records_breakdown(engine):
    record = engine.recompute_business("alpha")

    assert record.reviews_analyzed == 5
    assert record.confidence == 0.7
    assert record.quality_score == 94.0
    assert record.overall_score == pytest.approx(67.47, abs=0.01)
    assert record.updated_at == NOW


def test_rerank_tracks_movement(engine, store):
    engine.refresh(business_ids=["alpha", "bravo", "charlie"])
    add_reviews(store, "charlie", [5] * 30, prefix="charlie-new")

    engine.refresh(business_ids=["charlie"])

    charlie = engine.get_business_ranking("charlie")
    alpha = engine.get_business_ranking("alpha")
    assert (charlie.previous_position, charlie.rank_position, charlie.movement) == (3, 1, 2)
    assert (alpha.previous_position, alpha.rank_position, alpha.movement) == (1, 2, -1)

    movers = engine.get_biggest_movers(limit=2)
    assert movers[0].business_id == "charlie"
    assert len(movers) == 2


def test_hidden_reviews_are_not_scored(engine, store):
    store.flag_reviews(["alpha-0", "alpha-1"], "duplicate_removed")

    assert engine.recompute_business("alpha").reviews_analyzed == 3


def test_business_moving_city_leaves_old_cohort_consistent(engine, store):
    engine.refresh(business_ids=["alpha", "bravo", "charlie"])
    store.add_business(Business(id="bravo", name="Bravo", city="Dallas", category="roofing"))

    engine.refresh(business_ids=["bravo"])

    austin = engine.get_top_ranked(category="roofing", city="Austin")
    assert [(r.business_id, r.rank_position, r.total_in_cohort) for r in austin] == [
        ("alpha", 1, 2),
        ("charlie", 2, 2),
    ]
    bravo = engine.get_business_ranking("bravo")
    assert (bravo.city, bravo.rank_position, bravo.previous_position) == ("Dallas", 1, None)


def test_businesses_needing_refresh(engine, store):
    engine.refresh(business_ids=["alpha", "bravo", "charlie", "pipes"])
    store.add_business(Business(id="delta", name="Delta", city="Austin", category="roofing"))
    add_reviews(store, "bravo", [5], imported_at=NOW - timedelta(hours=1), prefix="bravo-late")

    assert engine.businesses_needing_refresh(since=NOW - timedelta(minutes=90)) == ["alpha", "bravo", "charlie", "delta", "pipes"]
    assert engine.businesses_needing_refresh(since=NOW + timedelta(minutes=1)) == ["delta"]


def test_unknown_category_uses_default_profile(store, caplog):
    store.add_business(Business(id="zen", name="Zen Yoga", city="Austin", category="yoga"))
    add_reviews(store, "zen", [5] * 10)
    engine = RankingEngine(store, profiles=CATEGORY_PROFILES, clock=lambda: NOW)

    with caplog.at_level("WARNING"):
        record = engine.recompute_business("zen")

    assert record.confidence == 0.7
    assert "No category profile" in caplog.text


def test_unknown_business_is_skipped(engine):
    assert engine.recompute_business("missing") is None
    assert engine.refresh(business_ids=["missing"]) == {"recomputed": 0, "failed": 0, "cohorts": 0}


class BrokenStore(MemoryStore):
    def reviews_for_business(self, business_id):
        if business_id == "bravo":
            raise RuntimeError("connection reset")
        return super().reviews_for_business(business_id)


def test_failed_business_is_counted_and_others_continue():
    store = BrokenStore()
    for business_id in ("alpha", "bravo"):
        store.add_business(Business(id=business_id, name=business_id, city="Austin", category="roofing"))
    add_reviews(store, "alpha", [5, 5])

    summary = RankingEngine(store, profiles=CATEGORY_PROFILES).refresh(business_ids=["alpha", "bravo"])

    assert summary == {"recomputed": 1, "failed": 1, "cohorts": 1}
    assert store.get_ranking("alpha").rank_position == 1


class KeywordClassifier:
    def analyze(self, text):
        return {"quality_multiplier": 2.0, "keywords": ["punctual", text.split()[-1]]}


def test_classifier_multiplier_is_clamped_and_keywords_collected(store):
    plain = RankingEngine(store, profiles=CATEGORY_PROFILES).recompute_business("alpha")
    engine = RankingEngine(store, classifier=KeywordClassifier(), profiles=CATEGORY_PROFILES)

    record = engine.recompute_business("alpha")

    assert record.quality_multiplier == 1.15
    assert record.overall_score > plain.overall_score
    assert record.keywords[0] == "punctual"


def test_summarize_defaults():
    assert summarize(NeutralClassifier(), []) == {"quality_multiplier": 1.0, "keywords": []}
    assert summarize(NeutralClassifier(), ["ok", "fine"])["quality_multiplier"] == 1.0
