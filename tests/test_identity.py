from datetime import datetime, timezone

import pytest

from reviewrank.core.models import Business, ReviewRecord
from reviewrank.core.store import MemoryStore
from reviewrank.matching import identity


@pytest.fixture
def matcher():
    return identity.IdentityMatcher(
        [
            Business(
                id="biz-acme",
                name="Acme Roofing LLC",
                city="Austin",
                category="roofing",
                phone="(555) 000-1111",
                place_id="pid-acme",
            ),
            Business(
                id="biz-best",
                name="Best Plumbing",
                city="Austin",
                category="plumbing",
                phone="555-222-3333",
                place_id="pid-best",
            ),
            Business(id="biz-long", name="abcdefghijklmnopqrst", city="Austin", category="hvac"),
        ]
    )


def record(**hints):
    return ReviewRecord(
        source_review_id="r1",
        rating=5,
        comment="Great",
        author="Jane",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        **hints,
    )


def test_place_id_match_has_full_confidence(matcher):
    match = matcher.match(record(place_id="pid-acme"))
    assert match.business.id == "biz-acme"
    assert match.confidence == 1.0
    assert match.strategy == identity.STRATEGY_PLACE_ID


def test_place_id_wins_over_other_hints(matcher):
    match = matcher.match(record(place_id="pid-acme", phone="555 222 3333", business_name="Best Plumbing"))
    assert match.business.id == "biz-acme"


def test_internal_id_then_phone(matcher):
    assert matcher.match(record(place_id="unknown", business_id="biz-best")).strategy == identity.STRATEGY_BUSINESS_ID

    match = matcher.match(record(phone="555.000.1111"))
    assert match.business.id == "biz-acme"
    assert match.confidence == identity.PHONE_MATCH_CONFIDENCE
    assert match.strategy == identity.STRATEGY_PHONE


def test_fuzzy_name_match(matcher):
    exact = matcher.match(record(business_name="ACME Roofing, Inc."))
    assert exact.business.id == "biz-acme"
    assert exact.strategy == identity.STRATEGY_NAME
    assert exact.confidence == 1.0

    typo = matcher.match(record(business_name="Acme Roofin"))
    assert typo.business.id == "biz-acme"
    assert typo.confidence == pytest.approx(11 / 12)


def test_name_threshold_is_strict(matcher):
    # three substitutions in twenty characters is exactly 0.85
    assert matcher.match(record(business_name="abcdefghijklmnopqxyz")) is None


def test_unresolved_returns_none(matcher):
    assert matcher.match(record(business_name="Zeta Electric")) is None
    assert matcher.match(record()) is None


def test_hint_summary_collects_distinct_hints():
    records = [
        record(place_id="pid-1", phone="(555) 000-1111"),
        record(place_id="pid-1", business_id="biz-9", business_name="Joe's Roofing"),
    ]

    hints = identity.hint_summary(records)

    assert hints["place_ids"] == ["pid-1"]
    assert hints["business_ids"] == ["biz-9"]
    assert hints["phones"] == ["5550001111"]
    assert hints["name_keys"] == [
        "g:fin",
        "g:ing",
        "g:joe",
        "g:oes",
        "g:ofi",
        "g:oof",
        "g:roo",
        "p:joe",
        "t:joes",
        "t:roofing",
    ]


def test_single_letter_typo_reaches_candidate_through_trigrams():
    listed = Business(id="biz-pm", name="Plumbmasters LLC", city="Austin", category="plumbing")
    store = MemoryStore()
    store.add_business(listed)
    typo = record(business_name="Plimbmasters")

    prefetched = store.businesses_for_hints(**identity.hint_summary([typo]))
    assert [business.id for business in prefetched] == ["biz-pm"]

    match = identity.IdentityMatcher(prefetched).match(typo)
    assert match.business.id == "biz-pm"
    assert match.confidence == pytest.approx(11 / 12)
