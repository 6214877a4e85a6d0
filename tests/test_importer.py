import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from reviewrank.core.errors import PersistenceFailure
from reviewrank.core.models import Business, Review, ReviewRecord
from reviewrank.core.store import MemoryStore
from reviewrank.etl.importer import BatchImporter

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
COMMENTS = [
    "Replaced two shingles and cleaned up after",
    "Quote was clear and the price held",
    "Took a week to call back",
    "Friendly crew, noisy compressor",
    "Gutters look brand new",
    "Missed the first appointment",
    "Great attention to flashing details",
    "Would use them again next spring",
    "Inspector passed everything first try",
    "Left nails in the driveway",
]


def spread(count):
    return [
        record(f"r{i}", author=f"A{i}", comment=COMMENTS[i - 1], created_at=NOW - timedelta(days=10 * i))
        for i in range(1, count + 1)
    ]


@pytest.fixture
def store():
    store = MemoryStore()
    store.add_business(Business(id="biz-x", name="Acme Roofing", city="Austin", category="roofing", place_id="place-x"))
    store.add_business(Business(id="biz-y", name="Best Plumbing", city="Austin", category="plumbing", place_id="place-y"))
    return store


def record(source_review_id, *, rating=5, comment="Great service", author="Jane", place_id="place-x", **extra):
    return ReviewRecord(
        source_review_id=source_review_id,
        rating=rating,
        comment=comment,
        author=author,
        created_at=extra.pop("created_at", NOW),
        place_id=place_id,
        **extra,
    )


def test_first_import_creates_review_and_aggregates(store):
    summary = BatchImporter(store).import_batch([record("r1")])

    assert (summary.created, summary.duplicates, summary.business_not_found) == (1, 0, 0)
    business = store.get_business("biz-x")
    assert business.review_count == 1
    assert business.rating == 5.0


def test_reimporting_same_record_is_duplicate(store):
    importer = BatchImporter(store)
    importer.import_batch([record("r1")])

    summary = importer.import_batch([record("r1")])

    assert summary.created == 0
    assert summary.duplicates == 1
    assert store.get_business("biz-x").review_count == 1


def test_reimport_of_batch_is_idempotent(store):
    batch = [
        record("r1", rating=5, comment="Fixed the leak fast", author="Ann"),
        record("r2", rating=3, comment="Showed up late but did ok", author="Ben"),
        record("r3", rating=4, comment="Fair price for the roof", author="Cal", place_id="place-y"),
    ]
    importer = BatchImporter(store)
    importer.import_batch(batch)
    aggregates = [(b.review_count, b.rating) for b in (store.get_business("biz-x"), store.get_business("biz-y"))]

    second = importer.import_batch(batch)

    assert second.created == 0
    assert second.duplicates == 3
    assert [(b.review_count, b.rating) for b in (store.get_business("biz-x"), store.get_business("biz-y"))] == aggregates
    assert aggregates == [(2, 4.0), (1, 4.0)]


def test_content_duplicate_within_batch(store):
    summary = BatchImporter(store).import_batch(
        [
            record("r1", comment="The crew was great and finished on time"),
            record("r2", comment="The crew was great and finished on time!", author="jane"),
        ]
    )

    assert summary.created == 1
    assert summary.duplicates == 1


def test_unresolved_identity_is_counted(store):
    summary = BatchImporter(store).import_batch(
        [record("r1", place_id="nowhere"), record("r2", place_id=None, business_name="Acme Roofing LLC")]
    )

    assert summary.business_not_found == 1
    assert summary.created == 1
    assert summary.errors == 0


class FlakyStore(MemoryStore):
    def __init__(self, failing_ids):
        super().__init__()
        self.failing_ids = set(failing_ids)

    def insert_review(self, review):
        if review.source_review_id in self.failing_ids:
            raise PersistenceFailure("disk full")
        return super().insert_review(review)


def test_record_failures_are_counted_and_batch_continues():
    store = FlakyStore({"r2"})
    store.add_business(Business(id="biz-x", name="Acme", city="Austin", category="roofing", place_id="place-x"))
    batch = spread(10)

    summary = BatchImporter(store, failure_rate_threshold=0.2).import_batch(batch)

    assert summary.processed == 10
    assert summary.created == 9
    assert summary.errors == 1
    assert summary.error_samples == ["gmb_api:r2: disk full"]
    assert summary.flagged_for_review is False
    assert store.get_business("biz-x").review_count == 9


def test_high_failure_rate_flags_batch(caplog):
    store = FlakyStore({"r1", "r2"})
    store.add_business(Business(id="biz-x", name="Acme", city="Austin", category="roofing", place_id="place-x"))

    with caplog.at_level("ERROR"):
        summary = BatchImporter(store, failure_rate_threshold=0.2).import_batch(
            [record("r1", author="A"), record("r2", author="B", comment="Other"), record("r3", author="C", comment="Third")]
        )

    assert summary.flagged_for_review is True
    assert summary.as_dict()["flaggedForReview"] is True
    assert "flagged for manual inspection" in " ".join(caplog.messages)


def test_higher_authority_source_supersedes_duplicate(store):
    store.insert_review(
        Review(
            id="old",
            business_id="biz-x",
            source="manual",
            source_review_id="m1",
            author="Jane",
            rating=5,
            comment="Great service",
            created_at=NOW - timedelta(hours=3),
            imported_at=NOW,
        )
    )

    summary = BatchImporter(store).import_batch([record("g1", source="gmb_api")])

    assert summary.created == 1
    assert summary.superseded == 1
    reviews = {review.id: review for review in store.reviews_for_business("biz-x")}
    assert reviews["old"].displayed is False
    assert store.get_business("biz-x").review_count == 1


def test_lower_authority_duplicate_is_skipped(store):
    BatchImporter(store).import_batch([record("g1")])

    summary = BatchImporter(store).import_batch([record("m1", source="manual")])

    assert summary.created == 0
    assert summary.duplicates == 1
    assert summary.superseded == 0


def test_import_records_splits_batches_and_paces():
    store = MemoryStore()
    store.add_business(Business(id="biz-x", name="Acme", city="Austin", category="roofing", place_id="place-x"))
    pauses = []
    importer = BatchImporter(store, batch_size=2, pacing_seconds=0.5, sleep=pauses.append)

    summary = importer.import_records(spread(5))

    assert summary.processed == 5
    assert summary.created == 5
    assert pauses == [0.5, 0.5]
    assert summary.affected_business_ids == ["biz-x"]


def test_oversized_batch_is_rejected(store):
    with pytest.raises(ValueError):
        BatchImporter(store).import_batch([record(f"r{i}") for i in range(1001)])


class SlowReadStore(MemoryStore):
    def reviews_for_business(self, business_id):
        reviews = super().reviews_for_business(business_id)
        time.sleep(0.05)
        return reviews


def test_concurrent_importers_create_one_of_two_content_duplicates():
    store = SlowReadStore()
    store.add_business(Business(id="biz-x", name="Acme Roofing", city="Austin", category="roofing", place_id="place-x"))
    batches = [
        [record("gmb-1", comment="The crew was great and finished on time")],
        [record("gmb-2", comment="The crew was great and finished on time!", author="jane")],
    ]
    summaries = []
    barrier = threading.Barrier(len(batches))

    def worker(batch):
        barrier.wait()
        summaries.append(BatchImporter(store).import_batch(batch))

    threads = [threading.Thread(target=worker, args=(batch,)) for batch in batches]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(summary.created for summary in summaries) == 1
    assert sum(summary.duplicates for summary in summaries) == 1
    assert len(store.reviews_for_business("biz-x")) == 1
    assert store.get_business("biz-x").review_count == 1
