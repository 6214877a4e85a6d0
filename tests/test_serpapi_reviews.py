import pytest

from reviewrank.core.errors import SourceRequestError, TransientSourceFailure
from reviewrank.vendors import serpapi_reviews


class FakeSearch:
    def __init__(self, result):
        self._result = result

    def get_dict(self):
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


class FakeSearchFactory:
    def __init__(self, results):
        self.results = list(results)
        self.params = []

    def __call__(self, params):
        self.params.append(params)
        return FakeSearch(self.results.pop(0))


def make_client(results):
    factory = FakeSearchFactory(results)
    sleeps = []
    client = serpapi_reviews.SerpApiReviewsClient("key", search_factory=factory, sleep=sleeps.append)
    return client, factory, sleeps


def test_build_review_params_picks_identifier_kind():
    data_id = serpapi_reviews.build_review_params("0x89c2:0x1a2b", "key")
    place_id = serpapi_reviews.build_review_params(" ChIJ123 ", "key", next_page_token="next")

    assert data_id["data_id"] == "0x89c2:0x1a2b"
    assert "place_id" not in data_id
    assert place_id["place_id"] == "ChIJ123"
    assert place_id["next_page_token"] == "next"
    assert place_id["engine"] == "google_maps_reviews"

    with pytest.raises(ValueError):
        serpapi_reviews.build_review_params("  ", "key")


def test_error_payload_is_not_retried():
    client, factory, sleeps = make_client([{"error": "Invalid place id"}])

    with pytest.raises(SourceRequestError):
        client.request_page("ChIJ123")

    assert len(factory.params) == 1
    assert sleeps == []


def test_request_retries_then_gives_up():
    failures = [RuntimeError("boom")] * (serpapi_reviews.RETRY_LIMIT + 1)
    client, factory, sleeps = make_client(failures)

    with pytest.raises(TransientSourceFailure):
        client.request_page("ChIJ123")

    assert len(factory.params) == serpapi_reviews.RETRY_LIMIT + 1
    assert len(sleeps) == serpapi_reviews.RETRY_LIMIT


def test_request_recovers_after_failure():
    client, _, sleeps = make_client([RuntimeError("boom"), {"reviews": []}])

    assert client.request_page("ChIJ123") == {"reviews": []}
    assert len(sleeps) == 1


def test_missing_api_key():
    client = serpapi_reviews.SerpApiReviewsClient("", search_factory=FakeSearchFactory([]))
    with pytest.raises(SourceRequestError):
        client.request_page("ChIJ123")


def test_fetch_reviews_follows_pagination():
    client, factory, _ = make_client(
        [
            {"reviews": [{"review_id": "a"}, {"review_id": "b"}], "serpapi_pagination": {"next_page_token": "t2"}},
            {"reviews": [{"review_id": "c"}]},
        ]
    )

    reviews = client.fetch_reviews("ChIJ123", max_reviews=10)

    assert [r["review_id"] for r in reviews] == ["a", "b", "c"]
    assert factory.params[1]["next_page_token"] == "t2"
