import pytest

from reviewrank.core.config import CATEGORY_PROFILES, Settings
from reviewrank.core.models import Business, RankingRecord
from reviewrank.core.queue import IngestionQueue
from reviewrank.core.store import MemoryStore
from reviewrank.etl.importer import BatchImporter
from reviewrank.jobs import server
from reviewrank.jobs.orchestrator import Pipeline
from reviewrank.ranking.engine import RankingEngine


class NullProvider:
    source = "null"

    def fetch_reviews(self, place_id, max_reviews=200):
        return []


def ranking(business_id, score, position, previous=None):
    return RankingRecord(
        business_id=business_id,
        category="roofing",
        city="Austin",
        overall_score=score,
        quality_score=80.0,
        volume_score=5.0,
        tier_bonus=0.0,
        quality_multiplier=1.0,
        confidence=0.9,
        reviews_analyzed=20,
        rank_position=position,
        previous_position=previous,
        total_in_cohort=2,
    )


@pytest.fixture
def pipeline(monkeypatch):
    store = MemoryStore()
    store.add_business(Business(id="biz-1", name="Acme Roofing", city="Austin", category="roofing", place_id="pid-1"))
    store.add_business(Business(id="biz-2", name="Bare Roofing", city="Austin", category="roofing"))
    store.save_ranking(ranking("biz-1", 82.5, 1, previous=2))
    store.save_ranking(ranking("biz-2", 60.0, 2, previous=1))
    pipeline = Pipeline(
        store=store,
        queue=IngestionQueue(store),
        provider=NullProvider(),
        importer=BatchImporter(store),
        engine=RankingEngine(store, profiles=CATEGORY_PROFILES),
    )
    monkeypatch.setattr(server, "_pipeline", pipeline)
    monkeypatch.setattr(server, "get_settings", lambda: Settings(scrape_provider="serpapi"))
    return pipeline


@pytest.fixture
def submitted(monkeypatch):
    calls = {}

    class DummyExecutor:
        def submit(self, fn, args):
            calls["fn"] = fn
            calls["args"] = args

    monkeypatch.setattr(server, "_executor", DummyExecutor())
    return calls


@pytest.fixture
def client(pipeline, submitted):
    return server.app.test_client()


def test_health_endpoint(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"
    assert response.get_json()["provider"] == "serpapi"


def test_business_ranking(client):
    data = client.get("/rankings/biz-1").get_json()["data"]
    assert data["rank_position"] == 1
    assert data["movement"] == 1
    assert client.get("/rankings/unknown").status_code == 404


def test_top_ranked_and_limit_validation(client):
    response = client.get("/rankings?category=roofing&city=Austin&limit=1")
    assert response.status_code == 200
    assert [row["business_id"] for row in response.get_json()["data"]] == ["biz-1"]

    assert client.get("/rankings?limit=bad").status_code == 400
    assert client.get("/rankings?limit=0").status_code == 400
    assert client.get("/rankings?limit=101").status_code == 400


def test_biggest_movers(client):
    data = client.get("/rankings/movers").get_json()["data"]
    assert [(row["business_id"], row["movement"]) for row in data] == [("biz-1", 1), ("biz-2", -1)]


def test_enqueue_validates_payload(client):
    assert client.post("/queue", json={}).status_code == 400
    assert client.post("/queue", json={"business_id": "biz-1", "priority": "high"}).status_code == 400
    assert client.post("/queue", json={"business_id": "missing"}).status_code == 404
    assert client.post("/queue", json={"business_id": "biz-2"}).status_code == 400


def test_enqueue_uses_stored_place_id(client, pipeline):
    response = client.post("/queue", json={"business_id": "biz-1", "priority": 8})

    assert response.status_code == 202
    job = response.get_json()["data"]
    assert job["place_id"] == "pid-1"
    assert job["priority"] == 8
    assert job["status"] == "pending"

    again = client.post("/queue", json={"business_id": "biz-1"}).get_json()["data"]
    assert again["id"] == job["id"]
    assert client.get("/queue/status").get_json()["data"]["pending"] == 1


def test_enqueue_with_explicit_place_id(client):
    response = client.post("/queue", json={"business_id": "biz-2", "place_id": "pid-2"})
    assert response.status_code == 202
    assert response.get_json()["data"]["place_id"] == "pid-2"


def test_sync_is_queued_in_background(client, submitted):
    response = client.post("/sync", json={"max_jobs": 5, "skip_ranking": True})

    assert response.status_code == 202
    assert response.get_json()["data"]["status"] == "queued"
    assert submitted["args"] == {"max_jobs": 5, "skip_ranking": True}


def test_sync_validates_max_jobs(client, submitted):
    assert client.post("/sync", json={"max_jobs": "lots"}).status_code == 400
    assert client.post("/sync", json={"max_jobs": 0}).status_code == 400
    assert submitted == {}


def test_background_cycle_failure_is_logged(pipeline, monkeypatch, caplog):
    def explode(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(server, "run_cycle", explode)

    server._run_cycle_safe({"max_jobs": None, "skip_ranking": False})

    assert "Pipeline cycle failed" in caplog.text
