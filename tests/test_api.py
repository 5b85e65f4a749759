import pytest
from fastapi.testclient import TestClient

from standings.cache import classification_key
from standings.database import get_db
from standings.main import app, get_classification_cache

from factories import unknown_id


@pytest.fixture()
def client(db, cache):
    def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_classification_cache] = lambda: cache
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_recalculate_then_read_optimized_and_raw(client, store, season_data):
    season_id = season_data.season.id

    resp = client.post(f"/classification/season/{season_id}/recalculate")
    assert resp.status_code == 200
    body = resp.json()
    assert body["version"] == 1
    assert body["total_categories"] == 2
    assert body["total_pilots"] == 5

    resp = client.post(f"/classification/season/{season_id}/update-cache")
    assert resp.json()["version"] == 2

    resp = client.get(f"/classification/season/{season_id}/optimized")
    assert resp.status_code == 200
    standings = resp.json()["categories"][season_data.graduados.id]["standings"]
    assert [row["pilot_id"] for row in standings] == [
        season_data.bruno.id,
        season_data.ana.id,
        season_data.carla.id,
    ]

    resp = client.get(f"/classification/season/{season_id}/raw")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/json")
    assert resp.content == store.data[classification_key(season_id)]


def test_optimized_read_on_miss_is_live(client, store, season_data):
    season_id = season_data.season.id
    resp = client.get(f"/classification/season/{season_id}/optimized")
    assert resp.status_code == 200
    assert resp.json()["version"] == 0
    assert store.data == {}


def test_raw_read_on_miss_is_404(client, season_data):
    resp = client.get(f"/classification/season/{season_data.season.id}/raw")
    assert resp.status_code == 404


def test_category_and_user_classification(client, season_data):
    d = season_data
    resp = client.get(f"/classification/season/{d.season.id}/category/{d.novatos.id}")
    assert resp.status_code == 200
    assert [(r["pilot_name"], r["total_points"]) for r in resp.json()["standings"]] == [
        ("Carla Dias", 25),
        ("Ana Souza", 18),
    ]

    resp = client.get(f"/classification/user/{d.ana.id}/season/{d.season.id}/category/{d.novatos.id}")
    assert resp.status_code == 200
    assert resp.json()["rank"] == 2

    resp = client.get(f"/classification/user/{d.bruno.id}/season/{d.season.id}/category/{d.novatos.id}")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Classification not found for this user"


def test_championship_classification(client, season_data):
    d = season_data
    client.post(f"/classification/season/{d.season.id}/recalculate")

    resp = client.get(f"/classification/championship/{d.championship.id}")
    assert resp.status_code == 200
    seasons = resp.json()["seasons"]
    assert [(s["season_id"], s["source"]) for s in seasons] == [(d.season.id, "cache")]

    assert client.get(f"/classification/championship/{unknown_id()}").status_code == 404


def test_malformed_id_is_400(client):
    assert client.post("/classification/season/abc/recalculate").status_code == 400
    assert client.get("/classification/season/abc/optimized").status_code == 400


def test_unknown_category_is_404(client, season_data):
    resp = client.get(f"/classification/season/{season_data.season.id}/category/{unknown_id()}")
    assert resp.status_code == 404


def test_configuration_error_is_500(client, db, season_data):
    season_data.novatos.batteries[0].scoring_system_id = unknown_id()
    db.commit()

    resp = client.post(f"/classification/season/{season_data.season.id}/recalculate")
    assert resp.status_code == 500
    assert "unknown scoring system" in resp.json()["detail"]


def test_invalidate_cache(client, season_data):
    season_id = season_data.season.id
    client.post(f"/classification/season/{season_id}/recalculate")

    resp = client.delete(f"/classification/season/{season_id}/cache")
    assert resp.status_code == 200
    assert resp.json() == {"season_id": season_id, "invalidated": True}
    assert client.get(f"/classification/season/{season_id}/raw").status_code == 404


def test_category_route_returns_canonical_ids(client, season_data):
    d = season_data
    resp = client.get(
        f"/classification/season/{d.season.id.upper()}/category/{d.graduados.id.upper()}"
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["season_id"] == d.season.id
    assert body["category_id"] == d.graduados.id


def test_startup_builds_a_single_cache(monkeypatch, session_factory, store, db, season_data):
    from standings import main

    built = []

    def fake_from_url(url, **kwargs):
        built.append(url)
        return store

    monkeypatch.setattr(main.RedisCacheStore, "from_url", fake_from_url)
    monkeypatch.setattr(main, "engine", session_factory.kw["bind"])
    monkeypatch.setattr(main, "SessionLocal", session_factory)

    def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    try:
        with TestClient(app) as c:
            cache = app.state.classification_cache
            for _ in range(3):
                resp = c.post(f"/classification/season/{season_data.season.id}/recalculate")
                assert resp.status_code == 200
            assert resp.json()["version"] == 3
            assert app.state.classification_cache is cache
        assert built == [main.settings.REDIS_URL]
        assert app.state.classification_cache is None
    finally:
        app.dependency_overrides.clear()
