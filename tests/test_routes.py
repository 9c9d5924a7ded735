import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

import availability
import database
import movies
import platforms
from models import MonetizationType, Quality


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "routes.db"
    asyncio.run(database.init_db(path))
    return path


@pytest.fixture
def mock_settings(db_path):
    settings = MagicMock()
    settings.tmdb_api_key = "key"
    settings.database_path = str(db_path)
    settings.country = "IN"
    settings.language = "en"
    settings.ingest_max_pages = 3
    settings.ingest_page_size = 50
    settings.page_delay_seconds = 0.5
    settings.page_fetch_retries = 2
    return settings


@pytest.fixture
def client(mock_settings):
    with patch("main.get_settings", return_value=mock_settings):
        from main import app

        yield TestClient(app)


async def _seed(db):
    netflix = await platforms.resolve_or_create("8", "Netflix", db_path=db)
    await platforms.resolve_or_create("2", "Apple TV", db_path=db)
    heat = await movies.create_movie(
        {"external_id": "100", "title": "Heat", "release_year": 1995, "popularity": 40.0, "genres": ["Crime"]},
        db,
    )
    await movies.create_movie({"external_id": "200", "title": "Up", "release_year": 2009, "popularity": 80.0}, db)
    await availability.upsert_availability(heat.id, netflix.id, MonetizationType.RENT, Quality.HD, db_path=db)
    await availability.sync_platform_summary(heat.id, db_path=db)


@pytest.fixture
def catalog(db_path):
    asyncio.run(_seed(db_path))


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "timestamp" in response.json()


def test_health_detailed(client):
    with patch("main.scheduler.get_status", return_value={"is_scheduled": True, "is_running": False}):
        response = client.get("/health/detailed")
    assert response.status_code == 200
    body = response.json()
    assert body["services"] == {"database": "connected", "ingestionJob": "scheduled"}
    assert body["jobDetails"]["is_running"] is False


def test_health_detailed_degraded_when_database_down(client):
    with patch("main.database.ping", new=AsyncMock(return_value=False)):
        response = client.get("/health/detailed")
    assert response.status_code == 503
    assert response.json()["status"] == "degraded"


def test_list_movies(client, catalog):
    response = client.get("/api/movies")
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert [m["title"] for m in body["items"]] == ["Up", "Heat"]


def test_list_movies_filters(client, catalog):
    response = client.get(
        "/api/movies",
        params={"platforms": "netflix", "monetizationTypes": "rent,buy", "sortBy": "title", "sortOrder": "asc"},
    )
    body = response.json()
    assert [m["title"] for m in body["items"]] == ["Heat"]
    assert body["items"][0]["platforms"][0]["best_quality"] == "HD"

    response = client.get("/api/movies", params={"genres": "crime", "releaseYear": 1995})
    assert [m["title"] for m in response.json()["items"]] == ["Heat"]


def test_list_movies_rejects_bad_monetization_type(client):
    response = client.get("/api/movies", params={"monetizationTypes": "flatrate,cinema"})
    assert response.status_code == 400


def test_list_movies_limit_capped(client):
    response = client.get("/api/movies", params={"limit": 500})
    assert response.status_code == 422


def test_list_platforms(client, catalog):
    response = client.get("/api/platforms")
    assert response.status_code == 200
    assert [p["slug"] for p in response.json()] == ["apple-tv", "netflix"]


def test_refresh_triggers_when_idle(client):
    with (
        patch("main.scheduler.run_ingestion", new=AsyncMock(return_value=None)) as mock_run,
        patch("main.scheduler.is_running", return_value=False),
    ):
        response = client.post("/api/refresh")
    assert response.status_code == 200
    assert response.json()["status"] == "started"
    assert mock_run.await_args.args == (3,)


def test_refresh_rejected_when_busy(client):
    with patch("main.scheduler.is_running", return_value=True):
        response = client.post("/api/refresh")
    assert response.status_code == 200
    assert response.json()["status"] == "already_running"
