from unittest.mock import AsyncMock, MagicMock, patch

import availability
import ingestion
import movies
import platforms
from errors import UpstreamError
from justwatch import CatalogPage, JustWatchPackage, parse_title
from models import MonetizationType, Quality


def _title(object_id, name, year=2000, offers=(), **content):
    return {
        "objectId": object_id,
        "content": {
            "title": name,
            "originalReleaseYear": year,
            "externalIds": {"tmdbId": str(object_id)},
            "scoring": {"tmdbPopularity": 10.0},
            **content,
        },
        "offers": list(offers),
    }


def _offer(package_id, name, kind="FLATRATE", presentation="HD"):
    return {
        "monetizationType": kind,
        "presentationType": presentation,
        "standardWebURL": f"https://watch.example/{package_id}",
        "package": {"packageId": package_id, "clearName": name},
    }


FIGHT_CLUB = _title(
    550,
    "Fight Club",
    1999,
    offers=[_offer(8, "Netflix"), _offer(2, "Apple TV", "RENT", "_4K")],
    shortDescription="Mischief. Mayhem. Soap.",
)


async def _ingest(db, pages, max_pages=20, **kwargs):
    kwargs.setdefault("retries", 0)
    with patch("ingestion.fetch_catalog_page", new=AsyncMock(side_effect=pages)) as mock_fetch:
        result = await ingestion.ingest_popular_movies(
            max_pages, client=MagicMock(), page_delay=0, db_path=db, **kwargs
        )
    return result, mock_fetch


async def test_ingest_creates_movie_platforms_and_summary(tmp_db):
    result, _ = await _ingest(tmp_db, [CatalogPage(items=[FIGHT_CLUB], has_next_page=False)])

    assert result.pages_fetched == 1
    assert result.created == 1
    assert result.availabilities == 2
    assert result.errors == 0
    assert result.stopped_early is False
    assert result.state == ingestion.RunState.DONE

    movie = await movies.find_by_external_id("550", tmp_db)
    assert movie.overview == "Mischief. Mayhem. Soap."
    assert {entry.platform_name for entry in movie.platforms} == {"Netflix", "Apple TV"}

    apple = await platforms.find_by_external_id("2", tmp_db)
    assert apple is not None and apple.slug == "apple-tv"
    assert await platforms.find_by_external_id("tmdb_2", tmp_db) is None


async def test_reingest_is_idempotent(tmp_db):
    page = [CatalogPage(items=[FIGHT_CLUB], has_next_page=False)]
    first, _ = await _ingest(tmp_db, page)
    movie = await movies.find_by_external_id("550", tmp_db)
    rows_before = await availability.find_for_movie(movie.id, tmp_db)

    second, _ = await _ingest(tmp_db, page)

    assert first.created == 1 and second.created == 0
    assert second.updated == 1
    assert await movies.count_movies(tmp_db) == 1
    assert len(await platforms.find_all(tmp_db)) == 2
    rows_after = await availability.find_for_movie(movie.id, tmp_db)
    assert [row.id for row in rows_after] == [row.id for row in rows_before]
    again = await movies.find_by_external_id("550", tmp_db)
    assert again.platforms == movie.platforms


async def test_reingest_keeps_existing_overview(tmp_db):
    await movies.create_movie(
        {"external_id": "550", "title": "Fight club", "overview": "Curated overview"}, tmp_db
    )
    await _ingest(tmp_db, [CatalogPage(items=[FIGHT_CLUB], has_next_page=False)])

    movie = await movies.find_by_external_id("550", tmp_db)
    assert movie.overview == "Curated overview"
    assert movie.title == "Fight Club"
    assert movie.tmdb_id == "550"


async def test_stops_at_max_pages_when_more_available(tmp_db):
    pages = [CatalogPage(items=[_title(n, f"Movie {n}")], has_next_page=True) for n in range(1, 10)]
    result, mock_fetch = await _ingest(tmp_db, pages, max_pages=5)

    assert mock_fetch.await_count == 5
    assert result.pages_fetched == 5
    assert result.created == 5
    assert result.stopped_early is True
    assert result.aborted is False


async def test_empty_page_ends_run(tmp_db):
    pages = [CatalogPage(items=[_title(1, "One")], has_next_page=True), CatalogPage(items=[], has_next_page=True)]
    result, mock_fetch = await _ingest(tmp_db, pages)

    assert mock_fetch.await_count == 2
    assert result.processed == 1
    assert result.stopped_early is False


async def test_page_failure_aborts_after_retries_keeping_progress(tmp_db):
    pages = [
        CatalogPage(items=[_title(1, "One")], has_next_page=True),
        UpstreamError("boom"),
        UpstreamError("boom again"),
    ]
    with patch("ingestion.RETRY_BACKOFF", 0):
        result, mock_fetch = await _ingest(tmp_db, pages, retries=1)

    assert mock_fetch.await_count == 3
    assert result.aborted is True
    assert result.error == "boom again"
    assert result.pages_fetched == 1
    assert await movies.count_movies(tmp_db) == 1


async def test_bad_items_are_counted_not_fatal(tmp_db):
    sentinel = {"objectId": "tmdb_5", "content": {"title": "Fallback"}}
    no_id = {"content": {"title": "No id"}}
    nameless = {"objectId": 77, "content": {}}
    pages = [CatalogPage(items=[sentinel, no_id, nameless, _title(1, "Good")], has_next_page=False)]

    result, _ = await _ingest(tmp_db, pages)

    assert result.errors == 2
    assert result.skipped == 1
    assert result.processed == 1
    assert await movies.find_by_external_id("tmdb_5", tmp_db) is None


async def test_null_upstream_fields_fall_back_to_defaults(tmp_db):
    sparse = {"objectId": 2, "content": {"title": "Sparse", "scoring": None, "externalIds": None}}
    no_offers = {"objectId": 3, "content": {"title": "No offers"}, "offers": None}
    broken = {"objectId": 4, "content": {"title": "Broken", "runtime": "long"}}
    pages = [CatalogPage(items=[FIGHT_CLUB, sparse, no_offers, broken], has_next_page=False)]

    result, _ = await _ingest(tmp_db, pages)

    assert result.aborted is False
    assert result.processed == 3
    assert result.errors == 1
    assert (await movies.find_by_external_id("2", tmp_db)).popularity is None
    assert (await movies.find_by_external_id("3", tmp_db)).platforms == []
    assert await movies.find_by_external_id("4", tmp_db) is None


async def test_unexpected_item_error_is_counted(tmp_db):
    pages = [CatalogPage(items=[_title(1, "One"), _title(2, "Two")], has_next_page=False)]
    outcomes = [RuntimeError("disk"), MagicMock(availabilities=0, created=True)]
    with patch("ingestion.process_title", new=AsyncMock(side_effect=outcomes)):
        result, _ = await _ingest(tmp_db, pages)
    assert result.errors == 1
    assert result.processed == 1


async def test_apply_offers_skips_nameless_provider(tmp_db):
    movie = await movies.create_movie({"external_id": "550", "title": "Fight Club"}, tmp_db)
    title = _title(550, "Fight Club", offers=[_offer(8, None), _offer(9, "Prime Video", "BUY", "SD")])

    written = await ingestion.apply_offers(movie, ingestion.extract_offers(parse_title(title)), tmp_db)

    assert written == 1
    rows = await availability.find_for_movie(movie.id, tmp_db)
    assert [(row.monetization_type, row.quality) for row in rows] == [(MonetizationType.BUY, Quality.SD)]


async def test_sync_platforms(tmp_db):
    providers = [
        JustWatchPackage(package_id="8", clear_name="Netflix", icon="/icon/8"),
        JustWatchPackage(package_id="2", clear_name="Apple TV"),
        JustWatchPackage(clear_name="No id"),
        JustWatchPackage(package_id="99"),
    ]
    with patch("ingestion.fetch_providers", new=AsyncMock(return_value=providers)):
        synced = await ingestion.sync_platforms(MagicMock(), "IN", tmp_db)

    assert synced == 2
    assert [p.name for p in await platforms.find_all_active(tmp_db)] == ["Apple TV", "Netflix"]
