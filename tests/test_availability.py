import availability
import movies
import platforms
from models import MonetizationType, Quality


async def _setup(db):
    movie = await movies.create_movie({"external_id": "tm100", "title": "Heat"}, db)
    alpha = await platforms.resolve_or_create("8", "PlatformA", db_path=db)
    beta = await platforms.resolve_or_create("9", "PlatformB", db_path=db)
    return movie, alpha, beta


async def test_upsert_is_idempotent(tmp_db):
    movie, alpha, _ = await _setup(tmp_db)
    first = await availability.upsert_availability(
        movie.id, alpha.id, MonetizationType.FLATRATE, Quality.SD, "https://a/1", db_path=tmp_db
    )
    second = await availability.upsert_availability(
        movie.id, alpha.id, MonetizationType.FLATRATE, Quality.HD, "https://a/2", db_path=tmp_db
    )

    assert second.id == first.id
    assert second.quality == Quality.HD
    assert second.url == "https://a/2"
    assert len(await availability.find_for_movie(movie.id, tmp_db)) == 1


async def test_distinct_monetization_types_are_separate_rows(tmp_db):
    movie, alpha, _ = await _setup(tmp_db)
    await availability.upsert_availability(movie.id, alpha.id, MonetizationType.RENT, db_path=tmp_db)
    await availability.upsert_availability(movie.id, alpha.id, MonetizationType.BUY, db_path=tmp_db)
    rows = await availability.find_for_movie(movie.id, tmp_db)
    assert [row.monetization_type for row in rows] == [MonetizationType.RENT, MonetizationType.BUY]
    assert all(row.quality == Quality.UNKNOWN for row in rows)


async def test_platform_summary_groups_by_platform(tmp_db):
    movie, alpha, beta = await _setup(tmp_db)
    await availability.upsert_availability(movie.id, beta.id, MonetizationType.BUY, Quality.SD, db_path=tmp_db)
    await availability.upsert_availability(movie.id, alpha.id, MonetizationType.RENT, Quality.UHD, db_path=tmp_db)
    await availability.upsert_availability(movie.id, alpha.id, MonetizationType.FLATRATE, Quality.HD, db_path=tmp_db)

    summary = await availability.sync_platform_summary(movie.id, db_path=tmp_db)

    assert [entry.platform_name for entry in summary] == ["PlatformA", "PlatformB"]
    a, b = summary
    assert a.monetization_types == [MonetizationType.FLATRATE, MonetizationType.RENT]
    assert a.best_quality == Quality.UHD
    assert a.slug == "platforma"
    assert b.monetization_types == [MonetizationType.BUY]
    assert b.best_quality == Quality.SD

    stored = await movies.get_movie(movie.id, tmp_db)
    assert stored.platforms == summary


async def test_empty_summary_kept_unless_forced(tmp_db):
    movie, alpha, _ = await _setup(tmp_db)
    await availability.upsert_availability(movie.id, alpha.id, MonetizationType.FREE, db_path=tmp_db)
    await availability.sync_platform_summary(movie.id, db_path=tmp_db)
    await availability.delete_for_movies([movie.id], tmp_db)

    assert await availability.sync_platform_summary(movie.id, db_path=tmp_db) == []
    assert len((await movies.get_movie(movie.id, tmp_db)).platforms) == 1

    await availability.sync_platform_summary(movie.id, force_clear=True, db_path=tmp_db)
    assert (await movies.get_movie(movie.id, tmp_db)).platforms == []


async def test_repoint_platform_drops_rows_already_on_target(tmp_db):
    movie, alpha, beta = await _setup(tmp_db)
    other = await movies.create_movie({"external_id": "tm200", "title": "Up"}, tmp_db)
    await availability.upsert_availability(movie.id, alpha.id, MonetizationType.RENT, db_path=tmp_db)
    await availability.upsert_availability(movie.id, beta.id, MonetizationType.RENT, db_path=tmp_db)
    await availability.upsert_availability(other.id, alpha.id, MonetizationType.BUY, db_path=tmp_db)

    touched = await availability.repoint_platform(alpha.id, beta.id, tmp_db)

    assert sorted(touched) == sorted([movie.id, other.id])
    assert await availability.count_for_platform(alpha.id, tmp_db) == 0
    assert await availability.count_for_platform(beta.id, tmp_db) == 2
    assert await availability.count_for_movies([movie.id, other.id], tmp_db) == 2
