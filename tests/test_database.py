import aiosqlite

import database


async def test_init_db_creates_tables(tmp_db):
    async with aiosqlite.connect(tmp_db) as db:
        async with db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        ) as cursor:
            names = {row[0] for row in await cursor.fetchall()}
    assert {"movies", "platforms", "availability"} <= names


async def test_init_db_is_repeatable(tmp_db):
    await database.init_db(tmp_db)
    assert await database.ping(tmp_db) is True


async def test_ping_fails_for_unreachable_path(tmp_path):
    assert await database.ping(tmp_path / "missing" / "catalog.db") is False


def test_encode_movie_fields_serializes_collections():
    encoded = database.encode_movie_fields(
        {"genres": ["Drama"], "is_enriched": True, "title": "Heat"}
    )
    assert encoded == {"genres": '["Drama"]', "is_enriched": 1, "title": "Heat"}
