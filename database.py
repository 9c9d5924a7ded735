import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

from models import Availability, Movie, Platform

DB_PATH = Path("data/catalog.db")

MOVIE_JSON_COLUMNS = (
    "spoken_languages",
    "production_countries",
    "genres",
    "directors",
    "cast",
    "writers",
    "production_companies",
    "platforms",
)

MOVIE_COLUMNS = (
    "external_id",
    "title",
    "original_title",
    "release_year",
    "release_date",
    "overview",
    "tagline",
    "runtime",
    "poster_path",
    "backdrop_path",
    "vote_average",
    "vote_count",
    "popularity",
    "original_language",
    "imdb_id",
    "tmdb_id",
    "is_enriched",
    "last_enriched_at",
) + MOVIE_JSON_COLUMNS

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS platforms (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        external_id TEXT UNIQUE NOT NULL,
        name        TEXT NOT NULL,
        slug        TEXT UNIQUE NOT NULL,
        icon        TEXT,
        is_active   INTEGER NOT NULL DEFAULT 1,
        created_at  TEXT,
        updated_at  TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS movies (
        id                   INTEGER PRIMARY KEY AUTOINCREMENT,
        external_id          TEXT UNIQUE NOT NULL,
        title                TEXT NOT NULL,
        original_title       TEXT,
        release_year         INTEGER,
        release_date         TEXT,
        overview             TEXT,
        tagline              TEXT,
        runtime              INTEGER,
        poster_path          TEXT,
        backdrop_path        TEXT,
        vote_average         REAL,
        vote_count           INTEGER,
        popularity           REAL,
        original_language    TEXT,
        spoken_languages     TEXT,
        production_countries TEXT,
        imdb_id              TEXT,
        tmdb_id              TEXT,
        genres               TEXT,
        directors            TEXT,
        "cast"               TEXT,
        writers              TEXT,
        production_companies TEXT,
        is_enriched          INTEGER NOT NULL DEFAULT 0,
        last_enriched_at     TEXT,
        platforms            TEXT,
        created_at           TEXT,
        updated_at           TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS availability (
        id                INTEGER PRIMARY KEY AUTOINCREMENT,
        movie_id          INTEGER NOT NULL REFERENCES movies(id),
        platform_id       INTEGER NOT NULL REFERENCES platforms(id),
        monetization_type TEXT NOT NULL,
        quality           TEXT NOT NULL DEFAULT 'unknown',
        url               TEXT,
        created_at        TEXT,
        updated_at        TEXT,
        UNIQUE (movie_id, platform_id, monetization_type)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_availability_movie ON availability(movie_id)",
    "CREATE INDEX IF NOT EXISTS idx_availability_platform ON availability(platform_id)",
    "CREATE INDEX IF NOT EXISTS idx_movies_popularity ON movies(popularity)",
    "CREATE INDEX IF NOT EXISTS idx_movies_tmdb ON movies(tmdb_id)",
)


async def init_db(db_path: Path = DB_PATH) -> None:
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        for statement in SCHEMA:
            await db.execute(statement)
        await db.commit()


@asynccontextmanager
async def connect(db_path: Path = DB_PATH) -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        yield db


async def ping(db_path: Path = DB_PATH) -> bool:
    """Return True when the database file can be opened and queried."""
    try:
        async with connect(db_path) as db:
            async with db.execute("SELECT 1") as cursor:
                await cursor.fetchone()
    except (OSError, aiosqlite.Error):
        return False
    return True


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def quote_column(column: str) -> str:
    # "cast" is an SQL keyword
    return f'"{column}"'


def encode_movie_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert model values into column values, JSON-encoding nested data."""
    encoded: dict[str, Any] = {}
    for key, value in fields.items():
        if key in MOVIE_JSON_COLUMNS:
            encoded[key] = json.dumps([_dump(item) for item in value or []])
        elif key == "is_enriched":
            encoded[key] = int(bool(value))
        else:
            encoded[key] = value
    return encoded


def _dump(item: Any) -> Any:
    return item.model_dump(mode="json") if hasattr(item, "model_dump") else item


def row_to_movie(row: aiosqlite.Row) -> Movie:
    data = dict(row)
    for column in MOVIE_JSON_COLUMNS:
        raw = data.get(column)
        data[column] = json.loads(raw) if raw else []
    data["is_enriched"] = bool(data.get("is_enriched"))
    return Movie(**data)


def row_to_platform(row: aiosqlite.Row) -> Platform:
    data = dict(row)
    data["is_active"] = bool(data["is_active"])
    return Platform(**data)


def row_to_availability(row: aiosqlite.Row) -> Availability:
    return Availability(**dict(row))
