import logging
import math
import sqlite3
from pathlib import Path
from typing import Any, Literal, Optional

import pydantic
from pydantic import BaseModel, Field

from database import (
    DB_PATH,
    MOVIE_COLUMNS,
    connect,
    encode_movie_fields,
    quote_column,
    row_to_movie,
    utcnow,
)
from errors import ConflictError, NotFoundError, ValidationError
from models import SENTINEL_PREFIX, MonetizationType, Movie, is_valid_external_id

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "popularity": ("popularity",),
    "voteAverage": ("vote_average",),
    "releaseDate": ("release_year", "release_date"),
    "title": ("title COLLATE NOCASE",),
}


class MovieQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    sort_by: Literal["popularity", "voteAverage", "releaseDate", "title"] = "popularity"
    sort_order: Literal["asc", "desc"] = "desc"
    genres: list[str] = Field(default_factory=list)
    platforms: list[str] = Field(default_factory=list)
    release_year: Optional[int] = None
    min_rating: Optional[float] = Field(default=None, ge=0, le=10)
    monetization_types: list[MonetizationType] = Field(default_factory=list)
    q: Optional[str] = Field(default=None, max_length=200)


class MoviePage(BaseModel):
    items: list[Movie]
    total: int
    page: int
    limit: int
    pages: int


async def find_by_external_id(external_id: str, db_path: Path = DB_PATH) -> Optional[Movie]:
    async with connect(db_path) as db:
        async with db.execute(
            "SELECT * FROM movies WHERE external_id = ?", (str(external_id),)
        ) as cursor:
            row = await cursor.fetchone()
    return row_to_movie(row) if row else None


async def get_movie(movie_id: int, db_path: Path = DB_PATH) -> Optional[Movie]:
    async with connect(db_path) as db:
        async with db.execute("SELECT * FROM movies WHERE id = ?", (movie_id,)) as cursor:
            row = await cursor.fetchone()
    return row_to_movie(row) if row else None


async def create_movie(fields: dict[str, Any], db_path: Path = DB_PATH) -> Movie:
    """Insert a movie. If another writer inserted the same id first, return theirs."""
    external_id = fields.get("external_id")
    if not is_valid_external_id(external_id):
        raise ValidationError(f"Refusing to create movie with identifier {external_id!r}")
    try:
        movie = Movie(**fields)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid movie {external_id}: {exc}") from exc

    now = utcnow()
    values = encode_movie_fields(movie.model_dump(mode="json", include=set(MOVIE_COLUMNS)))
    values["created_at"] = now
    values["updated_at"] = now
    columns = ", ".join(quote_column(column) for column in values)
    placeholders = ", ".join("?" for _ in values)

    try:
        async with connect(db_path) as db:
            cursor = await db.execute(
                f"INSERT INTO movies ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
            await db.commit()
            movie_id = cursor.lastrowid
    except sqlite3.IntegrityError as exc:
        existing = await find_by_external_id(movie.external_id, db_path)
        if existing is None:
            raise ConflictError(str(exc)) from exc
        logger.debug("Movie %s created concurrently, using existing row", movie.external_id)
        return existing

    return movie.model_copy(update={"id": movie_id, "created_at": now, "updated_at": now})


async def update_movie(movie_id: int, fields: dict[str, Any], db_path: Path = DB_PATH) -> Movie:
    """Apply only the supplied fields. The canonical identifier is not updatable here."""
    unknown = set(fields) - (set(MOVIE_COLUMNS) - {"external_id"})
    if unknown:
        raise ValidationError(f"Cannot update movie fields: {sorted(unknown)}")

    if fields:
        values = encode_movie_fields(fields)
        values["updated_at"] = utcnow()
        assignments = ", ".join(f"{quote_column(column)} = ?" for column in values)
        async with connect(db_path) as db:
            await db.execute(
                f"UPDATE movies SET {assignments} WHERE id = ?",
                (*values.values(), movie_id),
            )
            await db.commit()

    movie = await get_movie(movie_id, db_path)
    if movie is None:
        raise NotFoundError(f"Movie {movie_id} does not exist")
    return movie


async def relink_external_id(movie_id: int, external_id: str, db_path: Path = DB_PATH) -> Movie:
    """Replace a fallback identifier with an authoritative one."""
    if not is_valid_external_id(external_id):
        raise ValidationError(f"{external_id!r} is not a valid identifier")
    try:
        async with connect(db_path) as db:
            cursor = await db.execute(
                """
                UPDATE movies SET external_id = ?, updated_at = ?
                WHERE id = ? AND substr(external_id, 1, ?) = ?
                """,
                (external_id, utcnow(), movie_id, len(SENTINEL_PREFIX), SENTINEL_PREFIX),
            )
            await db.commit()
    except sqlite3.IntegrityError as exc:
        raise ConflictError(f"Identifier {external_id} already belongs to another movie") from exc
    if cursor.rowcount == 0:
        raise ValidationError(f"Movie {movie_id} does not carry a fallback identifier")
    return await update_movie(movie_id, {}, db_path)


async def find_with_external_id_prefix(
    prefix: str, limit: int = 0, db_path: Path = DB_PATH
) -> list[Movie]:
    sql = "SELECT * FROM movies WHERE substr(external_id, 1, ?) = ? ORDER BY id"
    params: tuple = (len(prefix), prefix)
    if limit > 0:
        sql += " LIMIT ?"
        params += (limit,)
    async with connect(db_path) as db:
        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
    return [row_to_movie(row) for row in rows]


async def find_enrichment_candidates(
    force: bool = False, limit: int = 0, db_path: Path = DB_PATH
) -> list[Movie]:
    """Movies with a metadata-provider id, most popular first."""
    sql = "SELECT * FROM movies WHERE tmdb_id IS NOT NULL AND tmdb_id != ''"
    if not force:
        sql += " AND COALESCE(json_array_length(directors), 0) = 0"
    sql += " ORDER BY popularity DESC, id"
    params: tuple = ()
    if limit > 0:
        sql += " LIMIT ?"
        params = (limit,)
    async with connect(db_path) as db:
        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
    return [row_to_movie(row) for row in rows]


async def find_ids_without_platforms(limit: int = 0, db_path: Path = DB_PATH) -> list[int]:
    return await _select_ids(
        "WHERE COALESCE(json_array_length(platforms), 0) = 0", limit, db_path
    )


async def list_movie_ids(limit: int = 0, db_path: Path = DB_PATH) -> list[int]:
    return await _select_ids("", limit, db_path)


async def count_movies(db_path: Path = DB_PATH) -> int:
    async with connect(db_path) as db:
        async with db.execute("SELECT COUNT(*) FROM movies") as cursor:
            row = await cursor.fetchone()
    return row[0]


async def delete_movies(movie_ids: list[int], db_path: Path = DB_PATH) -> int:
    if not movie_ids:
        return 0
    placeholders = ", ".join("?" for _ in movie_ids)
    async with connect(db_path) as db:
        cursor = await db.execute(f"DELETE FROM movies WHERE id IN ({placeholders})", tuple(movie_ids))
        await db.commit()
    return cursor.rowcount


async def find_movies(query: MovieQuery, db_path: Path = DB_PATH) -> MoviePage:
    """Filtered, sorted, paginated listing for the read path."""
    clauses: list[str] = []
    params: list[Any] = []

    if query.genres:
        placeholders = ", ".join("?" for _ in query.genres)
        clauses.append(
            "EXISTS (SELECT 1 FROM json_each(movies.genres) g "
            f"WHERE lower(g.value) IN ({placeholders}))"
        )
        params.extend(genre.lower() for genre in query.genres)
    if query.platforms:
        placeholders = ", ".join("?" for _ in query.platforms)
        clauses.append(
            "EXISTS (SELECT 1 FROM json_each(movies.platforms) p "
            f"WHERE json_extract(p.value, '$.slug') IN ({placeholders}))"
        )
        params.extend(query.platforms)
    if query.monetization_types:
        placeholders = ", ".join("?" for _ in query.monetization_types)
        clauses.append(
            "EXISTS (SELECT 1 FROM json_each(movies.platforms) p, "
            "json_each(json_extract(p.value, '$.monetization_types')) m "
            f"WHERE m.value IN ({placeholders}))"
        )
        params.extend(kind.value for kind in query.monetization_types)
    if query.release_year is not None:
        clauses.append("release_year = ?")
        params.append(query.release_year)
    if query.min_rating is not None:
        clauses.append("vote_average >= ?")
        params.append(query.min_rating)
    if query.q:
        clauses.append("(instr(lower(title), lower(?)) > 0 OR instr(lower(original_title), lower(?)) > 0)")
        params.extend([query.q, query.q])

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    direction = "ASC" if query.sort_order == "asc" else "DESC"
    order = ", ".join(f"{column} {direction}" for column in SORT_COLUMNS[query.sort_by])
    offset = (query.page - 1) * query.limit

    async with connect(db_path) as db:
        async with db.execute(f"SELECT COUNT(*) FROM movies {where}", params) as cursor:
            total = (await cursor.fetchone())[0]
        async with db.execute(
            f"SELECT * FROM movies {where} ORDER BY {order}, id LIMIT ? OFFSET ?",
            (*params, query.limit, offset),
        ) as cursor:
            rows = await cursor.fetchall()

    return MoviePage(
        items=[row_to_movie(row) for row in rows],
        total=total,
        page=query.page,
        limit=query.limit,
        pages=math.ceil(total / query.limit) if total else 0,
    )


async def _select_ids(where: str, limit: int, db_path: Path) -> list[int]:
    sql = f"SELECT id FROM movies {where} ORDER BY id"
    params: tuple = ()
    if limit > 0:
        sql += " LIMIT ?"
        params = (limit,)
    async with connect(db_path) as db:
        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
    return [row["id"] for row in rows]
