import logging
from pathlib import Path
from typing import Optional

from database import DB_PATH, connect, row_to_availability, utcnow
from models import MONETIZATION_ORDER, Availability, MonetizationType, PlatformSummary, Quality
from movies import update_movie

logger = logging.getLogger(__name__)


async def upsert_availability(
    movie_id: int,
    platform_id: int,
    monetization_type: MonetizationType,
    quality: Quality = Quality.UNKNOWN,
    url: Optional[str] = None,
    db_path: Path = DB_PATH,
) -> Availability:
    """Insert or update the offer keyed by (movie, platform, monetization type)."""
    monetization_type = MonetizationType(monetization_type)
    quality = Quality(quality)
    now = utcnow()
    async with connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO availability
                (movie_id, platform_id, monetization_type, quality, url, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(movie_id, platform_id, monetization_type) DO UPDATE SET
                quality    = excluded.quality,
                url        = excluded.url,
                updated_at = excluded.updated_at
            """,
            (movie_id, platform_id, monetization_type.value, quality.value, url, now, now),
        )
        await db.commit()
        async with db.execute(
            """
            SELECT * FROM availability
            WHERE movie_id = ? AND platform_id = ? AND monetization_type = ?
            """,
            (movie_id, platform_id, monetization_type.value),
        ) as cursor:
            row = await cursor.fetchone()
    return row_to_availability(row)


async def find_for_movie(movie_id: int, db_path: Path = DB_PATH) -> list[Availability]:
    async with connect(db_path) as db:
        async with db.execute(
            "SELECT * FROM availability WHERE movie_id = ? ORDER BY id", (movie_id,)
        ) as cursor:
            rows = await cursor.fetchall()
    return [row_to_availability(row) for row in rows]


async def build_platform_summary(movie_id: int, db_path: Path = DB_PATH) -> list[PlatformSummary]:
    """
    Group a movie's current availability rows by platform.

    Each entry carries the set of monetization types offered on that platform
    and the best quality across them. Entries are ordered by platform name.
    """
    async with connect(db_path) as db:
        async with db.execute(
            """
            SELECT a.platform_id, a.monetization_type, a.quality,
                   p.name AS platform_name, p.slug, p.icon
            FROM availability a
            JOIN platforms p ON p.id = a.platform_id
            WHERE a.movie_id = ?
            ORDER BY p.name COLLATE NOCASE, a.platform_id
            """,
            (movie_id,),
        ) as cursor:
            rows = await cursor.fetchall()

    grouped: dict[int, PlatformSummary] = {}
    for row in rows:
        summary = grouped.get(row["platform_id"])
        if summary is None:
            summary = PlatformSummary(
                platform_id=row["platform_id"],
                platform_name=row["platform_name"],
                slug=row["slug"],
                icon=row["icon"],
            )
            grouped[row["platform_id"]] = summary
        kind = MonetizationType(row["monetization_type"])
        if kind not in summary.monetization_types:
            summary.monetization_types.append(kind)
        quality = Quality(row["quality"])
        if quality.rank > summary.best_quality.rank:
            summary.best_quality = quality

    for summary in grouped.values():
        summary.monetization_types.sort(key=MONETIZATION_ORDER.index)
    return list(grouped.values())


async def sync_platform_summary(
    movie_id: int, force_clear: bool = False, db_path: Path = DB_PATH
) -> list[PlatformSummary]:
    """
    Recompute and persist a movie's platform summary.

    An empty summary is only written when force_clear is set, so a movie's
    existing summary is not replaced by nothing during a partial pass.
    """
    summary = await build_platform_summary(movie_id, db_path)
    if summary or force_clear:
        await update_movie(movie_id, {"platforms": summary}, db_path)
    return summary


async def delete_for_movies(movie_ids: list[int], db_path: Path = DB_PATH) -> int:
    if not movie_ids:
        return 0
    placeholders = ", ".join("?" for _ in movie_ids)
    async with connect(db_path) as db:
        cursor = await db.execute(
            f"DELETE FROM availability WHERE movie_id IN ({placeholders})", tuple(movie_ids)
        )
        await db.commit()
    return cursor.rowcount


async def count_for_movies(movie_ids: list[int], db_path: Path = DB_PATH) -> int:
    if not movie_ids:
        return 0
    placeholders = ", ".join("?" for _ in movie_ids)
    async with connect(db_path) as db:
        async with db.execute(
            f"SELECT COUNT(*) FROM availability WHERE movie_id IN ({placeholders})",
            tuple(movie_ids),
        ) as cursor:
            row = await cursor.fetchone()
    return row[0]


async def repoint_platform(from_platform_id: int, to_platform_id: int, db_path: Path = DB_PATH) -> list[int]:
    """
    Move every availability row from one platform to another.

    Rows whose (movie, monetization type) already exists on the target are
    dropped instead of moved. Returns the ids of the movies touched.
    """
    async with connect(db_path) as db:
        async with db.execute(
            "SELECT DISTINCT movie_id FROM availability WHERE platform_id = ?",
            (from_platform_id,),
        ) as cursor:
            movie_ids = [row["movie_id"] for row in await cursor.fetchall()]
        await db.execute(
            "UPDATE OR IGNORE availability SET platform_id = ?, updated_at = ? WHERE platform_id = ?",
            (to_platform_id, utcnow(), from_platform_id),
        )
        cursor = await db.execute(
            "DELETE FROM availability WHERE platform_id = ?", (from_platform_id,)
        )
        dropped = cursor.rowcount
        await db.commit()
    if dropped:
        logger.info("Dropped %d availability rows already present on platform %d", dropped, to_platform_id)
    return movie_ids


async def count_for_platform(platform_id: int, db_path: Path = DB_PATH) -> int:
    async with connect(db_path) as db:
        async with db.execute(
            "SELECT COUNT(*) FROM availability WHERE platform_id = ?", (platform_id,)
        ) as cursor:
            row = await cursor.fetchone()
    return row[0]
