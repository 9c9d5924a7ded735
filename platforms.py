import logging
import re
import sqlite3
from pathlib import Path
from typing import Optional

from database import DB_PATH, connect, row_to_platform, utcnow
from errors import ConflictError, ValidationError
from models import Platform

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_UPDATABLE = ("external_id", "name", "slug", "icon", "is_active")


def slugify(name: str) -> str:
    """Lower-case name with each run of non-alphanumerics collapsed to one hyphen."""
    return _NON_ALNUM.sub("-", name.lower()).strip("-")


async def find_by_external_id(external_id: Optional[str], db_path: Path = DB_PATH) -> Optional[Platform]:
    if not external_id:
        return None
    return await _find_one("external_id = ?", (str(external_id),), db_path)


async def find_by_slug(slug: str, db_path: Path = DB_PATH) -> Optional[Platform]:
    return await _find_one("slug = ?", (slug,), db_path)


async def get_platform(platform_id: int, db_path: Path = DB_PATH) -> Optional[Platform]:
    return await _find_one("id = ?", (platform_id,), db_path)


async def resolve_or_create(
    external_id: str,
    name: Optional[str],
    icon: Optional[str] = None,
    db_path: Path = DB_PATH,
) -> Platform:
    """
    Return the canonical platform for a provider, creating it if needed.

    Lookup goes by external id first, then by slug, since the same provider has
    shown up under more than one id upstream. A unique-index race with another
    writer is resolved by re-querying for the winner.
    """
    external_id = str(external_id)
    existing = await find_by_external_id(external_id, db_path)
    if existing:
        return existing

    if not name or not slugify(name):
        raise ValidationError(f"Platform {external_id} has no usable name")
    slug = slugify(name)

    existing = await find_by_slug(slug, db_path)
    if existing:
        return existing

    try:
        platform = await _insert(external_id, name, slug, icon, db_path)
    except ConflictError:
        winner = await _find_one("external_id = ? OR slug = ?", (external_id, slug), db_path)
        if winner is None:
            raise
        logger.debug("Platform %s created concurrently, using %s", name, winner.slug)
        return winner

    logger.debug("Created platform %s (slug: %s)", platform.name, platform.slug)
    return platform


async def find_all_active(db_path: Path = DB_PATH) -> list[Platform]:
    return await _find_many("WHERE is_active = 1", (), db_path)


async def find_all(db_path: Path = DB_PATH) -> list[Platform]:
    return await _find_many("", (), db_path)


async def find_with_external_id_prefix(prefix: str, db_path: Path = DB_PATH) -> list[Platform]:
    return await _find_many("WHERE substr(external_id, 1, ?) = ?", (len(prefix), prefix), db_path)


async def update_platform(platform_id: int, fields: dict, db_path: Path = DB_PATH) -> Optional[Platform]:
    unknown = set(fields) - set(_UPDATABLE)
    if unknown:
        raise ValidationError(f"Cannot update platform fields: {sorted(unknown)}")
    if not fields:
        return await get_platform(platform_id, db_path)

    values = dict(fields)
    if "is_active" in values:
        values["is_active"] = int(bool(values["is_active"]))
    values["updated_at"] = utcnow()
    assignments = ", ".join(f"{key} = ?" for key in values)
    try:
        async with connect(db_path) as db:
            await db.execute(
                f"UPDATE platforms SET {assignments} WHERE id = ?",
                (*values.values(), platform_id),
            )
            await db.commit()
    except sqlite3.IntegrityError as exc:
        raise ConflictError(f"Platform update collides with an existing record: {exc}") from exc
    return await get_platform(platform_id, db_path)


async def deactivate(platform_id: int, db_path: Path = DB_PATH) -> Optional[Platform]:
    """Soft delete: the record stays so availability rows keep their target."""
    return await update_platform(platform_id, {"is_active": False}, db_path)


async def delete_platform(platform_id: int, db_path: Path = DB_PATH) -> None:
    async with connect(db_path) as db:
        await db.execute("DELETE FROM platforms WHERE id = ?", (platform_id,))
        await db.commit()


async def _insert(
    external_id: str, name: str, slug: str, icon: Optional[str], db_path: Path
) -> Platform:
    now = utcnow()
    try:
        async with connect(db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO platforms (external_id, name, slug, icon, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, ?)
                """,
                (external_id, name, slug, icon, now, now),
            )
            await db.commit()
            platform_id = cursor.lastrowid
    except sqlite3.IntegrityError as exc:
        raise ConflictError(str(exc)) from exc
    return Platform(
        id=platform_id,
        external_id=external_id,
        name=name,
        slug=slug,
        icon=icon,
        created_at=now,
        updated_at=now,
    )


async def _find_one(where: str, params: tuple, db_path: Path) -> Optional[Platform]:
    async with connect(db_path) as db:
        async with db.execute(f"SELECT * FROM platforms WHERE {where} LIMIT 1", params) as cursor:
            row = await cursor.fetchone()
    return row_to_platform(row) if row else None


async def _find_many(where: str, params: tuple, db_path: Path) -> list[Platform]:
    async with connect(db_path) as db:
        async with db.execute(f"SELECT * FROM platforms {where} ORDER BY name", params) as cursor:
            rows = await cursor.fetchall()
    return [row_to_platform(row) for row in rows]
