"""
Reconciliation actions for records ingested with wrong or fallback identifiers.

Destructive actions take ``confirm``; without it they only report what they
would change.
"""

import asyncio
import logging
from pathlib import Path
from typing import Literal, Optional

import httpx
from pydantic import BaseModel, Field

import availability
import movies
import platforms
from database import DB_PATH
from errors import CatalogError, ConflictError, NotFoundError
from ingestion import apply_offers
from justwatch import (
    DEFAULT_COUNTRY,
    DEFAULT_LANGUAGE,
    create_client,
    extract_offers,
    fetch_title_details,
    search_title,
)
from models import SENTINEL_PREFIX

logger = logging.getLogger(__name__)

UnmatchedPolicy = Literal["retain", "purge"]


class PurgeReport(BaseModel):
    dry_run: bool
    candidates: list[str] = Field(default_factory=list)
    movies_deleted: int = 0
    availabilities_deleted: int = 0


class PlatformIdFix(BaseModel):
    name: str
    old_id: str
    new_id: str


class PlatformIdReport(BaseModel):
    dry_run: bool
    fixed: list[PlatformIdFix] = Field(default_factory=list)
    needs_merge: list[PlatformIdFix] = Field(default_factory=list)


class MergeReport(BaseModel):
    dry_run: bool
    duplicate: Optional[str] = None
    survivor: Optional[str] = None
    renamed_only: bool = False
    availabilities_moved: int = 0
    movies_resynced: int = 0


class BatchReport(BaseModel):
    processed: int = 0
    updated: int = 0
    empty: int = 0
    errors: int = 0
    availabilities: int = 0


class RelinkReport(BaseModel):
    processed: int = 0
    relinked: int = 0
    not_found: int = 0
    duplicates: int = 0
    purged: int = 0
    errors: int = 0
    availabilities: int = 0


async def purge_invalid_movies(confirm: bool = False, db_path: Path = DB_PATH) -> PurgeReport:
    """Delete movies carrying a fallback identifier, with their availability rows."""
    invalid = await movies.find_with_external_id_prefix(SENTINEL_PREFIX, db_path=db_path)
    report = PurgeReport(
        dry_run=not confirm,
        candidates=[movie.external_id for movie in invalid],
    )
    logger.info("Found %d movies with fallback identifiers", len(invalid))
    movie_ids = [movie.id for movie in invalid]

    if not confirm:
        report.availabilities_deleted = await availability.count_for_movies(movie_ids, db_path)
        report.movies_deleted = len(movie_ids)
        return report

    report.availabilities_deleted = await availability.delete_for_movies(movie_ids, db_path)
    report.movies_deleted = await movies.delete_movies(movie_ids, db_path)
    logger.info(
        "Deleted %d movies and %d availability records",
        report.movies_deleted,
        report.availabilities_deleted,
    )
    return report


async def fix_platform_ids(confirm: bool = False, db_path: Path = DB_PATH) -> PlatformIdReport:
    """
    Strip the fallback prefix from platform identifiers.

    A platform whose corrected id already exists is left alone and reported
    for merging instead.
    """
    report = PlatformIdReport(dry_run=not confirm)
    prefixed = await platforms.find_with_external_id_prefix(SENTINEL_PREFIX, db_path)
    for platform in prefixed:
        new_id = platform.external_id[len(SENTINEL_PREFIX) :]
        fix = PlatformIdFix(name=platform.name, old_id=platform.external_id, new_id=new_id)
        if await platforms.find_by_external_id(new_id, db_path):
            logger.info("%s: %s already exists, needs merge", platform.name, new_id)
            report.needs_merge.append(fix)
            continue
        if confirm:
            await platforms.update_platform(platform.id, {"external_id": new_id}, db_path)
            logger.info("Fixed %s: %s -> %s", platform.name, fix.old_id, new_id)
        report.fixed.append(fix)
    return report


async def merge_platforms(
    duplicate_external_id: str,
    survivor_external_id: str,
    rename: Optional[str] = None,
    confirm: bool = False,
    db_path: Path = DB_PATH,
) -> MergeReport:
    """
    Fold a duplicate platform into the record that represents the same provider.

    Availability rows move to the survivor before the duplicate is deleted, and
    the summaries of every affected movie are rebuilt. When only the duplicate
    exists it simply takes over the survivor's identifier.
    """
    report = MergeReport(dry_run=not confirm)
    duplicate = await platforms.find_by_external_id(duplicate_external_id, db_path)
    if duplicate is None:
        raise NotFoundError(f"No platform with id {duplicate_external_id}")
    report.duplicate = duplicate.name

    survivor = await platforms.find_by_external_id(survivor_external_id, db_path)
    if survivor is None:
        report.renamed_only = True
        report.survivor = rename or duplicate.name
        if confirm:
            fields = {"external_id": survivor_external_id}
            if rename:
                fields.update(name=rename, slug=platforms.slugify(rename))
            await platforms.update_platform(duplicate.id, fields, db_path)
        return report

    report.survivor = survivor.name
    affected = await availability.count_for_platform(duplicate.id, db_path)
    report.availabilities_moved = affected
    if not confirm:
        return report

    movie_ids = await availability.repoint_platform(duplicate.id, survivor.id, db_path)
    await platforms.delete_platform(duplicate.id, db_path)
    logger.info("Deleted duplicate platform %s", duplicate.name)

    if rename:
        survivor = await platforms.update_platform(
            survivor.id, {"name": rename, "slug": platforms.slugify(rename)}, db_path
        )
        report.survivor = survivor.name

    for movie_id in movie_ids:
        await availability.sync_platform_summary(movie_id, force_clear=True, db_path=db_path)
    report.movies_resynced = len(movie_ids)
    return report


async def rebuild_platform_summaries(
    limit: int = 0, batch_size: int = 50, db_path: Path = DB_PATH
) -> BatchReport:
    """Recompute every movie's summary, clearing those with no availability left."""
    batch_size = max(batch_size, 1)
    movie_ids = await movies.list_movie_ids(limit, db_path)
    report = BatchReport()
    logger.info("Rebuilding platform summaries for %d movies", len(movie_ids))

    for index, movie_id in enumerate(movie_ids, start=1):
        try:
            summary = await availability.sync_platform_summary(movie_id, force_clear=True, db_path=db_path)
        except CatalogError as exc:
            report.errors += 1
            logger.warning("Error syncing platforms for movie %d: %s", movie_id, exc)
            continue
        report.processed += 1
        if summary:
            report.updated += 1
        else:
            report.empty += 1
        if index % batch_size == 0:
            logger.info("Progress: %d/%d", index, len(movie_ids))
    return report


async def refresh_availability(
    client: Optional[httpx.AsyncClient] = None,
    *,
    limit: int = 0,
    batch_size: int = 50,
    delay: float = 0.2,
    country: str = DEFAULT_COUNTRY,
    language: str = DEFAULT_LANGUAGE,
    db_path: Path = DB_PATH,
) -> BatchReport:
    """Re-fetch offers for movies whose platform summary is empty."""
    if client is None:
        async with create_client() as owned_client:
            return await refresh_availability(
                owned_client,
                limit=limit,
                batch_size=batch_size,
                delay=delay,
                country=country,
                language=language,
                db_path=db_path,
            )

    batch_size = max(batch_size, 1)
    movie_ids = await movies.find_ids_without_platforms(limit, db_path)
    report = BatchReport()
    logger.info("Found %d movies without availability", len(movie_ids))

    for index, movie_id in enumerate(movie_ids, start=1):
        movie = await movies.get_movie(movie_id, db_path)
        if movie is None:
            continue
        try:
            title = await fetch_title_details(client, movie.external_id, country, language)
            offers = extract_offers(title) if title else []
            written = await apply_offers(movie, offers, db_path) if offers else 0
        except CatalogError as exc:
            report.errors += 1
            logger.debug("Error refreshing %s: %s", movie.title, exc)
        else:
            if written:
                report.updated += 1
                report.availabilities += written
            else:
                report.empty += 1
        report.processed += 1

        if index % batch_size == 0:
            logger.info(
                "Progress: %d/%d - updated: %d, no offers: %d, errors: %d",
                index,
                len(movie_ids),
                report.updated,
                report.empty,
                report.errors,
            )
        await asyncio.sleep(delay)
    return report


async def relink_sentinel_movies(
    client: Optional[httpx.AsyncClient] = None,
    *,
    limit: int = 0,
    delay: float = 0.25,
    unmatched_policy: UnmatchedPolicy = "retain",
    country: str = DEFAULT_COUNTRY,
    language: str = DEFAULT_LANGUAGE,
    db_path: Path = DB_PATH,
) -> RelinkReport:
    """
    Look up catalog identifiers for movies that only have a fallback one.

    Matches come from the title/year search. A movie with no match is kept for
    a later attempt under the "retain" policy, or deleted under "purge".
    """
    if client is None:
        async with create_client() as owned_client:
            return await relink_sentinel_movies(
                owned_client,
                limit=limit,
                delay=delay,
                unmatched_policy=unmatched_policy,
                country=country,
                language=language,
                db_path=db_path,
            )

    candidates = await movies.find_with_external_id_prefix(SENTINEL_PREFIX, limit, db_path)
    report = RelinkReport()
    logger.info("Found %d movies with fallback identifiers", len(candidates))

    for movie in candidates:
        report.processed += 1
        tmdb_id = movie.tmdb_id or movie.external_id[len(SENTINEL_PREFIX) :]
        try:
            match = await search_title(client, movie.title, movie.release_year, tmdb_id, country, language)
            if match is None or not match.external_id:
                report.not_found += 1
                if unmatched_policy == "purge":
                    await availability.delete_for_movies([movie.id], db_path)
                    report.purged += await movies.delete_movies([movie.id], db_path)
                continue

            try:
                relinked = await movies.relink_external_id(movie.id, match.external_id, db_path)
            except ConflictError:
                report.duplicates += 1
                logger.info("%s: %s already belongs to another movie", movie.title, match.external_id)
                continue

            written = await apply_offers(relinked, extract_offers(match), db_path)
            report.relinked += 1
            report.availabilities += written
            logger.info("%s -> %s (%d availabilities)", movie.title, match.external_id, written)
        except CatalogError as exc:
            report.errors += 1
            logger.warning("Error relinking %s: %s", movie.title, exc)
        finally:
            await asyncio.sleep(delay)
    return report
