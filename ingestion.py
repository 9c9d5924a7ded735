import asyncio
import logging
import sqlite3
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import httpx
from pydantic import BaseModel

import availability
import movies
import platforms
from database import DB_PATH, utcnow
from errors import CatalogError, NotFoundError, UpstreamError, ValidationError
from justwatch import (
    DEFAULT_COUNTRY,
    DEFAULT_LANGUAGE,
    CatalogPage,
    CursorCache,
    JustWatchTitle,
    create_client,
    extract_offers,
    fetch_catalog_page,
    fetch_providers,
    normalize_movie,
    parse_title,
)
from merge import INGESTION_POLICY, merge_fields
from models import Movie, Offer, is_valid_external_id

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 20
DEFAULT_PAGE_SIZE = 50
DEFAULT_PAGE_DELAY = 0.5
DEFAULT_PAGE_RETRIES = 2
RETRY_BACKOFF = 1.0


class RunState(str, Enum):
    IDLE = "idle"
    FETCHING_PAGE = "fetching_page"
    PROCESSING_ITEMS = "processing_items"
    DONE = "done"


class IngestionResult(BaseModel):
    state: RunState = RunState.IDLE
    pages_fetched: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    availabilities: int = 0
    stopped_early: bool = False
    aborted: bool = False
    error: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class TitleOutcome(BaseModel):
    movie: Movie
    created: bool
    availabilities: int


async def ingest_popular_movies(
    max_pages: int = DEFAULT_MAX_PAGES,
    *,
    client: Optional[httpx.AsyncClient] = None,
    cursors: Optional[CursorCache] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    page_delay: float = DEFAULT_PAGE_DELAY,
    retries: int = DEFAULT_PAGE_RETRIES,
    country: str = DEFAULT_COUNTRY,
    language: str = DEFAULT_LANGUAGE,
    db_path: Path = DB_PATH,
) -> IngestionResult:
    """
    Walk the popular-movies catalog page by page and reconcile it into the store.

    Items are processed one at a time. An item failure is logged and counted;
    a page that cannot be fetched ends the run, keeping everything committed
    so far. Reaching ``max_pages`` while upstream has more is reported as
    ``stopped_early``.
    """
    if client is None:
        async with create_client() as owned_client:
            return await ingest_popular_movies(
                max_pages,
                client=owned_client,
                cursors=cursors,
                page_size=page_size,
                page_delay=page_delay,
                retries=retries,
                country=country,
                language=language,
                db_path=db_path,
            )

    cursors = cursors if cursors is not None else CursorCache()
    cursors.reset()
    result = IngestionResult(started_at=utcnow())
    logger.info("Starting ingestion of popular movies (max %d pages)", max_pages)

    page = 1
    while page <= max_pages:
        result.state = RunState.FETCHING_PAGE
        logger.info("Fetching page %d/%d", page, max_pages)
        try:
            response = await _fetch_page(client, page, page_size, cursors, retries, country, language)
        except UpstreamError as exc:
            logger.error("Failed to fetch page %d, aborting run: %s", page, exc)
            result.aborted = True
            result.error = str(exc)
            break
        result.pages_fetched += 1

        if not response.items:
            logger.info("No movies on page %d", page)
            break

        result.state = RunState.PROCESSING_ITEMS
        logger.info(
            "Processing %d movies (page %d, total available: %s)",
            len(response.items),
            page,
            response.total_count if response.total_count is not None else "unknown",
        )
        for raw in response.items:
            await _process_counted(raw, result, db_path)

        if not response.has_next_page:
            logger.info("Reached last page (%d)", page)
            break
        if page == max_pages:
            result.stopped_early = True
            logger.info("Stopped at max pages (%d), more content available", max_pages)
            break

        page += 1
        await asyncio.sleep(page_delay)

    result.state = RunState.DONE
    result.finished_at = utcnow()
    logger.info(
        "Ingestion complete: %d processed, %d created, %d updated, %d skipped, %d errors, %d availabilities",
        result.processed,
        result.created,
        result.updated,
        result.skipped,
        result.errors,
        result.availabilities,
    )
    return result


async def _fetch_page(
    client: httpx.AsyncClient,
    page: int,
    page_size: int,
    cursors: CursorCache,
    retries: int,
    country: str,
    language: str,
) -> CatalogPage:
    attempt = 0
    while True:
        try:
            return await fetch_catalog_page(client, page, page_size, cursors, country, language)
        except UpstreamError as exc:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning("Page %d fetch failed (attempt %d/%d): %s", page, attempt, retries + 1, exc)
            await asyncio.sleep(RETRY_BACKOFF * attempt)


async def _process_counted(raw: dict[str, Any], result: IngestionResult, db_path: Path) -> None:
    label = raw.get("objectId") or raw.get("id")
    try:
        outcome = await process_title(parse_title(raw), db_path)
    except NotFoundError as exc:
        result.skipped += 1
        logger.info("Skipped %s: %s", label, exc)
        return
    except (UpstreamError, ValidationError) as exc:
        result.errors += 1
        logger.warning("Invalid movie %s: %s", label, exc)
        return
    except Exception:
        result.errors += 1
        logger.exception("Error processing movie %s", label)
        return

    result.processed += 1
    result.availabilities += outcome.availabilities
    if outcome.created:
        result.created += 1
    else:
        result.updated += 1


async def process_title(title: JustWatchTitle, db_path: Path = DB_PATH) -> TitleOutcome:
    """Upsert one catalog title, its offers and its platform summary."""
    fields = normalize_movie(title)
    external_id = fields["external_id"]
    if not external_id:
        raise NotFoundError("title has no catalog identifier")
    if not is_valid_external_id(external_id):
        raise ValidationError(f"identifier {external_id!r} is not from the catalog")
    if not fields["title"]:
        raise ValidationError(f"title {external_id} has no name")

    movie = await movies.find_by_external_id(external_id, db_path)
    created = movie is None
    if created:
        movie = await movies.create_movie({k: v for k, v in fields.items() if v is not None}, db_path)
        logger.info("Created new movie: %s (%s)", movie.title, movie.release_year or "N/A")
    else:
        updates = merge_fields(movie, fields, INGESTION_POLICY)
        movie = await movies.update_movie(movie.id, updates, db_path)

    upserted = await apply_offers(movie, extract_offers(title), db_path)
    return TitleOutcome(movie=movie, created=created, availabilities=upserted)


async def apply_offers(movie: Movie, offers: list[Offer], db_path: Path = DB_PATH) -> int:
    """
    Upsert a movie's offers and refresh its platform summary.

    Returns the number of availability rows written. The summary is only
    rebuilt when at least one row was written.
    """
    upserted = 0
    for offer in offers:
        try:
            platform = await platforms.resolve_or_create(offer.provider_id, offer.provider_name, db_path=db_path)
        except ValidationError as exc:
            logger.debug("Skipping offer for provider %s: %s", offer.provider_id, exc)
            continue

        try:
            await availability.upsert_availability(
                movie.id,
                platform.id,
                offer.monetization_type,
                offer.quality,
                offer.url,
                db_path=db_path,
            )
        except sqlite3.Error as exc:
            logger.warning("Failed to upsert availability for %s on %s: %s", movie.title, platform.name, exc)
            continue
        upserted += 1

    if upserted:
        await availability.sync_platform_summary(movie.id, db_path=db_path)
    return upserted


async def sync_platforms(
    client: Optional[httpx.AsyncClient] = None,
    country: str = DEFAULT_COUNTRY,
    db_path: Path = DB_PATH,
) -> int:
    """Register every provider upstream knows about. Returns the number resolved."""
    if client is None:
        async with create_client() as owned_client:
            return await sync_platforms(owned_client, country, db_path)

    logger.info("Syncing platforms from JustWatch")
    providers = await fetch_providers(client, country)
    if not providers:
        logger.warning("No providers fetched from JustWatch")
        return 0

    synced = 0
    for provider in providers:
        if not provider.provider_id:
            continue
        try:
            await platforms.resolve_or_create(
                provider.provider_id, provider.display_name, provider.icon, db_path=db_path
            )
        except CatalogError as exc:
            logger.warning("Skipping provider %s: %s", provider.display_name, exc)
            continue
        synced += 1
    logger.info("Synced %d platforms from JustWatch", synced)
    return synced
