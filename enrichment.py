import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import httpx
from pydantic import BaseModel

import movies
from database import DB_PATH, utcnow
from errors import CatalogError
from merge import ENRICHMENT_POLICY, merge_fields
from models import Movie
from tmdb import get_movie_details, normalize_movie_details

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_DELAY = 1.0


class EnrichmentStatus(str, Enum):
    ENRICHED = "enriched"
    SKIPPED = "skipped"
    ERROR = "error"


class EnrichmentOutcome(BaseModel):
    status: EnrichmentStatus
    reason: Optional[str] = None
    directors: int = 0
    cast: int = 0


class EnrichmentStats(BaseModel):
    candidates: int = 0
    processed: int = 0
    enriched: int = 0
    skipped: int = 0
    errors: int = 0


async def enrich_movie(
    client: httpx.AsyncClient, api_key: str, movie: Movie, db_path: Path = DB_PATH
) -> EnrichmentOutcome:
    """Merge metadata-provider details into one movie without clobbering filled fields."""
    if not movie.tmdb_id:
        return EnrichmentOutcome(status=EnrichmentStatus.SKIPPED, reason="no_tmdb_id")

    try:
        data = await get_movie_details(client, api_key, movie.tmdb_id)
        if data is None:
            return EnrichmentOutcome(status=EnrichmentStatus.SKIPPED, reason="tmdb_not_found")

        metadata = normalize_movie_details(data)
        updates = merge_fields(movie, dict(metadata), ENRICHMENT_POLICY)
        updates["is_enriched"] = True
        updates["last_enriched_at"] = utcnow()
        await movies.update_movie(movie.id, updates, db_path)
    except CatalogError as exc:
        return EnrichmentOutcome(status=EnrichmentStatus.ERROR, reason=str(exc))
    except Exception as exc:
        logger.exception("Unexpected error enriching %s", movie.title)
        return EnrichmentOutcome(status=EnrichmentStatus.ERROR, reason=repr(exc))

    return EnrichmentOutcome(
        status=EnrichmentStatus.ENRICHED,
        directors=len(metadata.directors),
        cast=len(metadata.cast),
    )


async def run_enrichment(
    api_key: str,
    *,
    limit: int = 0,
    batch_size: int = DEFAULT_BATCH_SIZE,
    delay: float = DEFAULT_BATCH_DELAY,
    force: bool = False,
    client: Optional[httpx.AsyncClient] = None,
    db_path: Path = DB_PATH,
) -> EnrichmentStats:
    """
    Backfill credits and empty fields for movies that have a TMDB id.

    Without ``force`` only movies that have no directors yet are picked. The
    candidate list is read once up front, most popular first.
    """
    if client is None:
        async with httpx.AsyncClient(timeout=30.0) as owned_client:
            return await run_enrichment(
                api_key,
                limit=limit,
                batch_size=batch_size,
                delay=delay,
                force=force,
                client=owned_client,
                db_path=db_path,
            )

    candidates = await movies.find_enrichment_candidates(force=force, limit=limit, db_path=db_path)
    stats = EnrichmentStats(candidates=len(candidates))
    logger.info("Found %d movies to enrich (force=%s)", len(candidates), force)

    batch_size = max(batch_size, 1)
    for start in range(0, len(candidates), batch_size):
        batch = candidates[start : start + batch_size]
        logger.info("Processing batch %d (%d movies)", start // batch_size + 1, len(batch))

        for movie in batch:
            outcome = await enrich_movie(client, api_key, movie, db_path)
            stats.processed += 1
            if outcome.status is EnrichmentStatus.ENRICHED:
                stats.enriched += 1
                logger.debug(
                    "Enriched %s (%d directors, %d cast)", movie.title, outcome.directors, outcome.cast
                )
            elif outcome.status is EnrichmentStatus.SKIPPED:
                stats.skipped += 1
                logger.debug("Skipped %s (%s)", movie.title, outcome.reason)
            else:
                stats.errors += 1
                logger.warning("Error enriching %s: %s", movie.title, outcome.reason)

        logger.info(
            "Progress: %d/%d - enriched: %d, skipped: %d, errors: %d",
            stats.processed,
            stats.candidates,
            stats.enriched,
            stats.skipped,
            stats.errors,
        )
        if start + batch_size < len(candidates):
            await asyncio.sleep(delay)

    return stats
