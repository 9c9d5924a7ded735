import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

import database
from config import Settings
from ingestion import (
    DEFAULT_PAGE_DELAY,
    DEFAULT_PAGE_RETRIES,
    DEFAULT_PAGE_SIZE,
    IngestionResult,
    ingest_popular_movies,
)
from justwatch import DEFAULT_COUNTRY, DEFAULT_LANGUAGE

logger = logging.getLogger(__name__)

_ingest_lock = asyncio.Lock()
_ingest_state: dict[str, Any] = {"is_running": False, "last_run": None, "schedule": None}
_scheduler: Optional[AsyncIOScheduler] = None


async def run_ingestion(
    max_pages: int,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
    page_delay: float = DEFAULT_PAGE_DELAY,
    retries: int = DEFAULT_PAGE_RETRIES,
    country: str = DEFAULT_COUNTRY,
    language: str = DEFAULT_LANGUAGE,
    db_path: Path = database.DB_PATH,
) -> Optional[IngestionResult]:
    """
    Run one catalog ingestion pass.
    Returns the run result, or None if a run was already in progress.
    """
    if _ingest_state["is_running"]:
        logger.info("Ingestion already in progress, skipping.")
        return None

    async with _ingest_lock:
        if _ingest_state["is_running"]:
            return None
        _ingest_state["is_running"] = True

    try:
        result = await ingest_popular_movies(
            max_pages,
            page_size=page_size,
            page_delay=page_delay,
            retries=retries,
            country=country,
            language=language,
            db_path=db_path,
        )
        _ingest_state["last_run"] = result
        return result
    finally:
        _ingest_state["is_running"] = False


def run_kwargs(settings: Settings) -> dict[str, Any]:
    return {
        "page_size": settings.ingest_page_size,
        "page_delay": settings.page_delay_seconds,
        "retries": settings.page_fetch_retries,
        "country": settings.country,
        "language": settings.language,
        "db_path": Path(settings.database_path),
    }


def get_status() -> dict[str, Any]:
    last_run: Optional[IngestionResult] = _ingest_state["last_run"]
    return {
        "is_scheduled": bool(_scheduler and _scheduler.running),
        "is_running": _ingest_state["is_running"],
        "schedule": _ingest_state["schedule"],
        "last_run": last_run.model_dump(mode="json") if last_run else None,
    }


def is_running() -> bool:
    return _ingest_state["is_running"]


def start_scheduler(settings: Settings) -> None:
    """Create and start the APScheduler with the ingestion job."""
    global _scheduler

    minute, hour, day, month, day_of_week = settings.ingest_schedule.split()

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        run_ingestion,
        "cron",
        args=[settings.ingest_max_pages],
        kwargs=run_kwargs(settings),
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
    )
    _scheduler.start()
    _ingest_state["schedule"] = settings.ingest_schedule
    logger.info("Scheduler started. Cron: %s", settings.ingest_schedule)


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown()
    _scheduler = None
    _ingest_state["schedule"] = None
