import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Literal, Optional

from fastapi import BackgroundTasks, FastAPI, Query
from fastapi.responses import JSONResponse

import database
import movies
import platforms
import scheduler
from config import get_settings
from database import utcnow
from models import MonetizationType

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _db_path() -> Path:
    return Path(get_settings().database_path)


def _split(value: Optional[str]) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()] if value else []


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await database.init_db(Path(settings.database_path))
    scheduler.start_scheduler(settings)
    yield
    scheduler.stop_scheduler()


app = FastAPI(lifespan=lifespan)


@app.get("/health")
async def health():
    return {"status": "healthy", "timestamp": utcnow()}


@app.get("/health/detailed")
async def health_detailed():
    job = scheduler.get_status()
    database_ok = await database.ping(_db_path())
    status = "healthy" if database_ok else "degraded"
    body = {
        "status": status,
        "timestamp": utcnow(),
        "services": {
            "database": "connected" if database_ok else "disconnected",
            "ingestionJob": "scheduled" if job["is_scheduled"] else "not_scheduled",
        },
        "jobDetails": job,
    }
    return JSONResponse(body, status_code=200 if database_ok else 503)


@app.get("/api/movies")
async def list_movies(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: Literal["popularity", "voteAverage", "releaseDate", "title"] = Query("popularity", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    genres: Optional[str] = None,
    platforms_filter: Optional[str] = Query(None, alias="platforms"),
    release_year: Optional[int] = Query(None, alias="releaseYear", ge=1888, le=2100),
    min_rating: Optional[float] = Query(None, alias="minRating", ge=0, le=10),
    monetization_types: Optional[str] = Query(None, alias="monetizationTypes"),
    q: Optional[str] = Query(None, min_length=1, max_length=200),
):
    try:
        kinds = [MonetizationType(kind) for kind in _split(monetization_types)]
    except ValueError:
        return JSONResponse(
            {"detail": "monetizationTypes must be comma-separated values from: flatrate, rent, buy, ads, free"},
            status_code=400,
        )
    query = movies.MovieQuery(
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        genres=_split(genres),
        platforms=_split(platforms_filter),
        release_year=release_year,
        min_rating=min_rating,
        monetization_types=kinds,
        q=q,
    )
    result = await movies.find_movies(query, _db_path())
    return result.model_dump(mode="json")


@app.get("/api/platforms")
async def list_platforms():
    active = await platforms.find_all_active(_db_path())
    return [platform.model_dump(mode="json") for platform in active]


@app.post("/api/refresh")
async def refresh(background_tasks: BackgroundTasks):
    if scheduler.is_running():
        return {"status": "already_running"}

    settings = get_settings()
    background_tasks.add_task(
        scheduler.run_ingestion,
        settings.ingest_max_pages,
        **scheduler.run_kwargs(settings),
    )
    return {"status": "started"}
