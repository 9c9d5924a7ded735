import logging
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from errors import UpstreamError
from models import CastMember, CrewMember, ProductionCompany

logger = logging.getLogger(__name__)

TMDB_BASE = "https://api.themoviedb.org/3"
MAX_CAST = 15
WRITER_JOBS = {"Screenplay", "Writer", "Story", "Novel", "Author"}


class MovieMetadata(BaseModel):
    """Metadata-provider fields in catalog form, ready for the enrichment merge."""

    tmdb_id: Optional[str] = None
    overview: Optional[str] = None
    tagline: Optional[str] = None
    runtime: Optional[int] = None
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
    vote_average: Optional[float] = None
    vote_count: Optional[int] = None
    popularity: Optional[float] = None
    imdb_id: Optional[str] = None
    original_language: Optional[str] = None
    release_date: Optional[str] = None
    spoken_languages: list[str] = Field(default_factory=list)
    production_countries: list[str] = Field(default_factory=list)
    genres: list[str] = Field(default_factory=list)
    directors: list[CrewMember] = Field(default_factory=list)
    writers: list[CrewMember] = Field(default_factory=list)
    cast: list[CastMember] = Field(default_factory=list)
    production_companies: list[ProductionCompany] = Field(default_factory=list)


async def get_movie_details(client: httpx.AsyncClient, api_key: str, tmdb_id: str) -> Optional[dict]:
    """Fetch a movie with credits. Returns None if TMDB does not know the id."""
    try:
        response = await client.get(
            f"{TMDB_BASE}/movie/{tmdb_id}",
            params={"api_key": api_key, "append_to_response": "credits"},
        )
    except httpx.HTTPError as exc:
        raise UpstreamError(f"TMDB request for {tmdb_id} failed: {exc}") from exc

    if response.status_code == 404:
        return None
    try:
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as exc:
        raise UpstreamError(f"TMDB returned {response.status_code} for {tmdb_id}") from exc
    except ValueError as exc:
        raise UpstreamError(f"TMDB returned a non-JSON response for {tmdb_id}") from exc


def normalize_movie_details(data: dict) -> MovieMetadata:
    credits = data.get("credits") or {}
    crew = credits.get("crew") or []

    directors = _unique_crew(c for c in crew if c.get("job") == "Director")
    writers = _unique_crew(c for c in crew if c.get("job") in WRITER_JOBS)

    cast = [
        CastMember(
            tmdb_id=_str_or_none(member.get("id")),
            name=member["name"],
            character=member.get("character"),
            order=member.get("order"),
            profile_path=member.get("profile_path"),
        )
        for member in sorted(credits.get("cast") or [], key=lambda m: m.get("order") or 0)
        if member.get("name")
    ][:MAX_CAST]

    companies = [
        ProductionCompany(
            tmdb_id=_str_or_none(company.get("id")),
            name=company["name"],
            logo_path=company.get("logo_path"),
            origin_country=company.get("origin_country") or None,
        )
        for company in data.get("production_companies") or []
        if company.get("name")
    ]

    return MovieMetadata(
        tmdb_id=_str_or_none(data.get("id")),
        overview=data.get("overview") or None,
        tagline=data.get("tagline") or None,
        runtime=data.get("runtime") or None,
        poster_path=data.get("poster_path"),
        backdrop_path=data.get("backdrop_path"),
        vote_average=data.get("vote_average"),
        vote_count=data.get("vote_count"),
        popularity=data.get("popularity"),
        imdb_id=data.get("imdb_id") or None,
        original_language=data.get("original_language"),
        release_date=data.get("release_date") or None,
        spoken_languages=_unique(lang.get("iso_639_1") for lang in data.get("spoken_languages") or []),
        production_countries=_unique(c.get("iso_3166_1") for c in data.get("production_countries") or []),
        genres=_unique(g.get("name") for g in data.get("genres") or []),
        directors=directors,
        writers=writers,
        cast=cast,
        production_companies=companies,
    )


def _unique_crew(members) -> list[CrewMember]:
    seen: set[str] = set()
    result: list[CrewMember] = []
    for member in members:
        name = member.get("name")
        if not name or name in seen:
            continue
        seen.add(name)
        result.append(
            CrewMember(
                tmdb_id=_str_or_none(member.get("id")),
                name=name,
                job=member.get("job"),
                profile_path=member.get("profile_path"),
            )
        )
    return result


def _unique(values) -> list[str]:
    result: list[str] = []
    for value in values:
        if value and value not in result:
            result.append(value)
    return result


def _str_or_none(value) -> Optional[str]:
    return str(value) if value is not None else None
