from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

SENTINEL_PREFIX = "tmdb_"


def is_valid_external_id(value: Optional[str]) -> bool:
    """True for a non-empty identifier that does not carry the fallback prefix."""
    return bool(value) and not value.startswith(SENTINEL_PREFIX)


class MonetizationType(str, Enum):
    FLATRATE = "flatrate"
    FREE = "free"
    ADS = "ads"
    RENT = "rent"
    BUY = "buy"
    UNKNOWN = "unknown"


MONETIZATION_ORDER = list(MonetizationType)


class Quality(str, Enum):
    UHD = "4K"
    HD = "HD"
    SD = "SD"
    UNKNOWN = "unknown"

    @property
    def rank(self) -> int:
        return _QUALITY_RANK[self]


_QUALITY_RANK = {Quality.UNKNOWN: 0, Quality.SD: 1, Quality.HD: 2, Quality.UHD: 3}


class Platform(BaseModel):
    id: Optional[int] = None
    external_id: str
    name: str
    slug: str
    icon: Optional[str] = None
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class PlatformSummary(BaseModel):
    platform_id: int
    platform_name: str
    slug: str
    icon: Optional[str] = None
    monetization_types: list[MonetizationType] = Field(default_factory=list)
    best_quality: Quality = Quality.UNKNOWN


class CrewMember(BaseModel):
    tmdb_id: Optional[str] = None
    name: str
    job: Optional[str] = None
    profile_path: Optional[str] = None


class CastMember(BaseModel):
    tmdb_id: Optional[str] = None
    name: str
    character: Optional[str] = None
    order: Optional[int] = None
    profile_path: Optional[str] = None


class ProductionCompany(BaseModel):
    tmdb_id: Optional[str] = None
    name: str
    logo_path: Optional[str] = None
    origin_country: Optional[str] = None


class Movie(BaseModel):
    id: Optional[int] = None
    external_id: str
    title: str
    original_title: Optional[str] = None
    release_year: Optional[int] = None
    release_date: Optional[str] = None
    overview: Optional[str] = None
    tagline: Optional[str] = None
    runtime: Optional[int] = None
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
    vote_average: Optional[float] = None
    vote_count: Optional[int] = None
    popularity: Optional[float] = None
    original_language: Optional[str] = None
    spoken_languages: list[str] = Field(default_factory=list)
    production_countries: list[str] = Field(default_factory=list)
    imdb_id: Optional[str] = None
    tmdb_id: Optional[str] = None
    genres: list[str] = Field(default_factory=list)
    directors: list[CrewMember] = Field(default_factory=list)
    cast: list[CastMember] = Field(default_factory=list)
    writers: list[CrewMember] = Field(default_factory=list)
    production_companies: list[ProductionCompany] = Field(default_factory=list)
    is_enriched: bool = False
    last_enriched_at: Optional[str] = None
    platforms: list[PlatformSummary] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Availability(BaseModel):
    id: Optional[int] = None
    movie_id: int
    platform_id: int
    monetization_type: MonetizationType = MonetizationType.UNKNOWN
    quality: Quality = Quality.UNKNOWN
    url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Offer(BaseModel):
    """One provider's terms for one title, in canonical form."""

    provider_id: str
    provider_name: Optional[str] = None
    monetization_type: MonetizationType = MonetizationType.UNKNOWN
    quality: Quality = Quality.UNKNOWN
    url: Optional[str] = None
