import logging
from typing import Annotated, Any, Optional

import httpx
import pydantic
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from errors import UpstreamError
from models import MonetizationType, Offer, Quality

logger = logging.getLogger(__name__)

GRAPHQL_URL = "https://apis.justwatch.com/graphql"
USER_AGENT = "movie-catalog/1.0 (catalog ingestion)"
DEFAULT_COUNTRY = "IN"
DEFAULT_LANGUAGE = "en"
SEARCH_RESULTS = 15

_MONETIZATION_TYPES = {
    "FLATRATE": MonetizationType.FLATRATE,
    "RENT": MonetizationType.RENT,
    "BUY": MonetizationType.BUY,
    "ADS": MonetizationType.ADS,
    "FREE": MonetizationType.FREE,
}


def _as_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


ExternalId = Annotated[Optional[str], BeforeValidator(_as_str)]


class _UpstreamModel(BaseModel):
    # Every upstream field is optional; absent or null data falls back to these defaults.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class JustWatchPackage(_UpstreamModel):
    id: ExternalId = None
    package_id: ExternalId = None
    clear_name: Optional[str] = None
    short_name: Optional[str] = None
    technical_name: Optional[str] = None
    icon: Optional[str] = None

    @property
    def provider_id(self) -> Optional[str]:
        return self.package_id or self.id

    @property
    def display_name(self) -> Optional[str]:
        return self.clear_name or self.short_name or self.technical_name


class JustWatchOffer(_UpstreamModel):
    monetization_type: Optional[str] = None
    presentation_type: Optional[str] = None
    standard_web_url: Optional[str] = Field(default=None, alias="standardWebURL")
    package: Optional[JustWatchPackage] = None


class JustWatchExternalIds(_UpstreamModel):
    imdb_id: ExternalId = None
    tmdb_id: ExternalId = None


class JustWatchBackdrop(_UpstreamModel):
    backdrop_url: Optional[str] = None


class JustWatchGenre(_UpstreamModel):
    short_name: Optional[str] = None


class JustWatchScoring(_UpstreamModel):
    imdb_score: Optional[float] = None
    imdb_votes: Optional[int] = None
    tmdb_popularity: Optional[float] = None
    tmdb_score: Optional[float] = None


class JustWatchContent(_UpstreamModel):
    title: Optional[str] = None
    original_title: Optional[str] = None
    original_release_year: Optional[int] = None
    original_release_date: Optional[str] = None
    short_description: Optional[str] = None
    runtime: Optional[int] = None
    poster_url: Optional[str] = None
    backdrops: list[JustWatchBackdrop] = Field(default_factory=list)
    external_ids: JustWatchExternalIds = Field(default_factory=JustWatchExternalIds)
    genres: list[JustWatchGenre] = Field(default_factory=list)
    scoring: JustWatchScoring = Field(default_factory=JustWatchScoring)


class JustWatchTitle(_UpstreamModel):
    id: ExternalId = None
    object_id: ExternalId = None
    object_type: Optional[str] = None
    content: JustWatchContent = Field(default_factory=JustWatchContent)
    offers: list[JustWatchOffer] = Field(default_factory=list)

    @property
    def external_id(self) -> Optional[str]:
        return self.object_id or self.id


class CatalogPage(BaseModel):
    # Raw title nodes. Each is parsed by the caller so one malformed title stays one failed item.
    items: list[dict[str, Any]] = Field(default_factory=list)
    total_count: Optional[int] = None
    has_next_page: bool = False
    end_cursor: Optional[str] = None


class _PageInfo(_UpstreamModel):
    end_cursor: Optional[str] = None
    has_next_page: bool = False


class _Edge(_UpstreamModel):
    node: Optional[dict[str, Any]] = None


class _PopularTitles(_UpstreamModel):
    total_count: Optional[int] = None
    page_info: _PageInfo = Field(default_factory=_PageInfo)
    edges: list[_Edge] = Field(default_factory=list)

    @property
    def nodes(self) -> list[dict[str, Any]]:
        return [edge.node for edge in self.edges if edge.node]


class CursorCache:
    """
    Pagination cursors keyed by (country, page size, page).

    The cursor stored for a page is the ``after`` value that starts it. A run
    owns one cache and resets it before a fresh pass over the catalog.
    """

    def __init__(self) -> None:
        self._cursors: dict[tuple[str, int, int], str] = {}

    def get(self, country: str, page_size: int, page: int) -> Optional[str]:
        return self._cursors.get((country, page_size, page))

    def set(self, country: str, page_size: int, page: int, cursor: str) -> None:
        self._cursors[(country, page_size, page)] = cursor

    def nearest(self, country: str, page_size: int, page: int) -> tuple[int, Optional[str]]:
        """Closest cached page at or before ``page``, with its cursor."""
        known = [
            cached_page
            for (cached_country, cached_size, cached_page) in self._cursors
            if cached_country == country and cached_size == page_size and cached_page <= page
        ]
        if not known:
            return 1, None
        start = max(known)
        return start, self._cursors[(country, page_size, start)]

    def reset(self) -> None:
        self._cursors.clear()

    def __len__(self) -> int:
        return len(self._cursors)


_TITLE_FIELDS = """
fragment TitleFields on MovieOrShow {
  id
  objectId
  objectType
  content(country: $country, language: $language) {
    title
    originalTitle
    originalReleaseYear
    originalReleaseDate
    shortDescription
    runtime
    posterUrl
    backdrops { backdropUrl }
    externalIds { imdbId tmdbId }
    genres { shortName }
    scoring { imdbScore imdbVotes tmdbPopularity tmdbScore }
  }
  offers(country: $country, platform: WEB) {
    monetizationType
    presentationType
    standardWebURL
    package { id packageId clearName shortName technicalName icon }
  }
}
"""

POPULAR_TITLES_QUERY = (
    """
query GetPopularTitles(
  $country: Country!, $language: Language!, $first: Int!, $after: String, $searchQuery: String
) {
  popularTitles(
    country: $country
    first: $first
    after: $after
    sortBy: POPULAR
    filter: { objectTypes: [MOVIE], searchQuery: $searchQuery }
  ) {
    totalCount
    pageInfo { endCursor hasNextPage }
    edges { node { ...TitleFields } }
  }
}
"""
    + _TITLE_FIELDS
)

TITLE_NODE_QUERY = (
    """
query GetTitleNode($nodeId: ID!, $country: Country!, $language: Language!) {
  node(id: $nodeId) { ...TitleFields }
}
"""
    + _TITLE_FIELDS
)

PROVIDERS_QUERY = """
query GetProviders($country: Country!, $platform: Platform!) {
  packages(country: $country, platform: $platform) {
    id packageId clearName shortName technicalName icon
  }
}
"""


def create_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=30.0, headers={"User-Agent": USER_AGENT})


async def _post(client: httpx.AsyncClient, query: str, variables: dict) -> dict:
    try:
        response = await client.post(GRAPHQL_URL, json={"query": query, "variables": variables})
        response.raise_for_status()
        payload = response.json()
    except httpx.HTTPError as exc:
        raise UpstreamError(f"JustWatch request failed: {exc}") from exc
    except ValueError as exc:
        raise UpstreamError("JustWatch returned a non-JSON response") from exc

    if payload.get("errors"):
        messages = "; ".join(str(err.get("message", err)) for err in payload["errors"])
        raise UpstreamError(f"JustWatch GraphQL error: {messages}")
    return payload.get("data") or {}


async def _popular_titles(
    client: httpx.AsyncClient,
    country: str,
    language: str,
    first: int,
    after: Optional[str] = None,
    search_query: Optional[str] = None,
) -> _PopularTitles:
    data = await _post(
        client,
        POPULAR_TITLES_QUERY,
        {
            "country": country,
            "language": language,
            "first": first,
            "after": after,
            "searchQuery": search_query,
        },
    )
    try:
        return _PopularTitles.model_validate(data.get("popularTitles") or {})
    except pydantic.ValidationError as exc:
        raise UpstreamError(f"Unexpected JustWatch catalog shape: {exc}") from exc


async def fetch_catalog_page(
    client: httpx.AsyncClient,
    page: int,
    page_size: int,
    cursors: CursorCache,
    country: str = DEFAULT_COUNTRY,
    language: str = DEFAULT_LANGUAGE,
) -> CatalogPage:
    """
    Fetch one page of the popular-movies catalog.

    Pages are cursor based upstream. If the cursor for ``page`` is not cached,
    the preceding pages are walked from the nearest cached one.
    """
    start, after = cursors.nearest(country, page_size, page)
    while start < page:
        walked = await _popular_titles(client, country, language, page_size, after)
        if not walked.page_info.has_next_page or not walked.page_info.end_cursor:
            return CatalogPage(total_count=walked.total_count, has_next_page=False)
        start += 1
        after = walked.page_info.end_cursor
        cursors.set(country, page_size, start, after)

    result = await _popular_titles(client, country, language, page_size, after)
    if result.page_info.end_cursor:
        cursors.set(country, page_size, page + 1, result.page_info.end_cursor)
    return CatalogPage(
        items=result.nodes,
        total_count=result.total_count,
        has_next_page=result.page_info.has_next_page,
        end_cursor=result.page_info.end_cursor,
    )


async def fetch_title_details(
    client: httpx.AsyncClient,
    title_id: str,
    country: str = DEFAULT_COUNTRY,
    language: str = DEFAULT_LANGUAGE,
) -> Optional[JustWatchTitle]:
    """Fetch a single title with its offers. Returns None when upstream has no such title."""
    node_id = f"tm{title_id}" if str(title_id).isdigit() else str(title_id)
    data = await _post(
        client,
        TITLE_NODE_QUERY,
        {"nodeId": node_id, "country": country, "language": language},
    )
    node = data.get("node")
    if not node:
        return None
    return parse_title(node)


async def fetch_providers(
    client: httpx.AsyncClient, country: str = DEFAULT_COUNTRY
) -> list[JustWatchPackage]:
    data = await _post(client, PROVIDERS_QUERY, {"country": country, "platform": "WEB"})
    try:
        return [JustWatchPackage.model_validate(item) for item in data.get("packages") or []]
    except pydantic.ValidationError as exc:
        raise UpstreamError(f"Unexpected JustWatch provider shape: {exc}") from exc


async def search_title(
    client: httpx.AsyncClient,
    title: str,
    year: Optional[int] = None,
    tmdb_id: Optional[str] = None,
    country: str = DEFAULT_COUNTRY,
    language: str = DEFAULT_LANGUAGE,
) -> Optional[JustWatchTitle]:
    """
    Find the catalog title for a movie that has no trusted identifier.

    Candidates from a free-text search are matched, in order, by metadata
    provider id, by release year (exact or off by one), then by exact title.
    No match returns None rather than a best guess.
    """
    result = await _popular_titles(client, country, language, SEARCH_RESULTS, search_query=title)
    candidates = _parse_valid(result.nodes)
    if not candidates:
        return None

    if tmdb_id:
        for candidate in candidates:
            if candidate.content.external_ids.tmdb_id == str(tmdb_id):
                return candidate

    if year:
        for candidate in candidates:
            candidate_year = candidate.content.original_release_year
            if candidate_year and abs(candidate_year - year) <= 1:
                return candidate

    wanted = title.strip().lower()
    for candidate in candidates:
        if (candidate.content.title or "").strip().lower() == wanted:
            return candidate
    return None


def parse_title(raw: dict) -> JustWatchTitle:
    try:
        return JustWatchTitle.model_validate(raw)
    except pydantic.ValidationError as exc:
        raise UpstreamError(f"Unexpected JustWatch title shape: {exc}") from exc


def _parse_valid(nodes: list[dict[str, Any]]) -> list[JustWatchTitle]:
    titles = []
    for node in nodes:
        try:
            titles.append(parse_title(node))
        except UpstreamError as exc:
            logger.debug("Ignoring malformed search result: %s", exc)
    return titles


def map_monetization_type(value: Optional[str]) -> MonetizationType:
    if not value:
        return MonetizationType.UNKNOWN
    return _MONETIZATION_TYPES.get(value.upper(), MonetizationType.UNKNOWN)


def normalize_quality(value: Optional[str]) -> Quality:
    if not value:
        return Quality.UNKNOWN
    quality = value.upper()
    if "4K" in quality or quality == "UHD":
        return Quality.UHD
    if "HD" in quality:
        return Quality.HD
    if quality == "SD":
        return Quality.SD
    return Quality.UNKNOWN


def normalize_movie(title: JustWatchTitle) -> dict[str, Any]:
    """Map an upstream title onto movie fields. Missing data stays None."""
    content = title.content
    release_year = content.original_release_year
    if release_year is None and content.original_release_date:
        year_part = content.original_release_date[:4]
        release_year = int(year_part) if year_part.isdigit() else None
    backdrop = next((b.backdrop_url for b in content.backdrops if b.backdrop_url), None)
    return {
        "external_id": title.external_id,
        "title": content.title or content.original_title,
        "original_title": content.original_title,
        "release_year": release_year,
        "release_date": content.original_release_date,
        "overview": content.short_description,
        "runtime": content.runtime,
        "poster_path": content.poster_url,
        "backdrop_path": backdrop,
        "vote_average": content.scoring.tmdb_score,
        "popularity": content.scoring.tmdb_popularity,
        "imdb_id": content.external_ids.imdb_id,
        "tmdb_id": content.external_ids.tmdb_id,
    }


def extract_offers(title: JustWatchTitle) -> list[Offer]:
    """
    Canonical offers for a title, one per (provider, monetization type).

    Offers without a provider id are dropped. When upstream lists the same
    provider and monetization type at several qualities, the best one is kept.
    """
    best: dict[tuple[str, MonetizationType], Offer] = {}
    for raw in title.offers:
        if raw.package is None or not raw.package.provider_id:
            continue
        offer = Offer(
            provider_id=raw.package.provider_id,
            provider_name=raw.package.display_name,
            monetization_type=map_monetization_type(raw.monetization_type),
            quality=normalize_quality(raw.presentation_type),
            url=raw.standard_web_url,
        )
        key = (offer.provider_id, offer.monetization_type)
        current = best.get(key)
        if current is None or offer.quality.rank > current.quality.rank:
            best[key] = offer
    return list(best.values())
