from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel


class MergePolicy(str, Enum):
    ALWAYS = "always"
    IF_EMPTY = "if_empty"


# Fields a catalog ingestion pass may write onto an existing movie.
INGESTION_POLICY: dict[str, MergePolicy] = {
    "title": MergePolicy.ALWAYS,
    "original_title": MergePolicy.ALWAYS,
    "release_year": MergePolicy.ALWAYS,
    "popularity": MergePolicy.ALWAYS,
    "tmdb_id": MergePolicy.IF_EMPTY,
    "imdb_id": MergePolicy.IF_EMPTY,
    "poster_path": MergePolicy.IF_EMPTY,
    "backdrop_path": MergePolicy.IF_EMPTY,
    "overview": MergePolicy.IF_EMPTY,
    "runtime": MergePolicy.IF_EMPTY,
    "release_date": MergePolicy.IF_EMPTY,
}

# Fields the metadata backfill may write. Credits are always refreshed.
ENRICHMENT_POLICY: dict[str, MergePolicy] = {
    "directors": MergePolicy.ALWAYS,
    "cast": MergePolicy.ALWAYS,
    "writers": MergePolicy.ALWAYS,
    "production_companies": MergePolicy.ALWAYS,
    "overview": MergePolicy.IF_EMPTY,
    "tagline": MergePolicy.IF_EMPTY,
    "runtime": MergePolicy.IF_EMPTY,
    "poster_path": MergePolicy.IF_EMPTY,
    "backdrop_path": MergePolicy.IF_EMPTY,
    "vote_average": MergePolicy.IF_EMPTY,
    "vote_count": MergePolicy.IF_EMPTY,
    "popularity": MergePolicy.IF_EMPTY,
    "imdb_id": MergePolicy.IF_EMPTY,
    "original_language": MergePolicy.IF_EMPTY,
    "spoken_languages": MergePolicy.IF_EMPTY,
    "production_countries": MergePolicy.IF_EMPTY,
    "genres": MergePolicy.IF_EMPTY,
    "release_date": MergePolicy.IF_EMPTY,
}


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, (str, list, tuple, set, dict)):
        return len(value) == 0
    if isinstance(value, (int, float)):
        return value == 0
    return False


def merge_fields(
    existing: BaseModel, incoming: Mapping[str, Any], policy: Mapping[str, MergePolicy]
) -> dict[str, Any]:
    """
    Return the subset of incoming values the policy allows onto existing.

    ALWAYS fields take any supplied non-None value. IF_EMPTY fields are only
    written when the current value is empty and the new one is not. Fields
    absent from the policy are never written.
    """
    updates: dict[str, Any] = {}
    for field, rule in policy.items():
        if field not in incoming:
            continue
        value = incoming[field]
        if rule is MergePolicy.ALWAYS:
            if value is not None:
                updates[field] = value
        elif is_empty(getattr(existing, field, None)) and not is_empty(value):
            updates[field] = value
    return updates
