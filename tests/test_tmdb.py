import httpx
import pytest
import respx

from errors import UpstreamError
from tmdb import MAX_CAST, get_movie_details, normalize_movie_details

TMDB_MOVIE_RESPONSE = {
    "id": 550,
    "imdb_id": "tt0137523",
    "title": "Fight Club",
    "overview": "A ticking-time-bomb insomniac...",
    "tagline": "Mischief. Mayhem. Soap.",
    "runtime": 139,
    "release_date": "1999-10-15",
    "poster_path": "/pB8BM7pdSp6B6Ih7QZ4DrQ3PmJK.jpg",
    "backdrop_path": "/hZkgoQYus5vegHoetLkCJzb17zJ.jpg",
    "vote_average": 8.4,
    "vote_count": 27000,
    "popularity": 61.4,
    "original_language": "en",
    "spoken_languages": [{"iso_639_1": "en", "name": "English"}],
    "production_countries": [{"iso_3166_1": "US"}, {"iso_3166_1": "DE"}],
    "genres": [{"id": 18, "name": "Drama"}],
    "production_companies": [
        {"id": 508, "name": "Regency Enterprises", "logo_path": "/regency.png", "origin_country": "US"},
        {"id": 711, "name": "Fox 2000 Pictures", "logo_path": None, "origin_country": ""},
    ],
    "credits": {
        "cast": [
            {"id": 287, "name": "Brad Pitt", "character": "Tyler Durden", "order": 1},
            {"id": 819, "name": "Edward Norton", "character": "The Narrator", "order": 0},
        ],
        "crew": [
            {"id": 7467, "name": "David Fincher", "job": "Director"},
            {"id": 7467, "name": "David Fincher", "job": "Director"},
            {"id": 7468, "name": "Chuck Palahniuk", "job": "Novel"},
            {"id": 7469, "name": "Jim Uhls", "job": "Screenplay"},
            {"id": 1, "name": "Someone", "job": "Producer"},
        ],
    },
}


@respx.mock
async def test_get_movie_details_requests_credits():
    route = respx.get("https://api.themoviedb.org/3/movie/550").mock(
        return_value=httpx.Response(200, json=TMDB_MOVIE_RESPONSE)
    )
    async with httpx.AsyncClient() as client:
        data = await get_movie_details(client, "fake_key", "550")
    assert data["id"] == 550
    params = route.calls.last.request.url.params
    assert params["append_to_response"] == "credits"
    assert params["api_key"] == "fake_key"


@respx.mock
async def test_get_movie_details_not_found():
    respx.get("https://api.themoviedb.org/3/movie/999999999").mock(
        return_value=httpx.Response(404, json={"status_code": 34})
    )
    async with httpx.AsyncClient() as client:
        assert await get_movie_details(client, "fake_key", "999999999") is None


@respx.mock
async def test_get_movie_details_server_error():
    respx.get("https://api.themoviedb.org/3/movie/550").mock(return_value=httpx.Response(500))
    async with httpx.AsyncClient() as client:
        with pytest.raises(UpstreamError):
            await get_movie_details(client, "fake_key", "550")


@respx.mock
async def test_get_movie_details_network_error():
    respx.get("https://api.themoviedb.org/3/movie/550").mock(side_effect=httpx.ConnectError("boom"))
    async with httpx.AsyncClient() as client:
        with pytest.raises(UpstreamError):
            await get_movie_details(client, "fake_key", "550")


def test_normalize_movie_details():
    metadata = normalize_movie_details(TMDB_MOVIE_RESPONSE)
    assert metadata.tmdb_id == "550"
    assert metadata.tagline == "Mischief. Mayhem. Soap."
    assert metadata.spoken_languages == ["en"]
    assert metadata.production_countries == ["US", "DE"]
    assert metadata.genres == ["Drama"]
    assert [d.name for d in metadata.directors] == ["David Fincher"]
    assert [w.name for w in metadata.writers] == ["Chuck Palahniuk", "Jim Uhls"]
    assert [c.name for c in metadata.cast] == ["Edward Norton", "Brad Pitt"]
    assert metadata.cast[0].character == "The Narrator"
    assert metadata.cast[0].tmdb_id == "819"
    assert metadata.production_companies[1].origin_country is None


def test_normalize_movie_details_caps_cast_and_blanks():
    data = {
        "id": 1,
        "overview": "",
        "runtime": 0,
        "credits": {"cast": [{"name": f"Actor {i}", "order": i} for i in range(MAX_CAST + 5)]},
    }
    metadata = normalize_movie_details(data)
    assert len(metadata.cast) == MAX_CAST
    assert metadata.overview is None
    assert metadata.runtime is None
    assert metadata.directors == []


def test_normalize_movie_details_tolerates_missing_cast_order():
    data = {
        "id": 1,
        "credits": {
            "cast": [
                {"name": "Second", "order": 1},
                {"name": "Unordered", "order": None},
                {"name": "Third", "order": 2},
            ]
        },
    }
    metadata = normalize_movie_details(data)
    assert [c.name for c in metadata.cast] == ["Unordered", "Second", "Third"]
    assert metadata.cast[0].order is None
