"""Unit tests for API clients."""

from unittest.mock import AsyncMock

import pytest

from conftest import FakeResponse

from collectarr.clients.emby import EmbyClient
from collectarr.clients.mdblist import MDBListClient
from collectarr.clients.radarr import RadarrClient
from collectarr.clients.tmdb import TMDbClient
from collectarr.clients.trakt import TraktClient
from collectarr.core.exceptions import AlreadyExistsError, ExternalServiceError
from collectarr.models.media import MediaType


# =========================================================================
# TMDb
# =========================================================================


@pytest.mark.asyncio
async def test_tmdb_find_by_imdb_id_returns_movie() -> None:
    client = TMDbClient(api_key="test-api-key")
    client.get = AsyncMock(
        return_value=FakeResponse(
            {
                "movie_results": [{"id": 13, "title": "Forrest Gump", "release_date": "1994-07-06"}],
                "tv_results": [],
            }
        )
    )

    item = await client.find_by_imdb_id("tt0109830")

    assert item.tmdb_id == 13
    assert item.imdb_id == "tt0109830"
    assert item.year == 1994
    assert client.get.call_args.kwargs["params"]["external_source"] == "imdb_id"


@pytest.mark.asyncio
async def test_tmdb_find_respects_media_type() -> None:
    client = TMDbClient(api_key="test-api-key")
    client.get = AsyncMock(
        return_value=FakeResponse({"movie_results": [{"id": 1, "title": "Film"}], "tv_results": []})
    )

    assert await client.find_by_imdb_id("tt1", MediaType.SHOW) is None


@pytest.mark.asyncio
async def test_tmdb_series_details_include_external_ids() -> None:
    client = TMDbClient(api_key="test-api-key")
    client.get = AsyncMock(
        return_value=FakeResponse(
            {
                "id": 1399,
                "name": "Game of Thrones",
                "first_air_date": "2011-04-17",
                "external_ids": {"imdb_id": "tt0944947", "tvdb_id": 121361},
            }
        )
    )

    series = await client.get_details(1399, MediaType.SHOW)

    assert series.media_type == MediaType.SHOW
    assert series.tvdb_id == 121361
    assert series.imdb_id == "tt0944947"
    assert client.get.call_args.args[0] == "/tv/1399"


@pytest.mark.asyncio
async def test_tmdb_details_return_none_on_404() -> None:
    client = TMDbClient(api_key="test-api-key")
    client.get = AsyncMock(return_value=FakeResponse({}, status_code=404))

    assert await client.get_movie_details(999999) is None


# =========================================================================
# Trakt
# =========================================================================


@pytest.mark.asyncio
async def test_trakt_list_items_skip_non_media_entries() -> None:
    client = TraktClient(client_id="id", access_token="token")
    client.get_with_retry = AsyncMock(
        return_value=FakeResponse(
            [
                {"type": "movie", "movie": {"title": "Inception", "year": 2010, "ids": {"trakt": 1, "tmdb": 27205, "imdb": "tt1375666"}}},
                {"type": "show", "show": {"title": "Dark", "year": 2017, "ids": {"tvdb": 334824, "tmdb": 70523}}},
                {"type": "season", "season": {"number": 1}},
            ]
        )
    )

    entries = await client.get_list_items("someone/favourites")

    assert [e.title for e in entries] == ["Inception", "Dark"]
    assert entries[0].imdb_id == "tt1375666"
    assert entries[1].media_type == MediaType.SHOW
    assert entries[1].tvdb_id == 334824
    assert client.get_with_retry.call_args.args[0] == "/users/someone/lists/favourites/items"


@pytest.mark.asyncio
async def test_trakt_collection_merges_movies_and_shows() -> None:
    client = TraktClient(client_id="id")
    client.get_with_retry = AsyncMock(
        side_effect=[
            FakeResponse([{"movie": {"title": "Heat", "ids": {"tmdb": 949}}}]),
            FakeResponse([{"show": {"title": "The Wire", "ids": {"tvdb": 79126}}}]),
        ]
    )

    entries = await client.get_collection("me")

    assert [(e.title, e.media_type) for e in entries] == [("Heat", MediaType.MOVIE), ("The Wire", MediaType.SHOW)]


# =========================================================================
# MDBList
# =========================================================================


@pytest.mark.asyncio
async def test_mdblist_accepts_split_payload() -> None:
    client = MDBListClient(api_key="key")
    client.get_with_retry = AsyncMock(
        return_value=FakeResponse(
            {
                "movies": [{"title": "Alien", "release_year": 1979, "id": 348, "imdb_id": "tt0078748", "mediatype": "movie"}],
                "shows": [{"title": "Severance", "id": 95396, "tvdb_id": 371980, "mediatype": "show", "poster": "/p.jpg"}],
            }
        )
    )

    entries = await client.get_list_items("123")

    assert [e.title for e in entries] == ["Alien", "Severance"]
    assert entries[0].tmdb_id == 348
    assert entries[0].year == 1979
    assert entries[1].media_type == MediaType.SHOW
    assert entries[1].poster_path == "https://image.tmdb.org/t/p/w500/p.jpg"


@pytest.mark.asyncio
async def test_mdblist_accepts_flat_payload() -> None:
    client = MDBListClient(api_key="key")
    client.get_with_retry = AsyncMock(return_value=FakeResponse([{"title": "Alien", "tmdb_id": 348}]))

    entries = await client.get_list_items("123")

    assert entries[0].tmdb_id == 348


@pytest.mark.asyncio
async def test_mdblist_rejects_unexpected_payload() -> None:
    client = MDBListClient(api_key="key")
    client.get_with_retry = AsyncMock(return_value=FakeResponse("maintenance"))

    with pytest.raises(ExternalServiceError):
        await client.get_list_items("123")


# =========================================================================
# Radarr
# =========================================================================


@pytest.mark.asyncio
async def test_radarr_add_reports_already_added() -> None:
    client = RadarrClient(url="http://radarr", api_key="key")
    client.get = AsyncMock(return_value=FakeResponse([{"title": "The Matrix", "tmdbId": 603}]))
    client.post = AsyncMock(
        return_value=FakeResponse([{"errorMessage": "This movie has already been added"}], status_code=400)
    )

    with pytest.raises(AlreadyExistsError):
        await client.add_movie(603, quality_profile_id=1, root_folder_path="/movies")

    payload = client.post.call_args.kwargs["json"]
    assert payload["qualityProfileId"] == 1
    assert payload["addOptions"]["searchForMovie"] is True


@pytest.mark.asyncio
async def test_radarr_add_other_errors() -> None:
    client = RadarrClient(url="http://radarr", api_key="key")
    client.get = AsyncMock(return_value=FakeResponse([{"title": "The Matrix", "tmdbId": 603}]))
    client.post = AsyncMock(return_value=FakeResponse(None, status_code=500, text="Internal Server Error"))

    with pytest.raises(ExternalServiceError) as exc_info:
        await client.add_movie(603, quality_profile_id=1, root_folder_path="/movies")

    assert not isinstance(exc_info.value, AlreadyExistsError)
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_radarr_add_unknown_movie() -> None:
    client = RadarrClient(url="http://radarr", api_key="key")
    client.get = AsyncMock(return_value=FakeResponse([]))
    client.post = AsyncMock()

    with pytest.raises(ExternalServiceError):
        await client.add_movie(1, quality_profile_id=1, root_folder_path="/movies")

    client.post.assert_not_awaited()


# =========================================================================
# Emby
# =========================================================================


@pytest.mark.asyncio
async def test_emby_library_items_parse_provider_ids() -> None:
    client = EmbyClient(url="http://emby", api_key="key")
    client.get = AsyncMock(
        return_value=FakeResponse(
            {
                "Items": [
                    {"Id": "1", "Name": "Dark", "Type": "Series", "ProviderIds": {"Tvdb": "334824", "Tmdb": "70523"}},
                    {"Id": "2", "Name": "Heat", "Type": "Movie", "ProductionYear": 1995, "ProviderIds": {"IMDB": "tt0113277"}},
                ],
                "TotalRecordCount": 2,
            }
        )
    )

    items = await client.get_library_items()

    assert items[0].media_type == MediaType.SHOW
    assert items[0].tvdb_id == 334824
    assert items[0].tmdb_id == 70523
    assert items[1].imdb_id == "tt0113277"
    assert items[1].year == 1995


@pytest.mark.asyncio
async def test_emby_html_reply_raises_service_error() -> None:
    client = EmbyClient(url="http://emby", api_key="key")
    client.get = AsyncMock(return_value=FakeResponse(None, text="<html>login</html>"))

    with pytest.raises(ExternalServiceError, match="Invalid JSON"):
        await client.get_library_items()


@pytest.mark.asyncio
async def test_emby_list_reply_raises_service_error() -> None:
    client = EmbyClient(url="http://emby", api_key="key")
    client.get = AsyncMock(return_value=FakeResponse([{"Id": "1"}]))

    with pytest.raises(ExternalServiceError, match="list instead of dict"):
        await client.get_library_items()


@pytest.mark.asyncio
async def test_emby_poster_upload_sends_base64_body() -> None:
    client = EmbyClient(url="http://emby", api_key="key")
    client.post_binary = AsyncMock(return_value=FakeResponse(status_code=204))

    assert await client.upload_collection_poster("box-1", b"\x89PNG", "image/png")

    args = client.post_binary.call_args
    assert args.args[0] == "/Items/box-1/Images/Primary"
    assert args.kwargs["content"] == b"iVBORw=="
    assert args.kwargs["content_type"] == "image/png"
