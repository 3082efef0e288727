"""Tests for Radarr/Sonarr download requests."""

import httpx
import pytest

from conftest import FakeRadarr, FakeSonarr, FakeTMDb

from collectarr.core.exceptions import AlreadyExistsError
from collectarr.models.collection import Collection, CollectionItem
from collectarr.models.dispatch import DispatchOutcome
from collectarr.models.media import MediaType, SourceEntry
from collectarr.models.server import RadarrServer, SonarrServer
from collectarr.services.dispatcher import DownloadDispatcher
from collectarr.services.identity import IdentityResolver


def _unreachable(server):
    raise AssertionError("No client should be built")


async def _radarr_server(store, **kwargs) -> RadarrServer:
    fields = {"quality_profile_id": 1, "root_folder_path": "/movies", **kwargs}
    server = RadarrServer(id="radarr", name="Radarr", url="http://radarr", api_key="key", **fields)
    await store.save_server(server)
    return server


async def _sonarr_server(store) -> SonarrServer:
    server = SonarrServer(
        id="sonarr",
        name="Sonarr",
        url="http://sonarr",
        api_key="key",
        quality_profile_id=1,
        root_folder_path="/tv",
    )
    await store.save_server(server)
    return server


@pytest.mark.asyncio
async def test_movie_already_in_radarr_is_not_added(store) -> None:
    await _radarr_server(store)
    radarr = FakeRadarr(inventory=[603])
    dispatcher = DownloadDispatcher(store, lambda s: radarr, _unreachable)

    result = await dispatcher.add_to_radarr("radarr", 603, title="The Matrix")

    assert result.outcome == DispatchOutcome.ALREADY_EXISTS
    assert result.ok
    assert radarr.added == []


@pytest.mark.asyncio
async def test_already_added_reply_is_not_an_error(store) -> None:
    await _radarr_server(store)
    radarr = FakeRadarr(add_error=AlreadyExistsError("Radarr", "This movie has already been added", 400))
    dispatcher = DownloadDispatcher(store, lambda s: radarr, _unreachable)

    result = await dispatcher.add_to_radarr("radarr", 603)

    assert result.outcome == DispatchOutcome.ALREADY_EXISTS


@pytest.mark.asyncio
async def test_missing_id_fails_without_network(store) -> None:
    dispatcher = DownloadDispatcher(store, _unreachable, _unreachable)

    result = await dispatcher.add_to_radarr("radarr", None, title="Home Video")

    assert result.outcome == DispatchOutcome.ERROR
    assert "TMDb ID" in result.message
    assert not result.ok


@pytest.mark.asyncio
async def test_unconfigured_server_fails_without_network(store) -> None:
    await _radarr_server(store, quality_profile_id=None)
    dispatcher = DownloadDispatcher(store, _unreachable, _unreachable)

    result = await dispatcher.add_to_radarr("radarr", 603)

    assert result.outcome == DispatchOutcome.ERROR
    assert "quality profile" in result.message


@pytest.mark.asyncio
async def test_unknown_server_is_an_error(store) -> None:
    dispatcher = DownloadDispatcher(store, _unreachable, _unreachable)

    result = await dispatcher.add_to_sonarr("nope", 121361)

    assert result.outcome == DispatchOutcome.ERROR
    assert "not found" in result.message


@pytest.mark.asyncio
async def test_successful_add_is_cached(store) -> None:
    await _radarr_server(store)
    radarr = FakeRadarr()
    dispatcher = DownloadDispatcher(store, lambda s: radarr, _unreachable)

    first = await dispatcher.add_to_radarr("radarr", 550)
    second = await dispatcher.add_to_radarr("radarr", 550)

    assert first.outcome == DispatchOutcome.SUCCESS
    assert second.outcome == DispatchOutcome.ALREADY_EXISTS
    assert radarr.added == [550]
    assert radarr.lookups == [550]


@pytest.mark.asyncio
async def test_http_failure_is_reported(store) -> None:
    await _radarr_server(store)
    radarr = FakeRadarr(fail=httpx.ConnectError("connection refused"))
    dispatcher = DownloadDispatcher(store, lambda s: radarr, _unreachable)

    result = await dispatcher.add_to_radarr("radarr", 603)

    assert result.outcome == DispatchOutcome.ERROR
    assert "connection refused" in result.message


@pytest.mark.asyncio
async def test_sonarr_resolves_tvdb_from_tmdb(store) -> None:
    await _sonarr_server(store)
    sonarr = FakeSonarr()
    details = SourceEntry(title="Game of Thrones", media_type=MediaType.SHOW, tmdb_id=1399, tvdb_id=121361)
    resolver = IdentityResolver(FakeTMDb(details={(MediaType.SHOW, 1399): details}))
    dispatcher = DownloadDispatcher(store, _unreachable, lambda s: sonarr, resolver=resolver)

    result = await dispatcher.add_to_sonarr("sonarr", None, title="Game of Thrones", tmdb_id=1399)

    assert result.outcome == DispatchOutcome.SUCCESS
    assert result.external_id == 121361
    assert sonarr.added == [121361]


@pytest.mark.asyncio
async def test_request_missing_counts_outcomes(store) -> None:
    await _radarr_server(store)
    radarr = FakeRadarr(inventory=[603])
    dispatcher = DownloadDispatcher(store, lambda s: radarr, _unreachable)

    collection = Collection(
        name="Movies",
        items=[
            CollectionItem(title="In Emby", tmdb_id=1, in_emby=True),
            CollectionItem(title="The Matrix", tmdb_id=603),
            CollectionItem(title="Fight Club", tmdb_id=550),
            CollectionItem(title="No TMDb", imdb_id="tt0000001"),
            CollectionItem(title="A Show", tvdb_id=121361, media_type=MediaType.SHOW),
        ],
    )

    stats = await dispatcher.request_missing(collection)

    assert stats.added == 1
    assert stats.already_exists == 1
    assert stats.missing_ids == 1
    assert stats.skipped == 1
    assert stats.failed == 0
    assert radarr.added == [550]
    # The Matrix was answered from the preloaded inventory
    assert 603 not in radarr.lookups


@pytest.mark.asyncio
async def test_default_server(store) -> None:
    dispatcher = DownloadDispatcher(store, _unreachable, _unreachable)
    first = await _radarr_server(store)
    assert (await dispatcher.default_server(first.server_type)).id == "radarr"

    other = RadarrServer(id="radarr-4k", name="Radarr 4K", url="http://radarr4k", api_key="key")
    await store.save_server(other)
    assert await dispatcher.default_server(first.server_type) is None

    other.is_default = True
    await store.save_server(other)
    assert (await dispatcher.default_server(first.server_type)).id == "radarr-4k"
