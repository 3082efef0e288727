"""Tests for library presence matching and coverage stats."""

import httpx
import pytest

from conftest import FakeEmbyClient, library_item

from collectarr.models.collection import CollectionItem
from collectarr.models.media import MediaType
from collectarr.models.server import EmbyServer
from collectarr.services.media_matcher import (
    LibraryIndex,
    MediaMatcher,
    PresenceCache,
    annotate,
    compute_stats,
)


def _items(flags: list[bool]) -> list[CollectionItem]:
    return [CollectionItem(title=f"Item {i}", tmdb_id=i + 1, in_emby=flag) for i, flag in enumerate(flags)]


def test_stats_round_half_up() -> None:
    stats = compute_stats(_items([True, False, False, False, False, False, False, False]))

    # 12.5% rounds up
    assert stats.percent_in_library == 13
    assert stats.total == 8
    assert stats.in_emby == 1
    assert stats.missing == 7

    assert compute_stats(_items([True, True, False])).percent_in_library == 67


def test_stats_empty_collection() -> None:
    stats = compute_stats([])

    assert stats.total == 0
    assert stats.percent_in_library == 0


def test_index_scopes_tmdb_ids_by_media_type() -> None:
    index = LibraryIndex([library_item("e1", tmdb_id=1399, media_type=MediaType.SHOW)])
    film = CollectionItem(title="Film", tmdb_id=1399, media_type=MediaType.MOVIE)
    show = CollectionItem(title="Show", tmdb_id=1399, media_type=MediaType.SHOW)

    assert index.find(film, film.media_type) is None
    assert index.find(show, show.media_type).emby_id == "e1"


def test_index_matches_any_id() -> None:
    index = LibraryIndex(
        [
            library_item("e1", imdb_id="tt0133093"),
            library_item("e2", media_type=MediaType.SHOW, tvdb_id=121361),
        ]
    )

    assert index.find(CollectionItem(title="a", imdb_id="tt0133093"), MediaType.MOVIE).emby_id == "e1"
    assert index.find(CollectionItem(title="b", tvdb_id=121361), MediaType.SHOW).emby_id == "e2"
    assert len(index) == 2


def test_annotate_replaces_indexed_servers_and_keeps_others() -> None:
    matched = CollectionItem(title="Matrix", tmdb_id=603, emby_item_ids={"s1": "old", "s2": "keep", "s3": "gone"})
    missing = CollectionItem(title="Other", tmdb_id=999, emby_item_ids={"s1": "stale"})
    unmatched = CollectionItem(title="Home Video", unmatched=True)

    indexes = {"s1": LibraryIndex([library_item("e603", tmdb_id=603)])}
    present = annotate([matched, missing, unmatched], indexes, server_ids={"s1", "s2"})

    assert present == 1
    assert matched.emby_item_ids == {"s1": "e603", "s2": "keep"}
    assert matched.in_emby
    assert missing.emby_item_ids == {}
    assert not missing.in_emby
    assert not unmatched.in_emby


def test_presence_cache() -> None:
    cache = PresenceCache()
    cache.load("radarr", [603, 604])
    cache.add("sonarr", 121361)

    assert cache.contains("radarr", 603)
    assert not cache.contains("sonarr", 603)
    assert cache.is_loaded("radarr")
    assert not cache.is_loaded("sonarr")

    cache.load("radarr", [1])
    assert not cache.contains("radarr", 603)

    cache.invalidate("radarr")
    assert not cache.contains("radarr", 1)
    assert cache.contains("sonarr", 121361)

    cache.invalidate()
    assert not cache.contains("sonarr", 121361)


@pytest.mark.asyncio
async def test_load_indexes_skips_failing_servers() -> None:
    ok = EmbyServer(id="ok", name="Living Room", url="http://emby", api_key="key")
    broken = EmbyServer(id="broken", name="Basement", url="http://emby2", api_key="key")
    slow = EmbyServer(id="slow", name="Attic", url="http://emby3", api_key="key")
    clients = {
        "ok": FakeEmbyClient([library_item("e1", tmdb_id=603)]),
        "broken": FakeEmbyClient(fail=httpx.ConnectError("refused")),
        "slow": FakeEmbyClient(delay=1.0),
    }
    matcher = MediaMatcher(lambda server: clients[server.id], server_timeout=0.05)

    indexes = await matcher.load_indexes([ok, broken, slow])

    assert set(indexes) == {"ok"}
    assert len(indexes["ok"]) == 1


@pytest.mark.asyncio
async def test_annotate_items_against_servers() -> None:
    server = EmbyServer(id="s1", name="Living Room", url="http://emby", api_key="key")
    matcher = MediaMatcher(lambda s: FakeEmbyClient([library_item("e603", tmdb_id=603)]))
    items = [CollectionItem(title="Matrix", tmdb_id=603), CollectionItem(title="Other", tmdb_id=1)]

    present = await matcher.annotate_items(items, [server])

    assert present == 1
    assert items[0].emby_item_ids == {"s1": "e603"}
    assert not items[1].in_emby
