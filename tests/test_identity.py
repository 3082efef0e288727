"""Tests for item identity: keys, id merging and TMDb resolution."""

import httpx
import pytest

from conftest import FakeTMDb, movie

from collectarr.models.collection import CollectionItem
from collectarr.models.media import ExternalIds, MediaType, SourceEntry
from collectarr.services.identity import (
    IdentityResolver,
    canonical_key,
    identity_keys,
    merge_ids,
    normalize_title,
)


def test_normalize_title() -> None:
    assert normalize_title("The Matrix!") == "matrix"
    assert normalize_title("  Amélie   ") == "amélie"


def test_merge_ids_never_replaces_known_ids() -> None:
    existing = CollectionItem(title="The Matrix", imdb_id="tt0133093")

    merged = merge_ids(existing, ExternalIds(imdb_id="tt9999999", tmdb_id=603))

    assert merged.imdb_id == "tt0133093"
    assert merged.tmdb_id == 603
    assert merged.id == existing.id


def test_merge_ids_never_clears_ids() -> None:
    existing = CollectionItem(title="The Matrix", imdb_id="tt0133093", tmdb_id=603)

    merged = merge_ids(existing, ExternalIds())

    assert merged is existing
    assert merged.imdb_id == "tt0133093"
    assert merged.tmdb_id == 603


def test_canonical_key_prefers_tmdb_for_movies() -> None:
    entry = movie("The Matrix", tmdb_id=603, imdb_id="tt0133093")
    assert canonical_key(entry) == "tmdb:movie:603"

    entry = movie("The Matrix", imdb_id="tt0133093")
    assert canonical_key(entry) == "imdb:tt0133093"


def test_canonical_key_prefers_tvdb_for_shows() -> None:
    show = SourceEntry(title="Game of Thrones", media_type=MediaType.SHOW, tmdb_id=1399, tvdb_id=121361)
    assert canonical_key(show) == "tvdb:121361"

    show = SourceEntry(title="Game of Thrones", media_type=MediaType.SHOW, tmdb_id=1399)
    assert canonical_key(show) == "tmdb:show:1399"


def test_canonical_key_falls_back_to_title() -> None:
    assert canonical_key(movie("The Matrix", year=1999)) == "title:movie:matrix:1999"


def test_identity_keys_scope_tmdb_ids_by_media_type() -> None:
    film = movie("Some Film", tmdb_id=1399)
    show = SourceEntry(title="Some Show", media_type=MediaType.SHOW, tmdb_id=1399)

    assert not identity_keys(film) & identity_keys(show)


def test_identity_keys_match_on_any_shared_id() -> None:
    a = movie("The Matrix", imdb_id="tt0133093")
    b = movie("Matrix", tmdb_id=603, imdb_id="tt0133093")

    assert identity_keys(a) & identity_keys(b)


def test_identity_keys_use_title_only_without_ids() -> None:
    assert identity_keys(movie("The Matrix", year=1999)) == {"title:movie:matrix:1999"}
    assert not any(k.startswith("title:") for k in identity_keys(movie("The Matrix", tmdb_id=603)))


@pytest.mark.asyncio
async def test_resolve_fills_tmdb_id_from_imdb() -> None:
    tmdb = FakeTMDb(by_imdb={"tt0133093": movie("The Matrix", tmdb_id=603, imdb_id="tt0133093")})
    resolver = IdentityResolver(tmdb)

    item = await resolver.resolve(movie("The Matrix", imdb_id="tt0133093", year=1999))

    assert item.tmdb_id == 603
    assert item.imdb_id == "tt0133093"
    assert item.year == 1999
    assert not item.unmatched
    # IMDb id already known, no details lookup needed
    assert tmdb.calls == [("imdb", "tt0133093")]


@pytest.mark.asyncio
async def test_resolve_show_fills_tvdb_and_imdb_from_details() -> None:
    details = SourceEntry(
        title="Game of Thrones",
        media_type=MediaType.SHOW,
        tmdb_id=1399,
        tvdb_id=121361,
        imdb_id="tt0944947",
    )
    resolver = IdentityResolver(FakeTMDb(details={(MediaType.SHOW, 1399): details}))

    item = await resolver.resolve(SourceEntry(title="Game of Thrones", media_type=MediaType.SHOW, tmdb_id=1399))

    assert item.tvdb_id == 121361
    assert item.imdb_id == "tt0944947"


@pytest.mark.asyncio
async def test_resolve_keeps_own_ids_when_lookup_fails() -> None:
    tmdb = FakeTMDb(fail=httpx.ConnectError("connection refused"))
    resolver = IdentityResolver(tmdb)

    item = await resolver.resolve(movie("The Matrix", imdb_id="tt0133093"))
    await resolver.resolve(movie("The Matrix", imdb_id="tt0133093"))

    assert item.imdb_id == "tt0133093"
    assert item.tmdb_id is None
    assert not item.unmatched
    # Failed lookups are retried
    assert tmdb.calls == [("imdb", "tt0133093"), ("imdb", "tt0133093")]


@pytest.mark.asyncio
async def test_resolve_caches_successful_lookups() -> None:
    tmdb = FakeTMDb(by_imdb={"tt0133093": movie("The Matrix", tmdb_id=603, imdb_id="tt0133093")})
    resolver = IdentityResolver(tmdb)

    await resolver.resolve(movie("The Matrix", imdb_id="tt0133093"))
    await resolver.resolve(movie("Matrix", imdb_id="tt0133093"))
    assert len(tmdb.calls) == 1

    resolver.clear_cache()
    await resolver.resolve(movie("The Matrix", imdb_id="tt0133093"))
    assert len(tmdb.calls) == 2


@pytest.mark.asyncio
async def test_resolve_flags_entries_without_ids() -> None:
    resolver = IdentityResolver(FakeTMDb())

    item = await resolver.resolve(movie("Home Video"))

    assert item.unmatched
    assert item.title == "Home Video"


@pytest.mark.asyncio
async def test_resolve_without_tmdb_client_keeps_ids() -> None:
    resolver = IdentityResolver()

    item = await resolver.resolve(movie("The Matrix", imdb_id="tt0133093"))

    assert item.imdb_id == "tt0133093"
    assert item.tmdb_id is None
