"""Tests for refreshing collections from their source lists."""

import asyncio

import pytest

from conftest import FakeEmbyClient, FakeSource, library_item, movie

from collectarr.core.exceptions import ExternalServiceError, JobConflictError, ValidationError
from collectarr.models.collection import Collection, CollectionItem, SourceType
from collectarr.models.server import EmbyServer
from collectarr.models.sync import JobState
from collectarr.services.collections import CollectionService


def _service(store, source: FakeSource, emby: FakeEmbyClient = None) -> CollectionService:
    client = emby or FakeEmbyClient()
    return CollectionService(store, trakt=source, mdblist=source, emby_factory=lambda server: client)


async def _trakt_collection(store, **kwargs) -> Collection:
    collection = Collection(name="Watch Next", source_type=SourceType.TRAKT_LIST, source_id="watch-next", **kwargs)
    await store.save_collection(collection)
    return collection


@pytest.mark.asyncio
async def test_refresh_inserts_source_items(store) -> None:
    source = FakeSource([movie("A", tmdb_id=1), movie("B", tmdb_id=2), movie("C", imdb_id="tt3")])
    service = _service(store, source)
    collection = await _trakt_collection(store)

    progress = await service.run_refresh(collection.id)

    assert progress.state == JobState.COMPLETED
    assert progress.items_total == 3
    assert progress.items_added == 3
    assert source.requested == ["watch-next"]

    stored = await store.get_collection(collection.id)
    assert [item.title for item in stored.items] == ["A", "B", "C"]
    assert stored.last_refreshed_at is not None


@pytest.mark.asyncio
async def test_refresh_merges_instead_of_duplicating(store) -> None:
    source = FakeSource([movie("The Matrix", tmdb_id=603, imdb_id="tt0133093")])
    service = _service(store, source)
    existing = CollectionItem(title="The Matrix", imdb_id="tt0133093")
    collection = await _trakt_collection(store, items=[existing])

    progress = await service.run_refresh(collection.id)

    stored = await store.get_collection(collection.id)
    assert len(stored.items) == 1
    assert stored.items[0].id == existing.id
    assert stored.items[0].tmdb_id == 603
    assert progress.items_updated == 1
    assert progress.items_added == 0


@pytest.mark.asyncio
async def test_item_count_never_drops_while_pulling(store) -> None:
    source = FakeSource([movie("A", tmdb_id=1), movie("B", tmdb_id=2), movie("C", tmdb_id=3)])
    service = _service(store, source)
    stale = CollectionItem(title="Gone", tmdb_id=99)
    collection = await _trakt_collection(store, items=[stale])

    totals: list[int] = []

    def report(**changes) -> None:
        if "items_total" in changes:
            totals.append(changes["items_total"])

    await service.refresher.refresh(collection.id, report)

    assert totals == sorted(totals)
    assert totals[-1] == 4

    # Soft removal: kept when remove_from_emby is off
    stored = await store.get_collection(collection.id)
    assert stale.id in {item.id for item in stored.items}


@pytest.mark.asyncio
async def test_stale_items_removed_when_allowed(store) -> None:
    source = FakeSource([movie("A", tmdb_id=1)])
    service = _service(store, source)
    stale = CollectionItem(title="Gone", tmdb_id=99)
    collection = await _trakt_collection(store, items=[stale], remove_from_emby=True)

    progress = await service.run_refresh(collection.id)

    stored = await store.get_collection(collection.id)
    assert [item.title for item in stored.items] == ["A"]
    assert progress.items_removed == 1


@pytest.mark.asyncio
async def test_fetch_failure_leaves_items_untouched(store) -> None:
    source = FakeSource(fail=ExternalServiceError("Trakt", "HTTP 502", 502))
    service = _service(store, source)
    existing = CollectionItem(title="Keep Me", tmdb_id=1)
    collection = await _trakt_collection(store, items=[existing], remove_from_emby=True)

    progress = await service.run_refresh(collection.id)

    assert progress.state == JobState.FAILED
    assert "502" in progress.error
    stored = await store.get_collection(collection.id)
    assert [item.id for item in stored.items] == [existing.id]
    assert stored.last_refreshed_at is None


@pytest.mark.asyncio
async def test_second_refresh_conflicts(store) -> None:
    source = FakeSource([movie("A", tmdb_id=1)])
    source.gate = asyncio.Event()
    service = _service(store, source)
    collection = await _trakt_collection(store)

    await service.refresh_collection(collection.id)
    with pytest.raises(JobConflictError):
        await service.refresh_collection(collection.id)

    source.gate.set()
    await service.wait_for_jobs()

    assert service.get_refresh_progress(collection.id).state == JobState.COMPLETED
    # Lock released after completion
    await service.run_refresh(collection.id)


@pytest.mark.asyncio
async def test_manual_collections_cannot_be_refreshed(store) -> None:
    service = _service(store, FakeSource())
    collection = Collection(name="Favourites")
    await store.save_collection(collection)

    with pytest.raises(ValidationError):
        await service.refresh_collection(collection.id)


@pytest.mark.asyncio
async def test_watch_refresh_ends_with_terminal_state(store) -> None:
    source = FakeSource([movie("A", tmdb_id=1), movie("B", tmdb_id=2)])
    source.gate = asyncio.Event()
    service = _service(store, source)
    collection = await _trakt_collection(store)

    await service.refresh_collection(collection.id)
    source.gate.set()
    snapshots = [progress async for progress in service.watch_refresh(collection.id)]

    assert all(s.state == JobState.RUNNING for s in snapshots[:-1])
    assert snapshots[-1].state == JobState.COMPLETED
    assert snapshots[-1].items_total == 2


@pytest.mark.asyncio
async def test_refresh_annotates_and_syncs_when_enabled(store) -> None:
    await store.save_server(EmbyServer(id="a", name="Living Room", url="http://emby", api_key="key"))
    emby = FakeEmbyClient([library_item("e1", tmdb_id=1)])
    service = _service(store, FakeSource([movie("A", tmdb_id=1), movie("B", tmdb_id=2)]), emby)
    collection = await _trakt_collection(store, sync_to_emby_on_refresh=True)

    await service.run_refresh(collection.id)

    stored = await store.get_collection(collection.id)
    assert [item.in_emby for item in stored.items] == [True, False]
    assert emby.created == ["Watch Next"]
    assert len(await store.get_sync_logs(collection_id=collection.id)) == 1


@pytest.mark.asyncio
async def test_missing_source_client_fails_refresh(store) -> None:
    service = CollectionService(store)
    collection = Collection(name="Lists", source_type=SourceType.MDBLIST, source_id="123")
    await store.save_collection(collection)

    progress = await service.run_refresh(collection.id)

    assert progress.state == JobState.FAILED
    assert "MDBList" in progress.error


@pytest.mark.asyncio
async def test_item_count_drops_only_in_final_snapshot(store) -> None:
    source = FakeSource([movie("A", tmdb_id=1)])
    source.gate = asyncio.Event()
    service = _service(store, source)
    stale = [CollectionItem(title="Gone", tmdb_id=98), CollectionItem(title="Also Gone", tmdb_id=99)]
    collection = await _trakt_collection(store, items=stale, remove_from_emby=True)

    await service.refresh_collection(collection.id)
    source.gate.set()
    snapshots = [progress async for progress in service.watch_refresh(collection.id)]

    running = [s.items_total for s in snapshots if not s.is_terminal]
    assert running == sorted(running)
    assert max(running) == 3
    assert all(s.items_removed == 0 for s in snapshots[:-1])

    final = snapshots[-1]
    assert final.state == JobState.COMPLETED
    assert (final.items_total, final.items_removed) == (1, 2)


class FakeDiscord:
    def __init__(self):
        self.reports: list[tuple[str, int, int, int]] = []
        self.errors: list[str] = []

    async def send_refresh_report(self, collection_name: str, items_total: int, items_added: int, items_removed: int) -> bool:
        self.reports.append((collection_name, items_total, items_added, items_removed))
        return True

    async def send_error(self, title: str, message: str) -> bool:
        self.errors.append(title)
        return True


@pytest.mark.asyncio
async def test_refresh_outcome_reported_to_discord(store) -> None:
    discord = FakeDiscord()
    service = CollectionService(
        store, trakt=FakeSource([movie("A", tmdb_id=1), movie("B", tmdb_id=2)]), discord=discord
    )
    collection = await _trakt_collection(store, items=[CollectionItem(title="Gone", tmdb_id=99)], remove_from_emby=True)

    await service.run_refresh(collection.id)

    assert discord.reports == [("Watch Next", 2, 2, 1)]
    assert discord.errors == []


@pytest.mark.asyncio
async def test_refresh_failure_reported_to_discord(store) -> None:
    discord = FakeDiscord()
    service = CollectionService(store, trakt=FakeSource(fail=ExternalServiceError("Trakt", "HTTP 502", 502)), discord=discord)
    collection = await _trakt_collection(store)

    await service.run_refresh(collection.id)

    assert discord.reports == []
    assert discord.errors == ["Refresh failed: Watch Next"]
