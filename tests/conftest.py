"""Shared fakes for service tests."""

import asyncio
from typing import Any, AsyncIterator, Optional

import pytest_asyncio

from collectarr.models.media import LibraryItem, MediaType, SourceEntry
from collectarr.services.store import Store


class FakeResponse:
    """Minimal httpx-like response object."""

    def __init__(self, data: Any = None, status_code: int = 200, text: str = ""):
        self._data = data
        self.status_code = status_code
        self.text = text

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise RuntimeError(f"HTTP {self.status_code}")

    def json(self) -> Any:
        if self._data is None:
            raise ValueError("No JSON body")
        return self._data


def library_item(emby_id: str, tmdb_id: Optional[int] = None, media_type: MediaType = MediaType.MOVIE, **ids) -> LibraryItem:
    return LibraryItem(emby_id=emby_id, title=f"Item {emby_id}", media_type=media_type, tmdb_id=tmdb_id, **ids)


class FakeEmbyClient:
    """In-memory Emby server."""

    def __init__(self, items: list[LibraryItem] = (), delay: float = 0.0, fail: Optional[Exception] = None):
        self.items = list(items)
        self.delay = delay
        self.fail = fail
        self.boxsets: dict[str, dict[str, Any]] = {}  # id -> {"Name", "items"}
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.posters: dict[str, tuple[bytes, str]] = {}

    async def _maybe_fail(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise self.fail

    async def get_system_info(self) -> dict[str, Any]:
        await self._maybe_fail()
        return {"ServerName": "Fake Emby", "Version": "4.8"}

    async def get_library_items(self, media_type=None, limit: int = 500) -> list[LibraryItem]:
        await self._maybe_fail()
        return list(self.items)

    async def get_collection_by_name(self, name: str) -> Optional[dict[str, Any]]:
        for box_id, box in self.boxsets.items():
            if box["Name"] == name:
                return {"Id": box_id, "Name": name}
        return None

    async def get_collection_items(self, collection_id: str) -> list[str]:
        return list(self.boxsets[collection_id]["items"])

    async def create_collection(self, name: str, item_ids: Optional[list[str]] = None) -> str:
        box_id = f"box-{len(self.boxsets) + 1}"
        self.boxsets[box_id] = {"Name": name, "items": list(item_ids or [])}
        self.created.append(name)
        return box_id

    async def add_to_collection(self, collection_id: str, item_ids: list[str]) -> None:
        self.boxsets[collection_id]["items"].extend(item_ids)

    async def remove_from_collection(self, collection_id: str, item_ids: list[str]) -> None:
        box = self.boxsets[collection_id]
        box["items"] = [i for i in box["items"] if i not in item_ids]

    async def delete_collection(self, collection_id: str) -> bool:
        self.deleted.append(collection_id)
        return self.boxsets.pop(collection_id, None) is not None

    async def upload_collection_poster(self, collection_id: str, image: bytes, content_type: str) -> bool:
        self.posters[collection_id] = (image, content_type)
        return True

    async def close(self) -> None:
        pass


class FakeArrClient:
    """In-memory Radarr/Sonarr server."""

    ID_FIELD = "tmdbId"

    def __init__(self, inventory: list[int] = (), fail: Optional[Exception] = None, add_error: Optional[Exception] = None):
        self.inventory = list(inventory)
        self.fail = fail
        self.add_error = add_error
        self.added: list[int] = []
        self.lookups: list[int] = []

    async def get_system_status(self) -> dict[str, Any]:
        if self.fail:
            raise self.fail
        return {"appName": "Fake", "version": "5.0"}

    async def get_quality_profiles(self) -> list[dict[str, Any]]:
        return [{"id": 1, "name": "HD-1080p"}, {"id": 4, "name": "Ultra-HD"}]

    async def get_root_folders(self) -> list[dict[str, Any]]:
        return [{"id": 1, "path": "/media", "freeSpace": 1000}]

    async def _inventory(self) -> list[dict[str, Any]]:
        if self.fail:
            raise self.fail
        return [{self.ID_FIELD: external_id} for external_id in self.inventory]

    async def _find(self, external_id: int) -> Optional[dict[str, Any]]:
        if self.fail:
            raise self.fail
        self.lookups.append(external_id)
        return {self.ID_FIELD: external_id} if external_id in self.inventory else None

    async def _add(self, external_id: int) -> dict[str, Any]:
        if self.add_error:
            raise self.add_error
        self.added.append(external_id)
        self.inventory.append(external_id)
        return {self.ID_FIELD: external_id}

    async def close(self) -> None:
        pass


class FakeRadarr(FakeArrClient):
    ID_FIELD = "tmdbId"

    async def get_movies(self):
        return await self._inventory()

    async def get_movie_by_tmdb_id(self, tmdb_id: int):
        return await self._find(tmdb_id)

    async def add_movie(self, tmdb_id: int, quality_profile_id: int, root_folder_path: str, search: bool = True, **kwargs):
        return await self._add(tmdb_id)


class FakeSonarr(FakeArrClient):
    ID_FIELD = "tvdbId"

    async def get_series(self):
        return await self._inventory()

    async def get_series_by_tvdb_id(self, tvdb_id: int):
        return await self._find(tvdb_id)

    async def add_series(self, tvdb_id: int, quality_profile_id: int, root_folder_path: str, search: bool = True, **kwargs):
        return await self._add(tvdb_id)


class FakeTMDb:
    """TMDb lookups backed by dicts."""

    def __init__(
        self,
        by_imdb: Optional[dict[str, SourceEntry]] = None,
        by_tvdb: Optional[dict[int, SourceEntry]] = None,
        details: Optional[dict[tuple[MediaType, int], SourceEntry]] = None,
        fail: Optional[Exception] = None,
    ):
        self.by_imdb = by_imdb or {}
        self.by_tvdb = by_tvdb or {}
        self.details = details or {}
        self.fail = fail
        self.calls: list[tuple[str, Any]] = []

    async def find_by_imdb_id(self, imdb_id: str, media_type=None) -> Optional[SourceEntry]:
        self.calls.append(("imdb", imdb_id))
        if self.fail:
            raise self.fail
        return self.by_imdb.get(imdb_id)

    async def find_by_tvdb_id(self, tvdb_id: int, media_type=MediaType.SHOW) -> Optional[SourceEntry]:
        self.calls.append(("tvdb", tvdb_id))
        if self.fail:
            raise self.fail
        return self.by_tvdb.get(tvdb_id)

    async def get_details(self, tmdb_id: int, media_type: MediaType) -> Optional[SourceEntry]:
        self.calls.append(("details", tmdb_id))
        if self.fail:
            raise self.fail
        return self.details.get((media_type, tmdb_id))


class FakeSource:
    """Trakt/MDBList stand-in returning a fixed list (or failing, or blocking)."""

    def __init__(self, entries: list[SourceEntry] = (), fail: Optional[Exception] = None):
        self.entries = list(entries)
        self.fail = fail
        self.gate: Optional[asyncio.Event] = None
        self.requested: list[str] = []

    async def _fetch(self, source_id: str) -> list[SourceEntry]:
        self.requested.append(source_id)
        if self.gate:
            await self.gate.wait()
        if self.fail:
            raise self.fail
        return list(self.entries)

    async def get_list_items(self, list_id: str) -> list[SourceEntry]:
        return await self._fetch(list_id)

    async def get_watchlist(self, username: str = "me") -> list[SourceEntry]:
        return await self._fetch(username)

    async def get_collection(self, username: str = "me") -> list[SourceEntry]:
        return await self._fetch(username)


def movie(title: str, tmdb_id: Optional[int] = None, year: Optional[int] = 2000, **ids) -> SourceEntry:
    return SourceEntry(title=title, year=year, media_type=MediaType.MOVIE, tmdb_id=tmdb_id, **ids)


@pytest_asyncio.fixture
async def store() -> AsyncIterator[Store]:
    store = Store()
    yield store
    await store.close()
