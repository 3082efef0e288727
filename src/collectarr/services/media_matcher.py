"""Service for matching collection items against Emby libraries and *arr inventories."""

import asyncio
from typing import Callable, Iterable, Optional

import httpx
from loguru import logger

from collectarr.clients.emby import EmbyClient
from collectarr.core.exceptions import ExternalServiceError
from collectarr.models.collection import CollectionItem, CollectionStats
from collectarr.models.media import ExternalIds, LibraryItem, MediaType
from collectarr.models.server import EmbyServer


class LibraryIndex:
    """Library items of one Emby server, indexed per id type."""

    def __init__(self, items: Iterable[LibraryItem] = ()):
        self._imdb: dict[str, LibraryItem] = {}
        self._tvdb: dict[int, LibraryItem] = {}
        self._tmdb: dict[tuple[MediaType, int], LibraryItem] = {}  # movie and TV ids overlap
        self._count = 0

        for item in items:
            self.add(item)

    def add(self, item: LibraryItem) -> None:
        self._count += 1
        if item.imdb_id:
            self._imdb.setdefault(item.imdb_id, item)
        if item.tvdb_id:
            self._tvdb.setdefault(item.tvdb_id, item)
        if item.tmdb_id:
            self._tmdb.setdefault((item.media_type, item.tmdb_id), item)

    def find(self, ids: ExternalIds, media_type: MediaType) -> Optional[LibraryItem]:
        """
        Find a library item sharing any populated id of the same type.

        Args:
            ids: Ids of the collection item
            media_type: Media type (scopes TMDb ids)

        Returns:
            Matching library item, if any
        """
        if ids.tmdb_id and (media_type, ids.tmdb_id) in self._tmdb:
            return self._tmdb[(media_type, ids.tmdb_id)]
        if ids.imdb_id and ids.imdb_id in self._imdb:
            return self._imdb[ids.imdb_id]
        if ids.tvdb_id and ids.tvdb_id in self._tvdb:
            return self._tvdb[ids.tvdb_id]
        return None

    def __len__(self) -> int:
        return self._count


def annotate(
    items: list[CollectionItem],
    indexes: dict[str, LibraryIndex],
    server_ids: Optional[set[str]] = None,
) -> int:
    """
    Recompute `in_emby` and `emby_item_ids` of items.

    Entries of servers present in `indexes` are replaced; entries of servers
    outside `server_ids` (when given) are dropped; other entries are kept,
    so a server that could not be read keeps its last known state.

    Args:
        items: Items to annotate in place
        indexes: Library index per Emby server id
        server_ids: Servers the collection currently targets

    Returns:
        Number of items present on at least one server
    """
    present = 0
    for item in items:
        emby_ids = {
            sid: eid
            for sid, eid in item.emby_item_ids.items()
            if sid not in indexes and (server_ids is None or sid in server_ids)
        }

        if not item.unmatched:
            for server_id, index in indexes.items():
                match = index.find(item, item.media_type)
                if match:
                    emby_ids[server_id] = match.emby_id

        item.emby_item_ids = emby_ids
        item.in_emby = bool(emby_ids)
        present += item.in_emby

    return present


def compute_stats(items: list[CollectionItem]) -> CollectionStats:
    """Summarize library presence; percent is rounded half up, 0 when empty."""
    total = len(items)
    in_emby = sum(1 for item in items if item.in_emby)
    percent = int(in_emby * 100 / total + 0.5) if total else 0
    return CollectionStats(
        total=total,
        in_emby=in_emby,
        missing=total - in_emby,
        percent_in_library=percent,
    )


class PresenceCache:
    """Known "present in Radarr/Sonarr" ids, keyed by (server_id, external_id)."""

    def __init__(self) -> None:
        self._present: set[tuple[str, int]] = set()
        self._loaded: set[str] = set()

    def load(self, server_id: str, external_ids: Iterable[int]) -> None:
        """Replace a server's entries with a full inventory."""
        self._present = {key for key in self._present if key[0] != server_id}
        self._present.update((server_id, external_id) for external_id in external_ids)
        self._loaded.add(server_id)

    def add(self, server_id: str, external_id: int) -> None:
        self._present.add((server_id, external_id))

    def contains(self, server_id: str, external_id: int) -> bool:
        return (server_id, external_id) in self._present

    def is_loaded(self, server_id: str) -> bool:
        return server_id in self._loaded

    def invalidate(self, server_id: Optional[str] = None) -> None:
        """Forget one server's entries (or everything)."""
        if server_id is None:
            self._present.clear()
            self._loaded.clear()
            return
        self._present = {key for key in self._present if key[0] != server_id}
        self._loaded.discard(server_id)


class MediaMatcher:
    """Service for matching collection items to Emby libraries."""

    def __init__(
        self,
        client_factory: Callable[[EmbyServer], EmbyClient],
        server_timeout: float = 20.0,
    ):
        """
        Initialize media matcher.

        Args:
            client_factory: Builds an Emby client for a server
            server_timeout: Seconds allowed to load one server's library
        """
        self.client_factory = client_factory
        self.server_timeout = server_timeout

    async def load_index(self, server: EmbyServer) -> LibraryIndex:
        """Load all movies and series of a server into an index."""
        logger.info(f"[Emby] Loading library of {server.name} into index...")

        client = self.client_factory(server)
        try:
            items = await client.get_library_items()
        finally:
            await client.close()

        index = LibraryIndex(items)
        logger.info(f"[Emby] Loaded {len(index)} items from {server.name}")
        return index

    async def load_indexes(self, servers: list[EmbyServer]) -> dict[str, LibraryIndex]:
        """
        Load library indexes of several servers concurrently.

        Servers that fail or time out are logged and left out of the result.
        """

        async def _load(server: EmbyServer) -> Optional[LibraryIndex]:
            try:
                return await asyncio.wait_for(self.load_index(server), timeout=self.server_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"[Emby] Timed out loading library of {server.name}")
            except (httpx.HTTPError, ExternalServiceError, ValueError, KeyError) as e:
                logger.warning(f"[Emby] Failed to load library of {server.name}: {e}")
            return None

        results = await asyncio.gather(*(_load(server) for server in servers))
        return {server.id: index for server, index in zip(servers, results) if index is not None}

    async def annotate_items(self, items: list[CollectionItem], servers: list[EmbyServer]) -> int:
        """Refresh presence flags of items against the given servers."""
        indexes = await self.load_indexes(servers)
        present = annotate(items, indexes, server_ids={s.id for s in servers})
        logger.info(f"Matched {present}/{len(items)} items in library")
        return present
