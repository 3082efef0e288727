"""Collection refresh job: pull a source list and reconcile collection items."""

from datetime import datetime
from typing import Optional

from loguru import logger

from collectarr.clients.discord import DiscordWebhook
from collectarr.clients.mdblist import MDBListClient
from collectarr.clients.trakt import TraktClient
from collectarr.core.exceptions import ExternalServiceError, NotFoundError, ValidationError
from collectarr.models.collection import Collection, CollectionItem, SourceType
from collectarr.models.media import SourceEntry
from collectarr.models.sync import JobProgress
from collectarr.services.emby_sync import EmbySyncService
from collectarr.services.identity import IdentityResolver, identity_keys, merge_ids
from collectarr.services.jobs import JobTracker, Reporter
from collectarr.services.media_matcher import MediaMatcher
from collectarr.services.store import Store


def _noop_report(**changes) -> None:
    pass


class CollectionRefresher:
    """Refresh collections from their Trakt or MDBList source."""

    def __init__(
        self,
        store: Store,
        resolver: IdentityResolver,
        matcher: MediaMatcher,
        emby_sync: EmbySyncService,
        trakt: Optional[TraktClient] = None,
        mdblist: Optional[MDBListClient] = None,
        tracker: Optional[JobTracker] = None,
        discord: Optional[DiscordWebhook] = None,
    ):
        """
        Initialize refresher.

        Args:
            store: Persistence store
            resolver: Identity resolver (fills missing ids)
            matcher: Library presence matcher
            emby_sync: Emby sync service (follow-up sync)
            trakt: Trakt client, if configured
            mdblist: MDBList client, if configured
            tracker: Job tracker enforcing one refresh per collection
            discord: Optional webhook for job errors
        """
        self.store = store
        self.resolver = resolver
        self.matcher = matcher
        self.emby_sync = emby_sync
        self.trakt = trakt
        self.mdblist = mdblist
        self.tracker = tracker or JobTracker(store)
        self.discord = discord

    # =========================================================================
    # Job entry points
    # =========================================================================

    async def start_refresh(self, collection_id: str) -> JobProgress:
        """
        Start a refresh in the background.

        Raises:
            NotFoundError: Unknown collection
            ValidationError: Manual collections have no source to refresh from
            JobConflictError: A refresh is already running for this collection
        """
        collection = await self._get_refreshable(collection_id)
        return await self.tracker.start(collection_id, lambda report: self._job(collection, report))

    async def run_refresh(self, collection_id: str) -> JobProgress:
        """Refresh a collection and wait for the outcome."""
        collection = await self._get_refreshable(collection_id)
        return await self.tracker.run(collection_id, lambda report: self._job(collection, report))

    async def _get_refreshable(self, collection_id: str) -> Collection:
        collection = await self.store.get_collection(collection_id)
        if not collection:
            raise NotFoundError(f"Collection {collection_id} not found")
        if collection.is_manual:
            raise ValidationError(
                f"Collection '{collection.name}' is manual and cannot be refreshed",
                {"source_type": collection.source_type.value},
            )
        return collection

    async def _job(self, collection: Collection, report: Reporter) -> dict[str, int]:
        try:
            final = await self.refresh(collection.id, report)
        except Exception as e:
            if self.discord:
                await self.discord.send_error(f"Refresh failed: {collection.name}", str(e))
            raise

        if self.discord:
            await self.discord.send_refresh_report(
                collection.name,
                items_total=final["items_total"],
                items_added=final["items_added"],
                items_removed=final["items_removed"],
            )
        return final

    # =========================================================================
    # Refresh
    # =========================================================================

    async def fetch_source(self, collection: Collection) -> list[SourceEntry]:
        """Fetch the full source list of a collection (all or nothing)."""
        source_id = collection.source_id or "me"

        if collection.source_type == SourceType.MDBLIST:
            if not self.mdblist:
                raise ExternalServiceError("MDBList", "MDBList API key not configured")
            return await self.mdblist.get_list_items(source_id)

        if collection.source_type.is_trakt and not self.trakt:
            raise ExternalServiceError("Trakt", "Trakt client ID not configured")

        if collection.source_type == SourceType.TRAKT_LIST:
            return await self.trakt.get_list_items(source_id)
        if collection.source_type == SourceType.TRAKT_WATCHLIST:
            return await self.trakt.get_watchlist(source_id)
        if collection.source_type == SourceType.TRAKT_COLLECTION:
            return await self.trakt.get_collection(source_id)

        raise ValidationError(f"Unsupported source type: {collection.source_type.value}")

    async def refresh(self, collection_id: str, report: Reporter = _noop_report) -> dict[str, int]:
        """
        Reconcile a collection with its source list.

        New items are inserted one at a time and persisted immediately, so
        the item count only grows while the source is being pulled. Items
        no longer in the source are deleted afterwards, and only when the
        collection's `remove_from_emby` flag is set.

        Args:
            collection_id: Collection ID
            report: Progress callback (items_total, items_added, ...)

        Returns:
            Final counters (items_total, items_added, items_updated, items_removed)
        """
        collection = await self._get_refreshable(collection_id)
        logger.info(f"[Refresh] {collection.name}: fetching {collection.source_type.value} {collection.source_id}")

        # A fetch failure propagates before any item is touched
        entries = await self.fetch_source(collection)
        logger.info(f"[Refresh] {collection.name}: {len(entries)} source entries")

        self.resolver.clear_cache()
        seen: set[str] = set()
        added = updated = 0

        for entry in entries:
            item = await self.resolver.resolve(entry)
            result: dict[str, str] = {}

            def upsert(current: Collection, item: CollectionItem = item, result: dict[str, str] = result) -> None:
                keys = identity_keys(item)
                for index, existing in enumerate(current.items):
                    if identity_keys(existing) & keys:
                        merged = merge_ids(existing, item)
                        if not merged.poster_path and item.poster_path:
                            merged.poster_path = item.poster_path
                        if merged.rating is None and item.rating is not None:
                            merged.rating = item.rating
                        merged.unmatched = not merged.has_any_id
                        current.items[index] = merged
                        result["id"], result["action"] = existing.id, "updated"
                        return
                current.items.append(item)
                result["id"], result["action"] = item.id, "added"

            current = await self.store.update_collection(collection_id, upsert)
            if current is None:
                raise NotFoundError(f"Collection {collection_id} was deleted during refresh")

            seen.add(result["id"])
            if result["action"] == "added":
                added += 1
                logger.debug(f"[Refresh] + {item.display_title}")
            else:
                updated += 1

            report(items_total=len(current.items), items_added=added, items_updated=updated)

        removed = await self._remove_stale(collection_id, seen)
        current = await self._annotate(collection_id)

        logger.info(
            f"[Refresh] {collection.name}: +{added} added, {updated} existing, "
            f"-{removed} removed, {len(current.items)} total"
        )

        if current.sync_to_emby_on_refresh:
            await self.emby_sync.sync_collection(collection_id)

        # Only the terminal snapshot may report fewer items than before
        return {
            "items_total": len(current.items),
            "items_added": added,
            "items_updated": updated,
            "items_removed": removed,
        }

    async def _remove_stale(self, collection_id: str, seen: set[str]) -> int:
        """Delete items absent from the source, when the collection allows it."""
        removed: list[CollectionItem] = []

        def prune(current: Collection) -> None:
            if not current.remove_from_emby:
                return
            removed.extend(i for i in current.items if i.id not in seen)
            current.items = [i for i in current.items if i.id in seen]

        await self.store.update_collection(collection_id, prune)

        for item in removed:
            logger.debug(f"[Refresh] - {item.display_title}")
        return len(removed)

    async def _annotate(self, collection_id: str) -> Collection:
        """Refresh presence flags and stamp the refresh time."""
        snapshot = await self.store.get_collection(collection_id)
        if snapshot is None:
            raise NotFoundError(f"Collection {collection_id} was deleted during refresh")

        servers = await self.emby_sync.target_servers(snapshot)
        if servers:
            await self.matcher.annotate_items(snapshot.items, servers)
        flags = {item.id: (item.in_emby, item.emby_item_ids) for item in snapshot.items}

        def apply(current: Collection) -> None:
            for item in current.items:
                if item.id in flags:
                    item.in_emby, item.emby_item_ids = flags[item.id]
            current.last_refreshed_at = datetime.now()

        updated = await self.store.update_collection(collection_id, apply)
        if updated is None:
            raise NotFoundError(f"Collection {collection_id} was deleted during refresh")
        return updated
