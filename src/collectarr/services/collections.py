"""Collection service: the operations exposed to front ends (CLI, scheduler)."""

import asyncio
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional

import httpx
import pydantic
from loguru import logger

from collectarr.clients.discord import DiscordWebhook
from collectarr.clients.emby import EmbyClient
from collectarr.clients.mdblist import MDBListClient
from collectarr.clients.radarr import RadarrClient
from collectarr.clients.sonarr import SonarrClient
from collectarr.clients.tmdb import TMDbClient
from collectarr.clients.trakt import TraktClient
from collectarr.core.config import JobSettings
from collectarr.core.exceptions import ExternalServiceError, NotFoundError, ValidationError
from collectarr.models.collection import Collection, CollectionItem, CollectionPolicy, CollectionStats
from collectarr.models.dispatch import DispatchResult, RequestMissingStats
from collectarr.models.media import SourceEntry
from collectarr.models.server import (
    SERVER_MODELS,
    AnyServer,
    ArrServer,
    EmbyServer,
    RadarrServer,
    ServerOptions,
    ServerType,
    SonarrServer,
)
from collectarr.models.sync import JobProgress, SyncLog
from collectarr.services.dispatcher import DownloadDispatcher
from collectarr.services.emby_sync import EmbySyncService
from collectarr.services.identity import IdentityResolver, identity_keys, merge_ids
from collectarr.services.jobs import JobTracker
from collectarr.services.media_matcher import MediaMatcher, compute_stats
from collectarr.services.poller import poll_until_settled
from collectarr.services.refresh import CollectionRefresher
from collectarr.services.store import Store


def make_emby_client(server: EmbyServer) -> EmbyClient:
    return EmbyClient(server.url, server.api_key)


def make_radarr_client(server: RadarrServer) -> RadarrClient:
    return RadarrClient(server.url, server.api_key)


def make_sonarr_client(server: SonarrServer) -> SonarrClient:
    return SonarrClient(server.url, server.api_key)


def _validation_error(e: pydantic.ValidationError) -> ValidationError:
    messages = "; ".join(err["msg"] for err in e.errors())
    return ValidationError(messages, {"errors": [{"loc": err["loc"], "msg": err["msg"]} for err in e.errors()]})


class CollectionService:
    """Facade over collections, jobs, Emby sync and download requests."""

    def __init__(
        self,
        store: Store,
        tmdb: Optional[TMDbClient] = None,
        trakt: Optional[TraktClient] = None,
        mdblist: Optional[MDBListClient] = None,
        discord: Optional[DiscordWebhook] = None,
        jobs: Optional[JobSettings] = None,
        emby_factory: Callable[[EmbyServer], EmbyClient] = make_emby_client,
        radarr_factory: Callable[[RadarrServer], RadarrClient] = make_radarr_client,
        sonarr_factory: Callable[[SonarrServer], SonarrClient] = make_sonarr_client,
    ):
        """
        Initialize service.

        Args:
            store: Persistence store
            tmdb: TMDb client for id resolution (optional)
            trakt: Trakt client for Trakt sources (optional)
            mdblist: MDBList client for MDBList sources (optional)
            discord: Webhook for reports (optional)
            jobs: Job settings (timeouts, polling)
            emby_factory: Builds Emby clients
            radarr_factory: Builds Radarr clients
            sonarr_factory: Builds Sonarr clients
        """
        self.store = store
        self.jobs = jobs or JobSettings()
        self.emby_factory = emby_factory
        self.radarr_factory = radarr_factory
        self.sonarr_factory = sonarr_factory

        self.tracker = JobTracker(store, lease_ttl=self.jobs.lease_ttl)
        self.resolver = IdentityResolver(tmdb)
        self.matcher = MediaMatcher(emby_factory, server_timeout=self.jobs.server_timeout)
        self.emby_sync = EmbySyncService(
            store,
            emby_factory,
            server_timeout=self.jobs.server_timeout,
            discord=discord,
        )
        self.refresher = CollectionRefresher(
            store,
            self.resolver,
            self.matcher,
            self.emby_sync,
            trakt=trakt,
            mdblist=mdblist,
            tracker=self.tracker,
            discord=discord,
        )
        self.dispatcher = DownloadDispatcher(
            store,
            radarr_factory,
            sonarr_factory,
            resolver=self.resolver,
            server_timeout=self.jobs.server_timeout,
        )

    # =========================================================================
    # Collections
    # =========================================================================

    async def get_collections(self) -> list[Collection]:
        collections = await self.store.get_collections()
        return sorted(collections, key=lambda c: c.name.lower())

    async def get_collection(self, collection_id: str) -> Collection:
        collection = await self.store.get_collection(collection_id)
        if not collection:
            raise NotFoundError(f"Collection {collection_id} not found")
        return collection

    async def get_collection_stats(self, collection_id: str) -> CollectionStats:
        collection = await self.get_collection(collection_id)
        return compute_stats(collection.items)

    async def create_collection(self, payload: dict[str, Any] | CollectionPolicy, refresh: bool = True) -> Collection:
        """
        Create a collection.

        Non-manual collections start their first refresh in the background
        unless `refresh` is False.
        """
        data = payload.model_dump() if isinstance(payload, CollectionPolicy) else payload
        try:
            collection = Collection.model_validate(data)
        except pydantic.ValidationError as e:
            raise _validation_error(e) from e

        await self._check_emby_servers(collection.emby_server_ids)
        await self.store.save_collection(collection)
        logger.info(f"Created collection '{collection.name}' ({collection.source_type.value})")

        if refresh and not collection.is_manual:
            await self.refresher.start_refresh(collection.id)

        return collection

    async def update_collection(self, collection_id: str, changes: dict[str, Any]) -> Collection:
        """Update user-editable fields of a collection."""
        collection = await self.get_collection(collection_id)
        unknown = set(changes) - set(CollectionPolicy.model_fields)
        if unknown:
            raise ValidationError(f"Unknown collection fields: {', '.join(sorted(unknown))}")

        current_policy = collection.model_dump(include=set(CollectionPolicy.model_fields))
        try:
            policy = CollectionPolicy.model_validate({**current_policy, **changes})
        except pydantic.ValidationError as e:
            raise _validation_error(e) from e

        await self._check_emby_servers(policy.emby_server_ids)

        def apply(current: Collection) -> None:
            for field in CollectionPolicy.model_fields:
                setattr(current, field, getattr(policy, field))
            current.updated_at = datetime.now()

        updated = await self.store.update_collection(collection_id, apply)
        if updated is None:
            raise NotFoundError(f"Collection {collection_id} not found")
        return updated

    async def delete_collection(self, collection_id: str) -> None:
        """Delete a collection, and its Emby BoxSets when the collection asks for it."""
        collection = await self.get_collection(collection_id)

        if collection.delete_from_emby_on_delete:
            deleted = await self.emby_sync.remove_from_emby(collection)
            logger.info(f"[Emby] Removed '{collection.name}' from {deleted} server(s)")

        await self.store.delete_collection(collection_id)
        logger.info(f"Deleted collection '{collection.name}'")

    async def _check_emby_servers(self, server_ids: set[str]) -> None:
        known = {s.id for s in await self.store.get_servers(ServerType.EMBY)}
        unknown = server_ids - known
        if unknown:
            raise ValidationError(f"Unknown Emby server(s): {', '.join(sorted(unknown))}")

    # =========================================================================
    # Items
    # =========================================================================

    async def add_collection_item(self, collection_id: str, entry: SourceEntry) -> CollectionItem:
        """
        Add an item to a collection.

        An item already present (sharing any identity key) is merged instead
        of duplicated.
        """
        collection = await self.get_collection(collection_id)
        item = await self.resolver.resolve(entry)

        servers = await self.emby_sync.target_servers(collection)
        if servers and not item.unmatched:
            await self.matcher.annotate_items([item], servers)

        added: list[CollectionItem] = []

        def upsert(current: Collection) -> None:
            keys = identity_keys(item)
            for index, existing in enumerate(current.items):
                if identity_keys(existing) & keys:
                    current.items[index] = merge_ids(existing, item)
                    added.append(current.items[index])
                    return
            current.items.append(item)
            current.updated_at = datetime.now()
            added.append(item)

        if await self.store.update_collection(collection_id, upsert) is None:
            raise NotFoundError(f"Collection {collection_id} not found")

        logger.info(f"Added '{item.display_title}' to '{collection.name}'")
        return added[0]

    async def remove_collection_item(self, collection_id: str, item_id: str) -> None:
        collection = await self.get_collection(collection_id)
        if not collection.find_item(item_id):
            raise NotFoundError(f"Item {item_id} not found in collection '{collection.name}'")

        def remove(current: Collection) -> None:
            current.items = [i for i in current.items if i.id != item_id]
            current.updated_at = datetime.now()

        await self.store.update_collection(collection_id, remove)

    # =========================================================================
    # Refresh jobs
    # =========================================================================

    async def refresh_collection(self, collection_id: str) -> JobProgress:
        """Start a refresh in the background and return its initial progress."""
        return await self.refresher.start_refresh(collection_id)

    async def run_refresh(self, collection_id: str) -> JobProgress:
        """Refresh a collection and wait for it to finish."""
        return await self.refresher.run_refresh(collection_id)

    def get_refresh_progress(self, collection_id: str) -> Optional[JobProgress]:
        return self.tracker.get_progress(collection_id)

    def watch_refresh(self, collection_id: str) -> AsyncIterator[JobProgress]:
        """Push channel: progress snapshots until the job settles."""
        return self.tracker.subscribe(collection_id)

    async def poll_item_count(
        self,
        collection_id: str,
        on_change: Optional[Callable[[int], None]] = None,
    ) -> Optional[int]:
        """Polling fallback: watch a collection's item count until it stops changing."""

        async def fetch() -> int:
            return len((await self.get_collection(collection_id)).items)

        return await poll_until_settled(
            fetch,
            interval=self.jobs.poll_interval,
            max_unchanged=self.jobs.poll_max_unchanged,
            on_change=on_change,
        )

    async def wait_for_jobs(self) -> None:
        await self.tracker.wait()

    # =========================================================================
    # Emby sync
    # =========================================================================

    async def sync_collection_to_emby(self, collection_id: str) -> list[SyncLog]:
        await self.get_collection(collection_id)
        return await self.emby_sync.sync_collection(collection_id)

    async def sync_to_emby(self) -> list[SyncLog]:
        return await self.emby_sync.sync_all()

    async def sync_to_emby_server(self, server_id: str) -> list[SyncLog]:
        return await self.emby_sync.sync_server(server_id)

    async def get_sync_logs(self, limit: int = 50, collection_id: Optional[str] = None) -> list[SyncLog]:
        return await self.store.get_sync_logs(collection_id=collection_id, limit=limit)

    # =========================================================================
    # Download requests
    # =========================================================================

    async def add_to_radarr(self, server_id: str, tmdb_id: Optional[int], title: str = "") -> DispatchResult:
        return await self.dispatcher.add_to_radarr(server_id, tmdb_id, title=title)

    async def add_to_sonarr(
        self,
        server_id: str,
        tvdb_id: Optional[int],
        title: str = "",
        tmdb_id: Optional[int] = None,
    ) -> DispatchResult:
        return await self.dispatcher.add_to_sonarr(server_id, tvdb_id, title=title, tmdb_id=tmdb_id)

    async def get_radarr_movies(self, server_id: str) -> list[dict[str, Any]]:
        return await self.dispatcher.get_radarr_movies(server_id)

    async def get_sonarr_series(self, server_id: str) -> list[dict[str, Any]]:
        return await self.dispatcher.get_sonarr_series(server_id)

    async def request_missing(self, collection_id: str) -> RequestMissingStats:
        collection = await self.get_collection(collection_id)
        return await self.dispatcher.request_missing(collection)

    # =========================================================================
    # Servers
    # =========================================================================

    async def get_emby_servers(self) -> list[EmbyServer]:
        return await self.store.get_servers(ServerType.EMBY)

    async def get_radarr_servers(self) -> list[RadarrServer]:
        return await self.store.get_servers(ServerType.RADARR)

    async def get_sonarr_servers(self) -> list[SonarrServer]:
        return await self.store.get_servers(ServerType.SONARR)

    async def get_server(self, server_id: str) -> AnyServer:
        server = await self.store.get_server(server_id)
        if not server:
            raise NotFoundError(f"Server {server_id} not found")
        return server

    async def connect_server(self, server_type: ServerType, name: str, url: str, api_key: str) -> AnyServer:
        """
        Test and store a server's credentials (first step of setup).

        The first server of a type becomes its default.

        Raises:
            ExternalServiceError: The server could not be reached or rejected the key
        """
        server = SERVER_MODELS[server_type](name=name, url=url.rstrip("/"), api_key=api_key)
        info = await self._fetch_status(server)
        logger.info(f"Connected to {server_type.value} '{name}' ({info.get('version', 'unknown version')})")

        server.is_default = not await self.store.get_servers(server_type)
        await self.store.save_server(server)
        return server

    async def get_server_options(self, server_id: str) -> ServerOptions:
        """Get quality profiles and root folders of a Radarr/Sonarr server."""
        server = await self.get_server(server_id)
        if not isinstance(server, ArrServer):
            raise ValidationError(f"Server '{server.name}' has no download options")

        client = self._arr_client(server)
        try:
            profiles = await client.get_quality_profiles()
            folders = await client.get_root_folders()
        except httpx.HTTPError as e:
            raise ExternalServiceError(server.server_type.value, str(e)) from e
        finally:
            await client.close()

        return ServerOptions(
            quality_profiles=[{"id": p["id"], "name": p.get("name", "")} for p in profiles],
            root_folders=[{"id": f.get("id"), "path": f["path"], "freeSpace": f.get("freeSpace")} for f in folders],
        )

    async def configure_server(
        self,
        server_id: str,
        quality_profile_id: Optional[int] = None,
        root_folder_path: Optional[str] = None,
        is_default: Optional[bool] = None,
    ) -> AnyServer:
        """Store download defaults of a server (second step of setup)."""
        server = await self.get_server(server_id)

        if quality_profile_id is not None or root_folder_path is not None:
            if not isinstance(server, ArrServer):
                raise ValidationError(f"Server '{server.name}' does not take download defaults")

            options = await self.get_server_options(server_id)
            if quality_profile_id is not None:
                if quality_profile_id not in {p["id"] for p in options.quality_profiles}:
                    raise ValidationError(f"Unknown quality profile {quality_profile_id}")
                server.quality_profile_id = quality_profile_id
            if root_folder_path is not None:
                if root_folder_path not in {f["path"] for f in options.root_folders}:
                    raise ValidationError(f"Unknown root folder {root_folder_path}")
                server.root_folder_path = root_folder_path

        if is_default:
            for other in await self.store.get_servers(server.server_type):
                if other.id != server.id and other.is_default:
                    other.is_default = False
                    await self.store.save_server(other)
        if is_default is not None:
            server.is_default = is_default

        await self.store.save_server(server)
        self.dispatcher.cache.invalidate(server.id)
        return server

    async def delete_server(self, server_id: str) -> None:
        """
        Delete a server and forget everything collections knew about it.

        Matches recorded for the server are dropped from every collection,
        whether it targeted the server explicitly or all servers. A collection
        whose only explicit target was this server is disabled rather than
        falling back to every remaining server.
        """
        server = await self.get_server(server_id)
        await self.store.delete_server(server_id)
        self.dispatcher.cache.invalidate(server_id)

        if server.server_type == ServerType.EMBY:
            for collection in await self.store.get_collections():
                disabled: list[str] = []

                def drop(current: Collection, disabled: list[str] = disabled) -> None:
                    disabled.clear()
                    if server_id in current.emby_server_ids:
                        current.emby_server_ids.discard(server_id)
                        if not current.emby_server_ids and current.is_enabled:
                            current.is_enabled = False
                            disabled.append(current.name)
                    for item in current.items:
                        item.emby_item_ids.pop(server_id, None)
                        item.in_emby = bool(item.emby_item_ids)

                await self.store.update_collection(collection.id, drop)
                for name in disabled:
                    logger.warning(f"Collection '{name}' lost its last Emby target and was disabled")

        logger.info(f"Deleted {server.server_type.value} server '{server.name}'")

    async def test_server(self, server_id: str) -> dict[str, Any]:
        """Check a stored server is reachable."""
        server = await self.get_server(server_id)
        try:
            info = await self._fetch_status(server)
        except ExternalServiceError as e:
            return {"ok": False, "message": str(e)}
        app = info.get("appName") or info.get("ServerName") or server.name
        version = info.get("version") or info.get("Version") or ""
        return {"ok": True, "message": f"{app} {version}".strip()}

    async def test_all_servers(self) -> dict[str, dict[str, Any]]:
        """Check every stored server concurrently."""
        servers = await self.store.get_servers()
        results = await asyncio.gather(*(self.test_server(s.id) for s in servers))
        return {s.name: r for s, r in zip(servers, results)}

    async def _fetch_status(self, server: AnyServer) -> dict[str, Any]:
        """Call the server's status endpoint with the per-server timeout."""
        if server.server_type == ServerType.EMBY:
            client = self.emby_factory(server)
            fetch = client.get_system_info
        else:
            client = self._arr_client(server)
            fetch = client.get_system_status

        try:
            return await asyncio.wait_for(fetch(), timeout=self.jobs.server_timeout)
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(server.server_type.value, "timeout") from e
        except httpx.HTTPError as e:
            status = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
            raise ExternalServiceError(server.server_type.value, str(e) or type(e).__name__, status) from e
        finally:
            await client.close()

    def _arr_client(self, server: ArrServer) -> RadarrClient | SonarrClient:
        if server.server_type == ServerType.SONARR:
            return self.sonarr_factory(server)
        return self.radarr_factory(server)
