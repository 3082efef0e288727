"""Service for mirroring collections as Emby BoxSets."""

import asyncio
import mimetypes
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import httpx
from loguru import logger

from collectarr.clients.discord import DiscordWebhook
from collectarr.clients.emby import EmbyClient
from collectarr.core.exceptions import ExternalServiceError, NotFoundError, ValidationError
from collectarr.models.collection import Collection
from collectarr.models.server import EmbyServer, ServerType
from collectarr.models.sync import SyncLog
from collectarr.services.media_matcher import LibraryIndex
from collectarr.services.store import Store

NO_ITEMS_IN_LIBRARY = "No items from this collection exist in the Emby library"

Poster = tuple[bytes, str]


async def load_poster(poster_path: str) -> Poster:
    """
    Read a collection poster from a URL or a local file.

    Returns:
        Image bytes and their content type
    """
    if poster_path.startswith(("http://", "https://")):
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
            response = await client.get(poster_path)
            response.raise_for_status()
        content_type = response.headers.get("content-type", "image/jpeg").split(";")[0]
        return response.content, content_type

    path = Path(poster_path)
    return path.read_bytes(), mimetypes.guess_type(path.name)[0] or "image/jpeg"


class EmbySyncService:
    """Push collection membership to one or more Emby servers."""

    def __init__(
        self,
        store: Store,
        client_factory: Callable[[EmbyServer], EmbyClient],
        server_timeout: float = 20.0,
        discord: Optional[DiscordWebhook] = None,
    ):
        """
        Initialize sync service.

        Args:
            store: Persistence store
            client_factory: Builds an Emby client for a server
            server_timeout: Seconds allowed for one server's sync
            discord: Optional webhook for sync reports
        """
        self.store = store
        self.client_factory = client_factory
        self.server_timeout = server_timeout
        self.discord = discord

    async def target_servers(self, collection: Collection) -> list[EmbyServer]:
        """Get the Emby servers a collection syncs to (all servers when none selected)."""
        servers = await self.store.get_servers(ServerType.EMBY)
        if collection.emby_server_ids:
            servers = [s for s in servers if s.id in collection.emby_server_ids]
        return servers

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync_collection(
        self,
        collection_id: str,
        server_ids: Optional[set[str]] = None,
    ) -> list[SyncLog]:
        """
        Sync one collection to its target servers concurrently.

        Each server is bounded by the per-server timeout; a failing server
        gets a FAILED log and never affects the others.

        Args:
            collection_id: Collection ID
            server_ids: Restrict to these servers

        Returns:
            One sync log per server
        """
        # Snapshot: a refresh running meanwhile cannot change what is synced
        snapshot = await self.store.get_collection(collection_id)
        if not snapshot:
            raise NotFoundError(f"Collection {collection_id} not found")

        servers = await self.target_servers(snapshot)
        if server_ids is not None:
            servers = [s for s in servers if s.id in server_ids]

        if not servers:
            logger.warning(f"[Emby] No Emby server to sync '{snapshot.name}' to")
            return []

        logger.info(f"[Emby] Syncing '{snapshot.name}' ({len(snapshot.items)} items) to {len(servers)} server(s)")

        poster = await self._load_poster(snapshot) if snapshot.poster_path else None
        started_at = datetime.now()
        results = await asyncio.gather(
            *(self._sync_guarded(snapshot, server, started_at, poster) for server in servers),
            return_exceptions=True,
        )

        logs: list[SyncLog] = []
        matches: dict[str, dict[str, str]] = {}
        for server, result in zip(servers, results):
            if isinstance(result, Exception):
                logger.opt(exception=result).error(f"[Emby] Sync of '{snapshot.name}' to {server.name} crashed")
                result = (self._record(snapshot, server, started_at, error=str(result) or type(result).__name__), None)
            elif isinstance(result, BaseException):
                raise result

            log, match = result
            logs.append(log)
            if match is not None:
                matches[server.id] = match

        await self._write_back(collection_id, matches)
        await self.store.add_sync_logs(logs)

        for log in logs:
            logger.info(
                f"[Emby] {snapshot.name} -> {log.emby_server_name}: {log.status.value} "
                f"({log.items_matched}/{log.items_total})"
                + (f" - {log.error_message}" if log.error_message else "")
            )

        if self.discord:
            await self.discord.send_sync_report(logs)

        return logs

    async def sync_all(self) -> list[SyncLog]:
        """Sync every enabled collection to its servers."""
        logs: list[SyncLog] = []
        for collection in await self.store.get_collections():
            if not collection.is_enabled:
                continue
            try:
                logs.extend(await self.sync_collection(collection.id))
            except NotFoundError:
                logger.debug(f"[Emby] Collection {collection.id} deleted during sync")
        return logs

    async def sync_server(self, server_id: str) -> list[SyncLog]:
        """Sync every enabled collection targeting one server."""
        server = await self.store.get_server(server_id)
        if not server:
            raise NotFoundError(f"Server {server_id} not found")
        if server.server_type != ServerType.EMBY:
            raise ValidationError(f"Server {server.name} is not an Emby server")

        logs: list[SyncLog] = []
        for collection in await self.store.get_collections():
            if not collection.is_enabled:
                continue
            if collection.emby_server_ids and server_id not in collection.emby_server_ids:
                continue
            try:
                logs.extend(await self.sync_collection(collection.id, server_ids={server_id}))
            except NotFoundError:
                logger.debug(f"[Emby] Collection {collection.id} deleted during sync")
        return logs

    def _record(
        self,
        collection: Collection,
        server: EmbyServer,
        started_at: datetime,
        matched: int = 0,
        error: Optional[str] = None,
    ) -> SyncLog:
        return SyncLog.record(
            collection_id=collection.id,
            collection_name=collection.name,
            emby_server_id=server.id,
            emby_server_name=server.name,
            started_at=started_at,
            items_matched=matched,
            items_total=len(collection.items),
            error_message=error,
        )

    async def _sync_guarded(
        self,
        collection: Collection,
        server: EmbyServer,
        started_at: datetime,
        poster: Optional[Poster] = None,
    ) -> tuple[SyncLog, Optional[dict[str, str]]]:
        """Sync to one server, turning any failure into a FAILED log."""
        try:
            matches = await asyncio.wait_for(
                self._sync_to_server(collection, server, poster),
                timeout=self.server_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"[Emby] Sync of '{collection.name}' to {server.name} timed out")
            return self._record(collection, server, started_at, error="timeout"), None
        except (httpx.HTTPError, ExternalServiceError, ValueError, KeyError) as e:
            # ValueError/KeyError: malformed payloads
            logger.error(f"[Emby] Sync of '{collection.name}' to {server.name} failed: {e}")
            return self._record(collection, server, started_at, error=str(e) or type(e).__name__), None

        if collection.items and not matches:
            return self._record(collection, server, started_at, error=NO_ITEMS_IN_LIBRARY), matches

        return self._record(collection, server, started_at, matched=len(matches)), matches

    async def _sync_to_server(
        self,
        collection: Collection,
        server: EmbyServer,
        poster: Optional[Poster] = None,
    ) -> dict[str, str]:
        """
        Make the server's BoxSet mirror the collection's matched items.

        Returns:
            Collection item id -> Emby item id for every matched item
        """
        client = self.client_factory(server)
        try:
            index = LibraryIndex(await client.get_library_items())

            matches: dict[str, str] = {}
            for item in collection.items:
                if item.unmatched:
                    continue
                found = index.find(item, item.media_type)
                if found:
                    matches[item.id] = found.emby_id

            if not matches:
                return matches

            wanted = list(dict.fromkeys(matches.values()))
            box = await client.get_collection_by_name(collection.name)

            if not box:
                box_id = await client.create_collection(collection.name, wanted)
            else:
                box_id = box["Id"]
                current = await client.get_collection_items(box_id)
                current_set, wanted_set = set(current), set(wanted)
                to_add = [i for i in wanted if i not in current_set]
                to_remove = [i for i in current if i not in wanted_set]

                if to_add:
                    await client.add_to_collection(box_id, to_add)
                if to_remove:
                    await client.remove_from_collection(box_id, to_remove)

                logger.debug(f"[Emby] {server.name}: +{len(to_add)} -{len(to_remove)} in '{collection.name}'")

            if poster:
                await self._push_poster(client, box_id, collection, server, poster)

            return matches
        finally:
            await client.close()

    async def _push_poster(
        self,
        client: EmbyClient,
        box_id: str,
        collection: Collection,
        server: EmbyServer,
        poster: Poster,
    ) -> None:
        """Upload the collection poster; a failed upload never fails the sync."""
        image, content_type = poster
        try:
            await client.upload_collection_poster(box_id, image, content_type)
        except httpx.HTTPError as e:
            logger.warning(f"[Emby] Failed to upload poster of '{collection.name}' to {server.name}: {e}")

    async def _load_poster(self, collection: Collection) -> Optional[Poster]:
        try:
            return await load_poster(collection.poster_path)
        except (httpx.HTTPError, OSError) as e:
            logger.warning(f"[Emby] Could not read poster of '{collection.name}' ({collection.poster_path}): {e}")
            return None

    async def _write_back(self, collection_id: str, matches: dict[str, dict[str, str]]) -> None:
        """Store presence flags of synced servers on items that still exist."""

        def apply(collection: Collection) -> None:
            for item in collection.items:
                for server_id, server_matches in matches.items():
                    if item.id in server_matches:
                        item.emby_item_ids[server_id] = server_matches[item.id]
                    else:
                        item.emby_item_ids.pop(server_id, None)
                item.in_emby = bool(item.emby_item_ids)
            collection.last_synced_at = datetime.now()

        await self.store.update_collection(collection_id, apply)

    # =========================================================================
    # Removal
    # =========================================================================

    async def remove_from_emby(self, collection: Collection) -> int:
        """
        Delete a collection's BoxSet from its target servers.

        Returns:
            Number of servers the BoxSet was deleted from
        """

        async def _remove(server: EmbyServer) -> bool:
            client = self.client_factory(server)
            try:
                box = await client.get_collection_by_name(collection.name)
                return bool(box) and await client.delete_collection(box["Id"])
            finally:
                await client.close()

        deleted = 0
        for server in await self.target_servers(collection):
            try:
                deleted += await asyncio.wait_for(_remove(server), timeout=self.server_timeout)
            except asyncio.TimeoutError:
                logger.error(f"[Emby] Removing '{collection.name}' from {server.name} timed out")
            except (httpx.HTTPError, ExternalServiceError, ValueError, KeyError) as e:
                logger.error(f"[Emby] Removing '{collection.name}' from {server.name} failed: {e}")

        return deleted
