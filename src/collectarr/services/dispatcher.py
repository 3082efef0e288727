"""Dispatch download requests for collection items to Radarr and Sonarr."""

import asyncio
from typing import Any, Callable, Optional

import httpx
from loguru import logger

from collectarr.clients.radarr import RadarrClient
from collectarr.clients.sonarr import SonarrClient
from collectarr.core.exceptions import AlreadyExistsError, ExternalServiceError
from collectarr.models.collection import Collection, CollectionItem
from collectarr.models.dispatch import DispatchOutcome, DispatchResult, RequestMissingStats
from collectarr.models.media import ExternalIds, MediaType
from collectarr.models.server import ArrServer, RadarrServer, ServerType, SonarrServer
from collectarr.services.identity import IdentityResolver
from collectarr.services.media_matcher import PresenceCache
from collectarr.services.store import Store


class DownloadDispatcher:
    """Send add requests to Radarr (movies) and Sonarr (series)."""

    def __init__(
        self,
        store: Store,
        radarr_factory: Callable[[RadarrServer], RadarrClient],
        sonarr_factory: Callable[[SonarrServer], SonarrClient],
        resolver: Optional[IdentityResolver] = None,
        server_timeout: float = 20.0,
        cache: Optional[PresenceCache] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            store: Persistence store (server settings)
            radarr_factory: Builds a Radarr client for a server
            sonarr_factory: Builds a Sonarr client for a server
            resolver: Identity resolver used to find TVDb ids from TMDb
            server_timeout: Seconds allowed for one request
            cache: Shared presence cache
        """
        self.store = store
        self.radarr_factory = radarr_factory
        self.sonarr_factory = sonarr_factory
        self.resolver = resolver
        self.server_timeout = server_timeout
        self.cache = cache or PresenceCache()

    # =========================================================================
    # Single requests
    # =========================================================================

    async def add_to_radarr(
        self,
        server_id: str,
        tmdb_id: Optional[int],
        title: str = "",
        search: bool = True,
    ) -> DispatchResult:
        """
        Request a movie from Radarr.

        Never raises for provider failures; the outcome is in the result.
        """
        result = DispatchResult(
            outcome=DispatchOutcome.ERROR,
            server_id=server_id,
            server_type=ServerType.RADARR,
            title=title,
            external_id=tmdb_id,
        )

        if not tmdb_id:
            return result.model_copy(update={"message": "A TMDb ID is required to add a movie to Radarr"})

        server, error = await self._get_server(server_id, ServerType.RADARR)
        if error:
            return result.model_copy(update={"message": error})

        async def submit() -> DispatchOutcome:
            client = self.radarr_factory(server)
            try:
                if await client.get_movie_by_tmdb_id(tmdb_id):
                    return DispatchOutcome.ALREADY_EXISTS
                await client.add_movie(
                    tmdb_id=tmdb_id,
                    quality_profile_id=server.quality_profile_id,
                    root_folder_path=server.root_folder_path,
                    search=search,
                )
                return DispatchOutcome.SUCCESS
            finally:
                await client.close()

        return await self._dispatch(server, tmdb_id, result, submit)

    async def add_to_sonarr(
        self,
        server_id: str,
        tvdb_id: Optional[int],
        title: str = "",
        tmdb_id: Optional[int] = None,
        search: bool = True,
    ) -> DispatchResult:
        """
        Request a series from Sonarr.

        A missing TVDb id is looked up from the TMDb id when possible.
        Never raises for provider failures; the outcome is in the result.
        """
        if not tvdb_id and tmdb_id and self.resolver:
            ids = await self.resolver.resolve_ids(ExternalIds(tmdb_id=tmdb_id), MediaType.SHOW)
            tvdb_id = ids.tvdb_id

        result = DispatchResult(
            outcome=DispatchOutcome.ERROR,
            server_id=server_id,
            server_type=ServerType.SONARR,
            title=title,
            external_id=tvdb_id,
        )

        if not tvdb_id:
            return result.model_copy(update={"message": "A TVDb ID is required to add a series to Sonarr"})

        server, error = await self._get_server(server_id, ServerType.SONARR)
        if error:
            return result.model_copy(update={"message": error})

        async def submit() -> DispatchOutcome:
            client = self.sonarr_factory(server)
            try:
                if await client.get_series_by_tvdb_id(tvdb_id):
                    return DispatchOutcome.ALREADY_EXISTS
                await client.add_series(
                    tvdb_id=tvdb_id,
                    quality_profile_id=server.quality_profile_id,
                    root_folder_path=server.root_folder_path,
                    search=search,
                )
                return DispatchOutcome.SUCCESS
            finally:
                await client.close()

        return await self._dispatch(server, tvdb_id, result, submit)

    async def _get_server(self, server_id: str, server_type: ServerType) -> tuple[Optional[ArrServer], Optional[str]]:
        """Validate a target server from stored settings (no network)."""
        server = await self.store.get_server(server_id)
        if not server or server.server_type != server_type:
            return None, f"{server_type.value.capitalize()} server {server_id} not found"
        if not server.is_configured:
            return None, f"Server '{server.name}' has no quality profile or root folder configured"
        return server, None

    async def _dispatch(
        self,
        server: ArrServer,
        external_id: int,
        result: DispatchResult,
        submit: Callable[[], Any],
    ) -> DispatchResult:
        service = server.server_type.value.capitalize()

        if self.cache.contains(server.id, external_id):
            logger.debug(f"[{service}] {result.title or external_id} already present (cached)")
            return result.model_copy(update={"outcome": DispatchOutcome.ALREADY_EXISTS})

        try:
            outcome = await asyncio.wait_for(submit(), timeout=self.server_timeout)
        except AlreadyExistsError:
            outcome = DispatchOutcome.ALREADY_EXISTS
        except asyncio.TimeoutError:
            logger.error(f"[{service}] Request for {result.title or external_id} to {server.name} timed out")
            return result.model_copy(update={"message": "timeout"})
        except (httpx.HTTPError, ExternalServiceError) as e:
            logger.error(f"[{service}] Request for {result.title or external_id} to {server.name} failed: {e}")
            return result.model_copy(update={"message": str(e) or type(e).__name__})

        self.cache.add(server.id, external_id)
        if outcome == DispatchOutcome.SUCCESS:
            logger.info(f"[{service}] Requested: {result.title or external_id} on {server.name}")
        return result.model_copy(update={"outcome": outcome})

    # =========================================================================
    # Inventories
    # =========================================================================

    async def get_radarr_movies(self, server_id: str) -> list[dict[str, Any]]:
        """Get a Radarr server's movies and refresh its presence cache."""
        server = await self.store.get_server(server_id)
        if not server or server.server_type != ServerType.RADARR:
            raise ExternalServiceError("Radarr", f"Radarr server {server_id} not found", 404)

        client = self.radarr_factory(server)
        try:
            movies = await client.get_movies()
        finally:
            await client.close()

        self.cache.load(server_id, (m["tmdbId"] for m in movies if m.get("tmdbId")))
        return movies

    async def get_sonarr_series(self, server_id: str) -> list[dict[str, Any]]:
        """Get a Sonarr server's series and refresh its presence cache."""
        server = await self.store.get_server(server_id)
        if not server or server.server_type != ServerType.SONARR:
            raise ExternalServiceError("Sonarr", f"Sonarr server {server_id} not found", 404)

        client = self.sonarr_factory(server)
        try:
            series = await client.get_series()
        finally:
            await client.close()

        self.cache.load(server_id, (s["tvdbId"] for s in series if s.get("tvdbId")))
        return series

    # =========================================================================
    # Bulk requests
    # =========================================================================

    async def default_server(self, server_type: ServerType) -> Optional[ArrServer]:
        """Get the default server of a type, or the only one if there is just one."""
        servers = await self.store.get_servers(server_type)
        default = next((s for s in servers if s.is_default), None)
        if default:
            return default
        return servers[0] if len(servers) == 1 else None

    async def request_missing(self, collection: Collection) -> RequestMissingStats:
        """
        Request every item of a collection that is not in Emby.

        Movies go to the default Radarr server, series to the default Sonarr
        server. Items without the id the target needs are counted in
        `missing_ids`; items without a target server are `skipped`.
        """
        stats = RequestMissingStats()
        missing = [item for item in collection.items if not item.in_emby]
        if not missing:
            return stats

        radarr = await self.default_server(ServerType.RADARR)
        sonarr = await self.default_server(ServerType.SONARR)

        for server in (radarr, sonarr):
            if server and not self.cache.is_loaded(server.id):
                await self._preload(server)

        for item in missing:
            server = sonarr if item.media_type == MediaType.SHOW else radarr
            if not server:
                stats.skipped += 1
                continue

            result = await self._request_item(server, item)
            stats.results.append(result)

            if result.outcome == DispatchOutcome.SUCCESS:
                stats.added += 1
            elif result.outcome == DispatchOutcome.ALREADY_EXISTS:
                stats.already_exists += 1
            elif result.external_id is None:
                stats.missing_ids += 1
            else:
                stats.failed += 1

        logger.info(
            f"Requested missing items of '{collection.name}': {stats.added} added, "
            f"{stats.already_exists} already present, {stats.failed} failed, "
            f"{stats.missing_ids} without id, {stats.skipped} skipped"
        )
        return stats

    async def _request_item(self, server: ArrServer, item: CollectionItem) -> DispatchResult:
        if server.server_type == ServerType.SONARR:
            return await self.add_to_sonarr(server.id, item.tvdb_id, title=item.display_title, tmdb_id=item.tmdb_id)
        return await self.add_to_radarr(server.id, item.tmdb_id, title=item.display_title)

    async def _preload(self, server: ArrServer) -> None:
        """Load a server's inventory into the cache; failures fall back to per-item lookups."""
        try:
            if server.server_type == ServerType.SONARR:
                await asyncio.wait_for(self.get_sonarr_series(server.id), timeout=self.server_timeout)
            else:
                await asyncio.wait_for(self.get_radarr_movies(server.id), timeout=self.server_timeout)
        except (asyncio.TimeoutError, httpx.HTTPError, ExternalServiceError) as e:
            logger.warning(f"Could not load inventory of {server.name}: {e or 'timeout'}")
