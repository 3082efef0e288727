"""Runner: wires clients and services from settings and drives scheduled jobs."""

from typing import Optional

from loguru import logger

from collectarr.clients.discord import DiscordWebhook
from collectarr.clients.mdblist import MDBListClient
from collectarr.clients.tmdb import TMDbClient
from collectarr.clients.trakt import TraktClient
from collectarr.core.config import Settings
from collectarr.core.exceptions import CollectarrError, JobConflictError
from collectarr.core.scheduler import Scheduler
from collectarr.models.collection import Collection
from collectarr.services.collections import CollectionService
from collectarr.services.store import Store
from collectarr.services.trakt_auth import TraktAuth

SYNC_JOB_NAME = "emby_sync"
REFRESH_JOB_PREFIX = "refresh_"


def refresh_cron(refresh_interval_hours: int, refresh_time: str = "00:00") -> str:
    """
    Convert a collection's refresh interval and preferred time to a crontab expression.

    Up to 1h: hourly. Under 24h: every N hours. 24h: daily. Up to a week:
    every N days. Longer: monthly, on the 1st.
    """
    hour, minute = (int(part) for part in (refresh_time or "00:00").split(":"))

    if refresh_interval_hours <= 1:
        return f"{minute} * * * *"
    if refresh_interval_hours < 24:
        return f"{minute} */{refresh_interval_hours} * * *"
    if refresh_interval_hours == 24:
        return f"{minute} {hour} * * *"
    if refresh_interval_hours <= 168:
        days = int(refresh_interval_hours / 24 + 0.5)
        return f"{minute} {hour} */{days} * *"
    return f"{minute} {hour} 1 * *"


def refresh_job_name(collection: Collection) -> str:
    return f"{REFRESH_JOB_PREFIX}{collection.id}"


class Runner:
    """Owns the API clients, the collection service and the scheduler."""

    def __init__(self, settings: Settings, trakt_access_token: Optional[str] = None):
        """
        Initialize runner with settings.

        Args:
            settings: Application settings
            trakt_access_token: OAuth token (overrides TRAKT_ACCESS_TOKEN)
        """
        self.settings = settings

        self.tmdb: Optional[TMDbClient] = None
        if settings.tmdb.api_key:
            self.tmdb = TMDbClient(api_key=settings.tmdb.api_key, language=settings.tmdb.language)

        self.trakt: Optional[TraktClient] = None
        if settings.trakt.client_id:
            self.trakt = TraktClient(
                client_id=settings.trakt.client_id,
                access_token=trakt_access_token or settings.trakt.access_token,
                max_retries=settings.jobs.http_max_retries,
            )

        self.mdblist: Optional[MDBListClient] = None
        if settings.mdblist.api_key:
            self.mdblist = MDBListClient(api_key=settings.mdblist.api_key, max_retries=settings.jobs.http_max_retries)

        self.discord: Optional[DiscordWebhook] = None
        if settings.discord.webhook_url or settings.discord.webhook_error:
            self.discord = DiscordWebhook(
                default_url=settings.discord.webhook_url,
                error_url=settings.discord.webhook_error,
            )

        self.store = Store(settings.get_database_url())
        self.service = CollectionService(
            self.store,
            tmdb=self.tmdb,
            trakt=self.trakt,
            mdblist=self.mdblist,
            discord=self.discord,
            jobs=settings.jobs,
        )
        self.scheduler: Optional[Scheduler] = None

    @classmethod
    async def create(cls, settings: Settings) -> "Runner":
        """Build a runner, loading (and refreshing) the stored Trakt token first."""
        token = None
        if settings.trakt.client_id and settings.trakt.client_secret:
            auth = TraktAuth(
                client_id=settings.trakt.client_id,
                client_secret=settings.trakt.client_secret,
                data_dir=settings.get_data_path(),
            )
            token = await auth.get_valid_token()
        return cls(settings, trakt_access_token=token)

    # =========================================================================
    # Scheduled jobs
    # =========================================================================

    async def scheduled_refresh(self, collection_id: str) -> None:
        """Refresh one collection from the scheduler; failures are logged."""
        try:
            progress = await self.service.run_refresh(collection_id)
        except JobConflictError:
            logger.info(f"[Scheduler] Refresh of {collection_id} already running, skipping")
            return
        except CollectarrError as e:
            logger.error(f"[Scheduler] Refresh of {collection_id} failed: {e}")
            return

        if progress.error:
            logger.error(f"[Scheduler] Refresh of {collection_id} failed: {progress.error}")

    async def scheduled_sync(self) -> None:
        """Sync every enabled collection to Emby from the scheduler."""
        logger.info("[Scheduler] Starting scheduled Emby sync...")
        logs = await self.service.sync_to_emby()
        logger.info(f"[Scheduler] Emby sync finished: {len(logs)} server result(s)")

    async def schedule_all(self, scheduler: Scheduler) -> dict[str, str]:
        """
        Schedule refreshes of every enabled, non-manual collection.

        Returns:
            Job name -> crontab expression
        """
        self.scheduler = scheduler
        scheduled: dict[str, str] = {}

        for collection in await self.service.get_collections():
            name = refresh_job_name(collection)
            if collection.is_manual or not collection.is_enabled:
                scheduler.remove_job(name)
                continue

            cron = refresh_cron(collection.refresh_interval_hours, collection.refresh_time)
            scheduler.add_cron_job(name=name, func=self.scheduled_refresh, cron_expression=cron, args=[collection.id])
            scheduled[name] = cron
            logger.info(f"[Scheduler] '{collection.name}' refresh scheduled: {cron}")

        # Deleted collections
        for job in scheduler.list_jobs():
            if job["name"].startswith(REFRESH_JOB_PREFIX) and job["name"] not in scheduled:
                scheduler.remove_job(job["name"])

        sync_cron = self.settings.scheduler.sync_cron
        if sync_cron and sync_cron.strip():
            scheduler.add_cron_job(name=SYNC_JOB_NAME, func=self.scheduled_sync, cron_expression=sync_cron)
            scheduled[SYNC_JOB_NAME] = sync_cron

        return scheduled

    async def close(self) -> None:
        """Wait for background jobs, then close client and database connections."""
        await self.service.wait_for_jobs()
        for client in (self.tmdb, self.trakt, self.mdblist):
            if client:
                await client.close()
        await self.store.close()
