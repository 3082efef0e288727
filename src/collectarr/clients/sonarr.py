"""Sonarr API client."""

from typing import Any, Optional

from loguru import logger

from collectarr.clients.arr import ArrClient
from collectarr.core.exceptions import ExternalServiceError


class SonarrClient(ArrClient):
    """Client for Sonarr API v3."""

    SERVICE = "Sonarr"

    async def get_series(self) -> list[dict[str, Any]]:
        """Get every series tracked by Sonarr."""
        response = await self.get("/series")
        response.raise_for_status()
        return self.parse_json(response)

    async def get_series_by_tvdb_id(self, tvdb_id: int) -> Optional[dict[str, Any]]:
        """Get a tracked series by TVDb ID."""
        response = await self.get("/series", params={"tvdbId": tvdb_id})
        response.raise_for_status()
        series = self.parse_json(response)
        return series[0] if series else None

    async def lookup_series_by_tvdb_id(self, tvdb_id: int) -> Optional[dict[str, Any]]:
        """Look a series up in Sonarr's metadata source."""
        response = await self.get("/series/lookup", params={"term": f"tvdb:{tvdb_id}"})
        response.raise_for_status()
        series = self.parse_json(response)
        return series[0] if series else None

    async def add_series(
        self,
        tvdb_id: int,
        quality_profile_id: int,
        root_folder_path: str,
        monitored: bool = True,
        search: bool = True,
    ) -> dict[str, Any]:
        """
        Add a series to Sonarr.

        Args:
            tvdb_id: TVDb series ID
            quality_profile_id: Quality profile ID
            root_folder_path: Root folder path
            monitored: Monitor the series
            search: Search for missing episodes immediately

        Returns:
            The created series

        Raises:
            AlreadyExistsError: Sonarr already tracks the series
            ExternalServiceError: Lookup failed or Sonarr rejected the request
        """
        series = await self.lookup_series_by_tvdb_id(tvdb_id)
        if not series:
            raise ExternalServiceError(self.SERVICE, f"Series with TVDb ID {tvdb_id} not found", 404)

        payload = {
            **series,
            "qualityProfileId": quality_profile_id,
            "rootFolderPath": root_folder_path,
            "monitored": monitored,
            "seasonFolder": True,
            "seriesType": series.get("seriesType") or "standard",
            "addOptions": {
                "ignoreEpisodesWithFiles": False,
                "ignoreEpisodesWithoutFiles": False,
                "monitor": "all",
                "searchForMissingEpisodes": search,
                "searchForCutoffUnmetEpisodes": False,
            },
        }

        logger.debug(f"[Sonarr] Adding tvdb:{tvdb_id} {series.get('title')}")
        return await self._post_add("/series", payload, series.get("title", f"tvdb:{tvdb_id}"))
