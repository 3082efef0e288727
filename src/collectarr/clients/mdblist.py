"""MDBList API client."""

from typing import Any

from loguru import logger

from collectarr.clients.base import BaseClient
from collectarr.core.exceptions import ExternalServiceError
from collectarr.models.media import MediaType, SourceEntry

POSTER_BASE_URL = "https://image.tmdb.org/t/p/w500"


class MDBListClient(BaseClient):
    """Client for the MDBList API."""

    SERVICE = "MDBList"
    BASE_URL = "https://api.mdblist.com"

    def __init__(self, api_key: str, max_retries: int = 3):
        super().__init__(base_url=self.BASE_URL, api_key=api_key)
        self.max_retries = max_retries

    def _params(self, **kwargs) -> dict[str, Any]:
        return {"apikey": self.api_key, **kwargs}

    async def get_list_info(self, list_id: str) -> dict[str, Any]:
        """Get list metadata."""
        response = await self.get(f"/lists/{list_id}", params=self._params())
        response.raise_for_status()
        data = self.parse_json(response)
        return data[0] if isinstance(data, list) and data else data

    async def get_list_items(self, list_id: str) -> list[SourceEntry]:
        """
        Get items of a list.

        Args:
            list_id: MDBList list ID

        Returns:
            List of source entries
        """
        response = await self.get_with_retry(
            f"/lists/{list_id}/items",
            max_retries=self.max_retries,
            params=self._params(),
        )
        response.raise_for_status()
        data = self.parse_json(response)

        # Newer API versions split the payload into movies and shows
        if isinstance(data, dict):
            raw_items = (data.get("movies") or []) + (data.get("shows") or [])
        elif isinstance(data, list):
            raw_items = data
        else:
            raise ExternalServiceError(self.SERVICE, f"unexpected payload type: {type(data).__name__}")

        entries = [self._parse_item(item) for item in raw_items]
        logger.info(f"[MDBList] List {list_id}: fetched {len(entries)} items")
        return entries

    def _parse_item(self, item: dict[str, Any]) -> SourceEntry:
        poster = item.get("poster")
        if poster and poster.startswith("/"):
            poster = f"{POSTER_BASE_URL}{poster}"

        return SourceEntry(
            title=item.get("title") or "Unknown",
            year=item.get("year") or item.get("release_year"),
            media_type=MediaType.parse(item.get("mediatype", "movie")),
            imdb_id=item.get("imdb_id") or None,
            tmdb_id=item.get("tmdb_id") or item.get("id") or None,
            tvdb_id=item.get("tvdb_id") or None,
            trakt_id=item.get("trakt_id") or None,
            poster_path=poster or None,
        )
