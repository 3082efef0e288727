"""Trakt API client for lists, watchlists and collections."""

from typing import Any, Optional

from loguru import logger

from collectarr.clients.base import BaseClient
from collectarr.models.media import MediaType, SourceEntry


class TraktClient(BaseClient):
    """Client for Trakt API v2."""

    SERVICE = "Trakt"
    BASE_URL = "https://api.trakt.tv"

    def __init__(
        self,
        client_id: str,
        access_token: Optional[str] = None,
        max_retries: int = 3,
    ):
        """
        Initialize Trakt client.

        Args:
            client_id: Trakt application client ID
            access_token: OAuth access token (needed for private lists and "me")
            max_retries: Retries for transient errors on list fetches
        """
        headers = {
            "Content-Type": "application/json",
            "trakt-api-version": "2",
            "trakt-api-key": client_id,
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        super().__init__(base_url=self.BASE_URL, headers=headers)
        self.client_id = client_id
        self.max_retries = max_retries

    async def _get_items(self, path: str) -> list[dict[str, Any]]:
        response = await self.get_with_retry(path, max_retries=self.max_retries)
        response.raise_for_status()
        return self.parse_json(response)

    # =========================================================================
    # Lists
    # =========================================================================

    async def get_user_lists(self, username: str = "me") -> list[dict[str, Any]]:
        """Get a user's personal lists."""
        response = await self.get(f"/users/{username}/lists")
        response.raise_for_status()
        return self.parse_json(response)

    async def get_list_items(self, list_id: str, username: str = "me") -> list[SourceEntry]:
        """
        Get items of a user list.

        Args:
            list_id: List slug or Trakt ID. "user/slug" selects another user's list.
            username: List owner, defaults to the token owner

        Returns:
            List of source entries
        """
        if "/" in list_id:
            username, list_id = list_id.split("/", 1)

        data = await self._get_items(f"/users/{username}/lists/{list_id}/items")
        entries = self._parse_items(data)

        logger.info(f"[Trakt] List {username}/{list_id}: fetched {len(entries)} items")
        return entries

    async def get_watchlist(self, username: str = "me") -> list[SourceEntry]:
        """Get movies and shows on a user's watchlist."""
        data = await self._get_items(f"/users/{username}/watchlist")
        entries = self._parse_items(data)

        logger.info(f"[Trakt] Watchlist {username}: fetched {len(entries)} items")
        return entries

    async def get_collection(self, username: str = "me") -> list[SourceEntry]:
        """Get collected movies and shows of a user."""
        movies = await self._get_items(f"/users/{username}/collection/movies")
        shows = await self._get_items(f"/users/{username}/collection/shows")
        entries = self._parse_items(movies) + self._parse_items(shows)

        logger.info(f"[Trakt] Collection {username}: fetched {len(entries)} items")
        return entries

    # =========================================================================
    # Parsers
    # =========================================================================

    def _parse_items(self, data: list[dict[str, Any]]) -> list[SourceEntry]:
        """Parse list entries, skipping seasons, episodes and people."""
        entries = []
        for item in data:
            if item.get("movie"):
                entries.append(self._parse_media(item["movie"], MediaType.MOVIE))
            elif item.get("show"):
                entries.append(self._parse_media(item["show"], MediaType.SHOW))
        return entries

    def _parse_media(self, media: dict[str, Any], media_type: MediaType) -> SourceEntry:
        ids = media.get("ids") or {}
        return SourceEntry(
            title=media.get("title") or "Unknown",
            year=media.get("year"),
            media_type=media_type,
            imdb_id=ids.get("imdb") or None,
            tmdb_id=ids.get("tmdb") or None,
            tvdb_id=ids.get("tvdb") or None,
            trakt_id=ids.get("trakt") or None,
            rating=media.get("rating"),
        )
