"""Emby API client for managing collections and reading libraries."""

import base64
from typing import Any, Optional

from loguru import logger

from collectarr.clients.base import BaseClient
from collectarr.models.media import LibraryItem, MediaType


class EmbyClient(BaseClient):
    """Client for the Emby server REST API."""

    SERVICE = "Emby"
    COLLECTION_ITEMS_BATCH_SIZE = 50
    PAGE_SIZE = 500

    def __init__(self, url: str, api_key: str, timeout: float = 30.0):
        """
        Initialize Emby client.

        Args:
            url: Emby server URL
            api_key: Emby API key
            timeout: Request timeout in seconds
        """
        super().__init__(
            base_url=url,
            api_key=api_key,
            headers={"X-Emby-Token": api_key},
            timeout=timeout,
        )

    # =========================================================================
    # System
    # =========================================================================

    async def get_system_info(self) -> dict[str, Any]:
        """Get server name, version and id (used as connection test)."""
        response = await self.get("/System/Info")
        response.raise_for_status()
        return self.parse_json(response, dict)

    # =========================================================================
    # Library items
    # =========================================================================

    async def get_library_items(
        self,
        media_type: Optional[MediaType] = None,
        limit: int = 100000,
    ) -> list[LibraryItem]:
        """
        Get all movies and series across libraries, with provider ids.

        Args:
            media_type: Restrict to movies or series
            limit: Maximum items to return

        Returns:
            List of library items
        """
        base_params: dict[str, Any] = {
            "Recursive": True,
            "Fields": "ProviderIds,Path,Genres,ProductionYear",
            "IncludeItemTypes": self._item_types(media_type),
        }

        offset = 0
        items: list[LibraryItem] = []

        while len(items) < limit:
            page_size = min(self.PAGE_SIZE, limit - len(items))
            params = {**base_params, "Limit": page_size, "StartIndex": offset}
            response = await self.get("/Items", params=params)
            response.raise_for_status()

            page = self.parse_json(response, dict).get("Items", [])
            if not page:
                break

            items.extend(self._parse_item(item) for item in page)

            offset += len(page)
            if len(page) < page_size:
                break

        logger.debug(f"[Emby] Loaded {len(items)} library items from {self.base_url}")
        return items

    # =========================================================================
    # Collections
    # =========================================================================

    async def get_collections(self) -> list[dict[str, Any]]:
        """Get all collections (BoxSets)."""
        params = {
            "IncludeItemTypes": "BoxSet",
            "Recursive": True,
            "Fields": "ChildCount",
        }
        response = await self.get("/Items", params=params)
        response.raise_for_status()
        return self.parse_json(response, dict).get("Items", [])

    async def get_collection_by_name(self, name: str) -> Optional[dict[str, Any]]:
        """Get a collection by exact name."""
        collections = await self.get_collections()
        return next((c for c in collections if c.get("Name") == name), None)

    async def get_collection_items(self, collection_id: str) -> list[str]:
        """
        Get item IDs in a collection.

        Args:
            collection_id: Collection ID

        Returns:
            List of item IDs
        """
        params = {"ParentId": collection_id, "Recursive": True}
        response = await self.get("/Items", params=params)
        response.raise_for_status()
        return [item["Id"] for item in self.parse_json(response, dict).get("Items", [])]

    async def create_collection(self, name: str, item_ids: Optional[list[str]] = None) -> str:
        """
        Create a new collection.

        Emby refuses empty BoxSets on some versions, so callers pass at least
        one item id; the rest are added in batches.

        Args:
            name: Collection name
            item_ids: Initial item IDs

        Returns:
            Collection ID
        """
        item_ids = item_ids or []
        params = {"Name": name}
        if item_ids:
            params["Ids"] = ",".join(item_ids[: self.COLLECTION_ITEMS_BATCH_SIZE])

        response = await self.post("/Collections", params=params)
        response.raise_for_status()

        collection_id = self.parse_json(response, dict).get("Id")
        logger.info(f"[Emby] Created collection '{name}' with ID: {collection_id}")

        remaining = item_ids[self.COLLECTION_ITEMS_BATCH_SIZE :]
        if remaining:
            await self.add_to_collection(collection_id, remaining)

        return collection_id

    async def add_to_collection(self, collection_id: str, item_ids: list[str]) -> None:
        """
        Add items to a collection.

        Args:
            collection_id: Collection ID
            item_ids: Item IDs to add
        """
        for i in range(0, len(item_ids), self.COLLECTION_ITEMS_BATCH_SIZE):
            batch = item_ids[i : i + self.COLLECTION_ITEMS_BATCH_SIZE]
            response = await self.post(
                f"/Collections/{collection_id}/Items",
                params={"Ids": ",".join(batch)},
            )
            response.raise_for_status()

        if item_ids:
            logger.debug(f"[Emby] Added {len(item_ids)} items to collection {collection_id}")

    async def remove_from_collection(self, collection_id: str, item_ids: list[str]) -> None:
        """
        Remove items from a collection.

        Args:
            collection_id: Collection ID
            item_ids: Item IDs to remove
        """
        for i in range(0, len(item_ids), self.COLLECTION_ITEMS_BATCH_SIZE):
            batch = item_ids[i : i + self.COLLECTION_ITEMS_BATCH_SIZE]
            response = await self.delete(
                f"/Collections/{collection_id}/Items",
                params={"Ids": ",".join(batch)},
            )
            response.raise_for_status()

        if item_ids:
            logger.debug(f"[Emby] Removed {len(item_ids)} items from collection {collection_id}")

    async def delete_collection(self, collection_id: str) -> bool:
        """
        Delete a collection.

        Args:
            collection_id: Collection ID

        Returns:
            True if successful
        """
        response = await self.delete(f"/Items/{collection_id}")

        if response.status_code in (200, 204):
            logger.info(f"[Emby] Deleted collection {collection_id}")
            return True

        logger.error(f"[Emby] Failed to delete collection: {response.status_code}")
        return False

    async def upload_collection_poster(self, collection_id: str, image: bytes, content_type: str) -> bool:
        """Upload a Primary image for a collection (base64 body, like the Emby web UI)."""
        response = await self.post_binary(
            f"/Items/{collection_id}/Images/Primary",
            content=base64.b64encode(image),
            content_type=content_type,
        )
        if response.status_code in (200, 204):
            logger.info(f"[Emby] Uploaded poster for collection {collection_id}")
            return True

        logger.warning(f"[Emby] Failed to upload poster: {response.status_code}")
        return False

    # =========================================================================
    # Helpers
    # =========================================================================

    def _item_types(self, media_type: Optional[MediaType]) -> str:
        if media_type == MediaType.MOVIE:
            return "Movie"
        if media_type == MediaType.SHOW:
            return "Series"
        return "Movie,Series"

    def _parse_item(self, item: dict[str, Any]) -> LibraryItem:
        """Map an Emby item payload to a LibraryItem."""
        provider_ids = {k.lower(): v for k, v in (item.get("ProviderIds") or {}).items()}
        return LibraryItem(
            emby_id=item["Id"],
            title=item.get("Name", ""),
            year=item.get("ProductionYear"),
            media_type=MediaType.SHOW if item.get("Type") == "Series" else MediaType.MOVIE,
            imdb_id=provider_ids.get("imdb") or None,
            tmdb_id=_to_int(provider_ids.get("tmdb")),
            tvdb_id=_to_int(provider_ids.get("tvdb")),
            path=item.get("Path"),
            genres=item.get("Genres", []) or [],
        )


def _to_int(value: Any) -> Optional[int]:
    """Parse a provider id that Emby returns as a string."""
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None
