"""Service for resolving and comparing the identity of collection items."""

from typing import Optional, TypeVar

import httpx
from loguru import logger

from collectarr.clients.tmdb import TMDbClient
from collectarr.core.exceptions import ExternalServiceError
from collectarr.models.collection import CollectionItem
from collectarr.models.media import ExternalIds, MediaType, SourceEntry

ID_FIELDS = ("imdb_id", "tmdb_id", "tvdb_id", "trakt_id")

T = TypeVar("T", bound=ExternalIds)


def normalize_title(title: str) -> str:
    """Normalize title for comparison."""
    # Lowercase
    title = title.lower()

    # Remove common articles
    for article in ["the ", "a ", "an "]:
        if title.startswith(article):
            title = title[len(article) :]

    # Remove special characters
    title = "".join(c for c in title if c.isalnum() or c.isspace())

    # Normalize whitespace
    return " ".join(title.split())


def merge_ids(existing: T, resolved: ExternalIds) -> T:
    """
    Fill the ids `existing` lacks from `resolved`.

    Known ids are never replaced or cleared, so the id set only grows.

    Args:
        existing: Item whose ids are kept
        resolved: Newly learned ids

    Returns:
        A copy of `existing` with missing ids filled
    """
    updates = {
        field: getattr(resolved, field)
        for field in ID_FIELDS
        if getattr(existing, field) is None and getattr(resolved, field) is not None
    }
    return existing.model_copy(update=updates) if updates else existing


def _title_key(title: str, year: Optional[int], media_type: MediaType) -> str:
    return f"title:{media_type.value.lower()}:{normalize_title(title)}:{year or ''}"


def identity_keys(item: SourceEntry | CollectionItem) -> set[str]:
    """
    Get every key an item can be matched by.

    TMDb ids are namespaced by media type since movie and TV ids overlap.
    The title key is only used when the item has no external id at all.
    """
    media = item.media_type.value.lower()
    keys = set()
    if item.imdb_id:
        keys.add(f"imdb:{item.imdb_id}")
    if item.tmdb_id:
        keys.add(f"tmdb:{media}:{item.tmdb_id}")
    if item.tvdb_id:
        keys.add(f"tvdb:{item.tvdb_id}")
    if item.trakt_id:
        keys.add(f"trakt:{media}:{item.trakt_id}")
    if not keys:
        keys.add(_title_key(item.title, item.year, item.media_type))
    return keys


def canonical_key(item: SourceEntry | CollectionItem) -> str:
    """
    Get the primary identity of an item.

    Movies: tmdb, then imdb. Shows: tvdb, then imdb, then tmdb.
    Falls back to a normalized title + year key.
    """
    media = item.media_type.value.lower()
    if item.media_type == MediaType.SHOW:
        order = [
            ("tvdb", item.tvdb_id),
            ("imdb", item.imdb_id),
            (f"tmdb:{media}", item.tmdb_id),
        ]
    else:
        order = [
            (f"tmdb:{media}", item.tmdb_id),
            ("imdb", item.imdb_id),
        ]

    for prefix, value in order:
        if value:
            return f"{prefix}:{value}"

    return _title_key(item.title, item.year, item.media_type)


class IdentityResolver:
    """Derive as many external ids as possible for source entries."""

    def __init__(self, tmdb: Optional[TMDbClient] = None):
        """
        Initialize resolver.

        Args:
            tmdb: TMDb client used to translate ids (None disables lookups)
        """
        self.tmdb = tmdb
        self._cache: dict[str, Optional[ExternalIds]] = {}  # "type:id" -> resolved ids

    def clear_cache(self) -> None:
        self._cache.clear()

    async def resolve(self, entry: SourceEntry) -> CollectionItem:
        """
        Build a collection item from a source entry, filling missing ids.

        Provider failures are logged and leave the entry's own ids intact.
        Entries without any id are kept but flagged as unmatched.
        """
        ids = await self.resolve_ids(entry, entry.media_type)

        item = CollectionItem(
            title=entry.title,
            year=entry.year,
            media_type=entry.media_type,
            poster_path=entry.poster_path,
            rating=entry.rating,
            **{field: getattr(ids, field) for field in ID_FIELDS},
        )
        item.unmatched = not item.has_any_id

        if item.unmatched:
            logger.warning(f"[Identity] No external id for '{entry.display_title}', kept as unmatched")

        return item

    async def resolve_ids(self, ids: ExternalIds, media_type: MediaType) -> ExternalIds:
        """
        Fill missing ids through TMDb.

        IMDb or TVDb ids are translated to TMDb first, then the TMDb details
        provide the remaining IMDb/TVDb ids.
        """
        result = ExternalIds(**{field: getattr(ids, field) for field in ID_FIELDS})
        if not self.tmdb:
            return result

        if not result.tmdb_id and result.imdb_id:
            found = await self._lookup(f"imdb:{result.imdb_id}", self.tmdb.find_by_imdb_id, result.imdb_id, media_type)
            if found:
                result = merge_ids(result, found)

        if not result.tmdb_id and result.tvdb_id:
            found = await self._lookup(f"tvdb:{result.tvdb_id}", self.tmdb.find_by_tvdb_id, result.tvdb_id, media_type)
            if found:
                result = merge_ids(result, found)

        needs_details = not result.imdb_id or (media_type == MediaType.SHOW and not result.tvdb_id)
        if result.tmdb_id and needs_details:
            found = await self._lookup(
                f"tmdb:{media_type.value.lower()}:{result.tmdb_id}",
                self.tmdb.get_details,
                result.tmdb_id,
                media_type,
            )
            if found:
                result = merge_ids(result, found)

        return result

    async def _lookup(self, cache_key: str, fetch, *args) -> Optional[ExternalIds]:
        """Run a TMDb lookup once per key; failures resolve to None."""
        if cache_key in self._cache:
            return self._cache[cache_key]

        try:
            found = await fetch(*args)
        except (httpx.HTTPError, ExternalServiceError) as e:
            logger.warning(f"[Identity] TMDb lookup failed for {cache_key}: {e}")
            # Failures are not cached
            return None

        self._cache[cache_key] = found
        return found
