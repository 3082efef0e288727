"""TMDb (The Movie Database) API client, used to fill missing external ids."""

from datetime import date
from typing import Any, Optional

from loguru import logger

from collectarr.clients.base import BaseClient
from collectarr.models.media import MediaType, SourceEntry


class TMDbClient(BaseClient):
    """Client for TMDb API v3."""

    SERVICE = "TMDb"
    BASE_URL = "https://api.themoviedb.org/3"

    def __init__(self, api_key: str, language: str = "en-US"):
        """
        Initialize TMDb client.

        Args:
            api_key: TMDb API key
            language: Language for results
        """
        super().__init__(base_url=self.BASE_URL)
        self.api_key = api_key
        self.language = language

    def _params(self, **kwargs) -> dict[str, Any]:
        """Build request params with API key and language."""
        params = {
            "api_key": self.api_key,
            "language": self.language,
        }
        params.update(kwargs)
        return params

    # =========================================================================
    # Details
    # =========================================================================

    async def get_movie_details(self, tmdb_id: int) -> Optional[SourceEntry]:
        """Get movie details (with IMDb id) by TMDb ID."""
        response = await self.get(
            f"/movie/{tmdb_id}",
            params=self._params(append_to_response="external_ids"),
        )

        if response.status_code == 404:
            return None

        response.raise_for_status()
        return self._parse_movie_details(self.parse_json(response))

    async def get_series_details(self, tmdb_id: int) -> Optional[SourceEntry]:
        """Get TV series details (with IMDb and TVDb ids) by TMDb ID."""
        response = await self.get(
            f"/tv/{tmdb_id}",
            params=self._params(append_to_response="external_ids"),
        )

        if response.status_code == 404:
            return None

        response.raise_for_status()
        return self._parse_series_details(self.parse_json(response))

    async def get_details(self, tmdb_id: int, media_type: MediaType) -> Optional[SourceEntry]:
        """Get movie or series details depending on media type."""
        if media_type == MediaType.SHOW:
            return await self.get_series_details(tmdb_id)
        return await self.get_movie_details(tmdb_id)

    # =========================================================================
    # Find by external id
    # =========================================================================

    async def find_by_imdb_id(
        self,
        imdb_id: str,
        media_type: Optional[MediaType] = None,
    ) -> Optional[SourceEntry]:
        """Resolve IMDb ID to a TMDb movie/series entry via /find endpoint."""
        entry = await self._find(imdb_id, "imdb_id", media_type)
        if entry:
            entry.imdb_id = imdb_id
        return entry

    async def find_by_tvdb_id(
        self,
        tvdb_id: int,
        media_type: Optional[MediaType] = MediaType.SHOW,
    ) -> Optional[SourceEntry]:
        """Resolve TVDb ID to a TMDb entry via /find endpoint."""
        entry = await self._find(str(tvdb_id), "tvdb_id", media_type)
        if entry:
            entry.tvdb_id = tvdb_id
        return entry

    async def _find(
        self,
        external_id: str,
        external_source: str,
        media_type: Optional[MediaType],
    ) -> Optional[SourceEntry]:
        response = await self.get(
            f"/find/{external_id}",
            params=self._params(external_source=external_source),
        )

        if response.status_code == 404:
            return None

        response.raise_for_status()
        data = self.parse_json(response)

        movie_results = data.get("movie_results", [])
        tv_results = data.get("tv_results", [])

        if media_type == MediaType.MOVIE:
            return self._parse_movie(movie_results[0]) if movie_results else None

        if media_type == MediaType.SHOW:
            return self._parse_series(tv_results[0]) if tv_results else None

        if movie_results:
            return self._parse_movie(movie_results[0])
        if tv_results:
            return self._parse_series(tv_results[0])

        logger.debug(f"[TMDb] No match for {external_source}={external_id}")
        return None

    # =========================================================================
    # Parsers
    # =========================================================================

    def _parse_movie(self, data: dict[str, Any]) -> SourceEntry:
        """Parse movie from API response."""
        return SourceEntry(
            title=data.get("title", "Unknown"),
            year=_year(data.get("release_date")),
            media_type=MediaType.MOVIE,
            tmdb_id=data.get("id"),
            poster_path=data.get("poster_path"),
            rating=data.get("vote_average"),
        )

    def _parse_movie_details(self, data: dict[str, Any]) -> SourceEntry:
        """Parse movie from details endpoint."""
        movie = self._parse_movie(data)

        external_ids = data.get("external_ids", {})
        movie.imdb_id = external_ids.get("imdb_id") or data.get("imdb_id") or None

        return movie

    def _parse_series(self, data: dict[str, Any]) -> SourceEntry:
        """Parse TV series from API response."""
        return SourceEntry(
            title=data.get("name", "Unknown"),
            year=_year(data.get("first_air_date")),
            media_type=MediaType.SHOW,
            tmdb_id=data.get("id"),
            poster_path=data.get("poster_path"),
            rating=data.get("vote_average"),
        )

    def _parse_series_details(self, data: dict[str, Any]) -> SourceEntry:
        """Parse TV series from details endpoint."""
        series = self._parse_series(data)

        external_ids = data.get("external_ids", {})
        series.imdb_id = external_ids.get("imdb_id") or None
        series.tvdb_id = external_ids.get("tvdb_id") or None

        return series


def _year(value: Optional[str]) -> Optional[int]:
    """Extract the year of an ISO date string."""
    if not value:
        return None
    try:
        return date.fromisoformat(value).year
    except ValueError:
        return None
