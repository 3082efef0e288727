"""Radarr API client."""

from typing import Any, Optional

from loguru import logger

from collectarr.clients.arr import ArrClient
from collectarr.core.exceptions import ExternalServiceError


class RadarrClient(ArrClient):
    """Client for Radarr API v3."""

    SERVICE = "Radarr"

    async def get_movies(self) -> list[dict[str, Any]]:
        """Get every movie tracked by Radarr."""
        response = await self.get("/movie")
        response.raise_for_status()
        return self.parse_json(response)

    async def get_movie_by_tmdb_id(self, tmdb_id: int) -> Optional[dict[str, Any]]:
        """Get a tracked movie by TMDb ID."""
        response = await self.get("/movie", params={"tmdbId": tmdb_id})
        response.raise_for_status()
        movies = self.parse_json(response)
        return movies[0] if movies else None

    async def lookup_movie_by_tmdb_id(self, tmdb_id: int) -> Optional[dict[str, Any]]:
        """Look a movie up in Radarr's metadata source."""
        response = await self.get("/movie/lookup", params={"term": f"tmdb:{tmdb_id}"})
        response.raise_for_status()
        movies = self.parse_json(response)
        return movies[0] if movies else None

    async def add_movie(
        self,
        tmdb_id: int,
        quality_profile_id: int,
        root_folder_path: str,
        monitored: bool = True,
        search: bool = True,
        minimum_availability: str = "announced",
    ) -> dict[str, Any]:
        """
        Add a movie to Radarr.

        Args:
            tmdb_id: TMDb movie ID
            quality_profile_id: Quality profile ID
            root_folder_path: Root folder path
            monitored: Monitor the movie
            search: Search for the movie immediately
            minimum_availability: Availability threshold before grabbing

        Returns:
            The created movie

        Raises:
            AlreadyExistsError: Radarr already tracks the movie
            ExternalServiceError: Lookup failed or Radarr rejected the request
        """
        movie = await self.lookup_movie_by_tmdb_id(tmdb_id)
        if not movie:
            raise ExternalServiceError(self.SERVICE, f"Movie with TMDb ID {tmdb_id} not found", 404)

        payload = {
            **movie,
            "qualityProfileId": quality_profile_id,
            "rootFolderPath": root_folder_path,
            "monitored": monitored,
            "minimumAvailability": minimum_availability,
            "addOptions": {
                "searchForMovie": search,
                "addMethod": "manual",
                "monitor": "movieOnly",
            },
        }

        logger.debug(f"[Radarr] Adding tmdb:{tmdb_id} {movie.get('title')}")
        return await self._post_add("/movie", payload, movie.get("title", f"tmdb:{tmdb_id}"))
