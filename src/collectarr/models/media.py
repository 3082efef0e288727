"""Media item models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class MediaType(str, Enum):
    """Media type enumeration."""

    MOVIE = "MOVIE"
    SHOW = "SHOW"

    @classmethod
    def parse(cls, value: str) -> "MediaType":
        """Map provider spellings (movie, show, tv, series) to a MediaType."""
        normalized = (value or "").strip().lower()
        if normalized in {"show", "shows", "tv", "series"}:
            return cls.SHOW
        return cls.MOVIE


class ExternalIds(BaseModel):
    """External identifiers shared by list entries, items and library entries."""

    imdb_id: Optional[str] = None
    tmdb_id: Optional[int] = None
    tvdb_id: Optional[int] = None
    trakt_id: Optional[int] = None

    @property
    def has_any_id(self) -> bool:
        """Whether at least one matchable id (IMDb/TMDb/TVDb) is known."""
        return bool(self.imdb_id or self.tmdb_id or self.tvdb_id)


class SourceEntry(ExternalIds):
    """Raw entry of a source list (Trakt, MDBList or a manual add)."""

    title: str
    year: Optional[int] = None
    media_type: MediaType = MediaType.MOVIE
    poster_path: Optional[str] = None
    rating: Optional[float] = None

    @property
    def display_title(self) -> str:
        """Get display title with year."""
        if self.year:
            return f"{self.title} ({self.year})"
        return self.title


class LibraryItem(ExternalIds):
    """Item from a media server library (Emby)."""

    emby_id: str
    title: str
    year: Optional[int] = None
    media_type: MediaType
    path: Optional[str] = None
    genres: list[str] = Field(default_factory=list)
