"""Collection models."""

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from collectarr.models.media import ExternalIds, MediaType

_REFRESH_TIME = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def new_id() -> str:
    """Generate an entity id."""
    return uuid.uuid4().hex


class SourceType(str, Enum):
    """Where a collection's items come from."""

    MANUAL = "MANUAL"
    MDBLIST = "MDBLIST"
    TRAKT_LIST = "TRAKT_LIST"
    TRAKT_WATCHLIST = "TRAKT_WATCHLIST"
    TRAKT_COLLECTION = "TRAKT_COLLECTION"

    @property
    def is_trakt(self) -> bool:
        return self in {
            SourceType.TRAKT_LIST,
            SourceType.TRAKT_WATCHLIST,
            SourceType.TRAKT_COLLECTION,
        }


class CollectionItem(ExternalIds):
    """One media entry within a collection."""

    id: str = Field(default_factory=new_id)
    title: str
    year: Optional[int] = None
    media_type: MediaType = MediaType.MOVIE
    poster_path: Optional[str] = None
    rating: Optional[float] = None

    # No usable external id: kept for display, excluded from matching/dispatch
    unmatched: bool = False

    # Presence in Emby (recomputed by the presence matcher)
    in_emby: bool = False
    emby_item_ids: dict[str, str] = Field(default_factory=dict)  # server id -> Emby item id

    added_at: datetime = Field(default_factory=datetime.now)

    @property
    def display_title(self) -> str:
        """Get display title with year."""
        if self.year:
            return f"{self.title} ({self.year})"
        return self.title


class CollectionPolicy(BaseModel):
    """User-editable collection fields (create/update payload)."""

    name: str
    description: Optional[str] = None
    source_type: SourceType = SourceType.MANUAL
    source_id: Optional[str] = None
    poster_path: Optional[str] = None
    is_enabled: bool = True

    # Refresh schedule
    refresh_interval_hours: int = Field(default=24, ge=1)
    refresh_time: str = "00:00"

    # Emby policy flags
    sync_to_emby_on_refresh: bool = False
    remove_from_emby: bool = False
    delete_from_emby_on_delete: bool = False

    # Target Emby servers (empty = all configured servers)
    emby_server_ids: set[str] = Field(default_factory=set)

    @field_validator("refresh_time")
    @classmethod
    def validate_refresh_time(cls, v: str) -> str:
        if not _REFRESH_TIME.match(v):
            raise ValueError(f"refresh_time must be HH:MM, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_source(self) -> "CollectionPolicy":
        """source_id is required iff the collection is not manual."""
        if self.source_type == SourceType.MANUAL and self.source_id:
            raise ValueError("source_id must be empty for MANUAL collections")
        # Trakt watchlist/collection sources carry the username ("me" for the token owner)
        if self.source_type != SourceType.MANUAL and not self.source_id:
            raise ValueError(f"source_id is required for {self.source_type.value} collections")
        return self


class Collection(CollectionPolicy):
    """User-owned grouping of media items."""

    id: str = Field(default_factory=new_id)
    items: list[CollectionItem] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    last_refreshed_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None

    @property
    def is_manual(self) -> bool:
        return self.source_type == SourceType.MANUAL

    def find_item(self, item_id: str) -> Optional[CollectionItem]:
        """Get an item by id."""
        return next((i for i in self.items if i.id == item_id), None)


class CollectionStats(BaseModel):
    """Library presence summary for a collection."""

    total: int = 0
    in_emby: int = 0
    missing: int = 0
    percent_in_library: int = 0
