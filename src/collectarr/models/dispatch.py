"""Download request outcomes."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from collectarr.models.server import ServerType


class DispatchOutcome(str, Enum):
    """Tagged result of an add request to Radarr/Sonarr."""

    SUCCESS = "success"
    ALREADY_EXISTS = "already_exists"
    ERROR = "error"


class DispatchResult(BaseModel):
    """Result of dispatching one item to one server."""

    outcome: DispatchOutcome
    server_id: Optional[str] = None
    server_type: Optional[ServerType] = None
    title: str = ""
    external_id: Optional[int] = None  # tmdb id (Radarr) or tvdb id (Sonarr)
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        """Success for UI purposes: newly added or already present."""
        return self.outcome in {DispatchOutcome.SUCCESS, DispatchOutcome.ALREADY_EXISTS}


class RequestMissingStats(BaseModel):
    """Counters for a bulk request of a collection's missing items."""

    added: int = 0
    already_exists: int = 0
    failed: int = 0
    missing_ids: int = 0
    skipped: int = 0
    results: list[DispatchResult] = Field(default_factory=list)
