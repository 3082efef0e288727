"""Sync log and job models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from collectarr.models.collection import new_id


class SyncStatus(str, Enum):
    """Outcome of one Emby sync attempt."""

    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


def compute_sync_status(items_matched: int, items_total: int, error: Optional[str] = None) -> SyncStatus:
    """
    Derive a sync status from its counters.

    FAILED when nothing matched and an error occurred, PARTIAL when some but
    not all items matched, SUCCESS otherwise.
    """
    if items_matched == 0 and error:
        return SyncStatus.FAILED
    if 0 < items_matched < items_total:
        return SyncStatus.PARTIAL
    return SyncStatus.SUCCESS


class SyncLog(BaseModel):
    """Immutable record of one sync attempt for one collection on one server."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    collection_id: str
    collection_name: str = ""
    emby_server_id: str
    emby_server_name: str = ""
    status: SyncStatus
    items_matched: int = Field(default=0, ge=0)
    items_total: int = Field(default=0, ge=0)
    items_failed: int = Field(default=0, ge=0)
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="after")
    def validate_counts(self) -> "SyncLog":
        if self.items_matched > self.items_total:
            raise ValueError(
                f"items_matched ({self.items_matched}) exceeds items_total ({self.items_total})"
            )
        return self

    @classmethod
    def record(
        cls,
        collection_id: str,
        emby_server_id: str,
        started_at: datetime,
        items_matched: int = 0,
        items_total: int = 0,
        error_message: Optional[str] = None,
        collection_name: str = "",
        emby_server_name: str = "",
    ) -> "SyncLog":
        """Build a log whose status and failure count follow from the counters."""
        return cls(
            collection_id=collection_id,
            collection_name=collection_name,
            emby_server_id=emby_server_id,
            emby_server_name=emby_server_name,
            status=compute_sync_status(items_matched, items_total, error_message),
            items_matched=items_matched,
            items_total=items_total,
            items_failed=items_total - items_matched,
            error_message=error_message,
            started_at=started_at,
        )


class JobState(str, Enum):
    """Lifecycle of a background refresh job."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobProgress(BaseModel):
    """Snapshot of a refresh job, observable by polling or subscription."""

    collection_id: str
    state: JobState = JobState.RUNNING
    items_total: int = 0  # items currently in the collection
    items_added: int = 0
    items_updated: int = 0
    items_removed: int = 0
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state != JobState.RUNNING
