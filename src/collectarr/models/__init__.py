"""Pydantic models for data structures."""

from collectarr.models.collection import (
    Collection,
    CollectionItem,
    CollectionPolicy,
    CollectionStats,
    SourceType,
)
from collectarr.models.dispatch import DispatchOutcome, DispatchResult, RequestMissingStats
from collectarr.models.media import ExternalIds, LibraryItem, MediaType, SourceEntry
from collectarr.models.server import (
    AnyServer,
    ArrServer,
    EmbyServer,
    ExternalServer,
    RadarrServer,
    ServerOptions,
    ServerType,
    SonarrServer,
)
from collectarr.models.sync import JobProgress, JobState, SyncLog, SyncStatus, compute_sync_status

__all__ = [
    "AnyServer",
    "ArrServer",
    "Collection",
    "CollectionItem",
    "CollectionPolicy",
    "CollectionStats",
    "DispatchOutcome",
    "DispatchResult",
    "EmbyServer",
    "ExternalIds",
    "ExternalServer",
    "JobProgress",
    "JobState",
    "LibraryItem",
    "MediaType",
    "RadarrServer",
    "RequestMissingStats",
    "ServerOptions",
    "ServerType",
    "SonarrServer",
    "SourceEntry",
    "SourceType",
    "SyncLog",
    "SyncStatus",
    "compute_sync_status",
]
