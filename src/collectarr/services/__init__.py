"""Reconciliation services: identity, presence, refresh, sync and dispatch."""

from collectarr.services.collections import CollectionService
from collectarr.services.dispatcher import DownloadDispatcher
from collectarr.services.emby_sync import EmbySyncService
from collectarr.services.identity import IdentityResolver, canonical_key, identity_keys, merge_ids
from collectarr.services.jobs import JobTracker
from collectarr.services.media_matcher import LibraryIndex, MediaMatcher, PresenceCache, annotate, compute_stats
from collectarr.services.poller import poll_until_settled
from collectarr.services.refresh import CollectionRefresher
from collectarr.services.store import Store

__all__ = [
    "CollectionRefresher",
    "CollectionService",
    "DownloadDispatcher",
    "EmbySyncService",
    "IdentityResolver",
    "JobTracker",
    "LibraryIndex",
    "MediaMatcher",
    "PresenceCache",
    "Store",
    "annotate",
    "canonical_key",
    "compute_stats",
    "identity_keys",
    "merge_ids",
    "poll_until_settled",
]
