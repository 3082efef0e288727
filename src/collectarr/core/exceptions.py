"""Exception hierarchy shared by clients and services."""

from typing import Any, Optional


class CollectarrError(Exception):
    """Base class for all application errors."""


class ValidationError(CollectarrError):
    """Input rejected before any network call was made."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(CollectarrError):
    """Requested entity does not exist."""


class JobConflictError(CollectarrError):
    """A job for the same collection is already running."""

    def __init__(self, collection_id: str):
        super().__init__(f"A refresh is already running for collection {collection_id}")
        self.collection_id = collection_id


class ExternalServiceError(CollectarrError):
    """An upstream provider (Trakt, MDBList, TMDb, Emby, Radarr, Sonarr) failed."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{service} error: {message}")
        self.service = service
        self.status_code = status_code


class AlreadyExistsError(ExternalServiceError):
    """Radarr/Sonarr reported the item as already added (benign no-op)."""
