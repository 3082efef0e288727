"""External server models (Emby, Radarr, Sonarr)."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from collectarr.core.config import mask_secret
from collectarr.models.collection import new_id


class ServerType(str, Enum):
    """Kind of external server."""

    EMBY = "emby"
    RADARR = "radarr"
    SONARR = "sonarr"


class ExternalServer(BaseModel):
    """Connection details shared by all server kinds."""

    id: str = Field(default_factory=new_id)
    server_type: ServerType
    name: str
    url: str
    api_key: str
    is_default: bool = False
    created_at: datetime = Field(default_factory=datetime.now)

    def public_view(self) -> dict[str, Any]:
        """Serialize for display; the API key is never echoed in full."""
        data = self.model_dump(mode="json")
        data["api_key"] = mask_secret(self.api_key)
        return data


class EmbyServer(ExternalServer):
    """Emby media server."""

    server_type: ServerType = ServerType.EMBY


class ArrServer(ExternalServer):
    """Radarr/Sonarr server with add-request defaults."""

    quality_profile_id: Optional[int] = None
    root_folder_path: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        """Whether add requests can be submitted (profile + root folder set)."""
        return self.quality_profile_id is not None and bool(self.root_folder_path)


class RadarrServer(ArrServer):
    """Radarr (movies)."""

    server_type: ServerType = ServerType.RADARR


class SonarrServer(ArrServer):
    """Sonarr (series)."""

    server_type: ServerType = ServerType.SONARR


AnyServer = Union[EmbyServer, RadarrServer, SonarrServer]

SERVER_MODELS: dict[ServerType, type[ExternalServer]] = {
    ServerType.EMBY: EmbyServer,
    ServerType.RADARR: RadarrServer,
    ServerType.SONARR: SonarrServer,
}


class ServerOptions(BaseModel):
    """Choices offered by a Radarr/Sonarr server during configuration."""

    quality_profiles: list[dict[str, Any]] = Field(default_factory=list)  # [{id, name}]
    root_folders: list[dict[str, Any]] = Field(default_factory=list)  # [{id, path, freeSpace}]
