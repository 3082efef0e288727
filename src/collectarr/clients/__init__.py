"""API clients for external services."""

from collectarr.clients.base import BaseClient
from collectarr.clients.discord import DiscordWebhook
from collectarr.clients.emby import EmbyClient
from collectarr.clients.mdblist import MDBListClient
from collectarr.clients.radarr import RadarrClient
from collectarr.clients.sonarr import SonarrClient
from collectarr.clients.tmdb import TMDbClient
from collectarr.clients.trakt import TraktClient

__all__ = [
    "BaseClient",
    "DiscordWebhook",
    "EmbyClient",
    "MDBListClient",
    "RadarrClient",
    "SonarrClient",
    "TMDbClient",
    "TraktClient",
]
