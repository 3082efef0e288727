"""Collectarr - list-driven collections for Emby, Radarr and Sonarr."""

__version__ = "0.1.0"
