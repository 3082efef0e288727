"""Shared client for the *arr v3 APIs (Radarr, Sonarr)."""

from typing import Any

import httpx
from loguru import logger

from collectarr.clients.base import BaseClient
from collectarr.core.exceptions import AlreadyExistsError, ExternalServiceError

ALREADY_EXISTS_MARKERS = ("already been added", "already exists")


class ArrClient(BaseClient):
    """Common endpoints of Radarr and Sonarr."""

    SERVICE = "Arr"

    def __init__(self, url: str, api_key: str, timeout: float = 30.0):
        """
        Initialize client.

        Args:
            url: Server URL (without /api/v3)
            api_key: Server API key
            timeout: Request timeout in seconds
        """
        super().__init__(
            base_url=f"{url.rstrip('/')}/api/v3",
            api_key=api_key,
            headers={"X-Api-Key": api_key},
            timeout=timeout,
        )

    async def get_system_status(self) -> dict[str, Any]:
        """Get app name and version (used as connection test)."""
        response = await self.get("/system/status")
        response.raise_for_status()
        return self.parse_json(response)

    async def get_quality_profiles(self) -> list[dict[str, Any]]:
        """Get configured quality profiles."""
        response = await self.get("/qualityprofile")
        response.raise_for_status()
        return self.parse_json(response)

    async def get_root_folders(self) -> list[dict[str, Any]]:
        """Get configured root folders."""
        response = await self.get("/rootfolder")
        response.raise_for_status()
        return self.parse_json(response)

    async def _post_add(self, path: str, payload: dict[str, Any], title: str) -> dict[str, Any]:
        """
        POST an add request, translating duplicate replies.

        Raises:
            AlreadyExistsError: The server already tracks this item
            ExternalServiceError: Any other rejected request
        """
        response = await self.post(path, json=payload)

        if response.status_code in (200, 201):
            logger.info(f"[{self.SERVICE}] Added: {title}")
            return self.parse_json(response)

        message = _error_message(response)
        if any(marker in message.lower() for marker in ALREADY_EXISTS_MARKERS):
            logger.debug(f"[{self.SERVICE}] Already exists: {title}")
            raise AlreadyExistsError(self.SERVICE, message, response.status_code)

        logger.error(f"[{self.SERVICE}] Failed to add {title}: {response.status_code} {message}")
        raise ExternalServiceError(self.SERVICE, message, response.status_code)


def _error_message(response: httpx.Response) -> str:
    """Extract validation messages from an *arr error body."""
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"

    if isinstance(data, list):
        messages = [e.get("errorMessage", "") for e in data if isinstance(e, dict)]
        return "; ".join(m for m in messages if m) or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return data.get("message") or data.get("errorMessage") or f"HTTP {response.status_code}"
    return str(data)
