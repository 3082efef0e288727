"""Discord webhook client for notifications."""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

import httpx
from loguru import logger

from collectarr.models.sync import SyncStatus

if TYPE_CHECKING:
    from collectarr.models.sync import SyncLog

STATUS_COLORS = {
    SyncStatus.SUCCESS: 3066993,  # Green
    SyncStatus.PARTIAL: 15105570,  # Orange
    SyncStatus.FAILED: 15158332,  # Red
}


class DiscordWebhook:
    """Client for sending Discord webhook notifications."""

    def __init__(self, default_url: Optional[str] = None, error_url: Optional[str] = None):
        """
        Initialize Discord webhook client.

        Args:
            default_url: Webhook URL for sync reports
            error_url: Webhook URL for errors (falls back to default_url)
        """
        self.default_url = default_url
        self.error_url = error_url or default_url

    @property
    def enabled(self) -> bool:
        return bool(self.default_url or self.error_url)

    async def _send(
        self,
        url: Optional[str],
        content: Optional[str] = None,
        embeds: Optional[list[dict[str, Any]]] = None,
        username: str = "Collectarr",
    ) -> bool:
        """Send webhook message."""
        if not url:
            logger.debug("No webhook URL configured, skipping notification")
            return False

        payload: dict[str, Any] = {"username": username}

        if content:
            payload["content"] = content
        if embeds:
            payload["embeds"] = embeds

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Discord notification: {e}")
            return False

        if response.status_code in (200, 204):
            logger.debug("Discord notification sent successfully")
            return True

        logger.warning(f"Discord webhook returned {response.status_code}")
        return False

    # =========================================================================
    # Event Notifications
    # =========================================================================

    async def send_sync_report(self, logs: list["SyncLog"]) -> bool:
        """Send one embed per sync log of a collection sync."""
        if not logs:
            return False

        embeds = []
        for log in logs[:10]:  # Discord allows 10 embeds per message
            embed: dict[str, Any] = {
                "title": f"{log.collection_name or log.collection_id} → {log.emby_server_name or log.emby_server_id}",
                "color": STATUS_COLORS[log.status],
                "fields": [
                    {"name": "Status", "value": log.status.value, "inline": True},
                    {"name": "Matched", "value": f"{log.items_matched}/{log.items_total}", "inline": True},
                ],
                "timestamp": log.completed_at.astimezone(timezone.utc).isoformat(),
            }
            if log.error_message:
                embed["description"] = log.error_message[:2000]
            embeds.append(embed)

        return await self._send(self.default_url, embeds=embeds)

    async def send_refresh_report(
        self,
        collection_name: str,
        items_total: int,
        items_added: int,
        items_removed: int,
    ) -> bool:
        """Send the outcome of a successful refresh job."""
        embed = {
            "title": f"Refreshed: {collection_name}",
            "color": STATUS_COLORS[SyncStatus.SUCCESS],
            "fields": [
                {"name": "Items", "value": str(items_total), "inline": True},
                {"name": "Added", "value": str(items_added), "inline": True},
                {"name": "Removed", "value": str(items_removed), "inline": True},
            ],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return await self._send(self.default_url, embeds=[embed])

    async def send_error(
        self,
        title: str,
        message: str,
        traceback: Optional[str] = None,
    ) -> bool:
        """Send error notification."""
        if not self.error_url:
            return False

        embed: dict[str, Any] = {
            "title": f"Error: {title}",
            "description": message[:2000],  # Discord limit
            "color": STATUS_COLORS[SyncStatus.FAILED],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        if traceback:
            embed["fields"] = [
                {
                    "name": "Traceback",
                    "value": f"```\n{traceback[:1000]}\n```",
                    "inline": False,
                }
            ]

        return await self._send(self.error_url, embeds=[embed])
