"""Trakt OAuth device-code authentication with a JSON token file."""

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

import httpx
from loguru import logger
from pydantic import BaseModel

from collectarr.core.exceptions import ExternalServiceError


class TraktTokens(BaseModel):
    """Trakt OAuth tokens."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    created_at: datetime

    @classmethod
    def from_response(cls, data: dict) -> "TraktTokens":
        now = datetime.now()
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=now + timedelta(seconds=data["expires_in"]),
            created_at=now,
        )

    def is_expired(self) -> bool:
        """Check if access token is expired (with 1 hour buffer)."""
        return datetime.now() >= self.expires_at - timedelta(hours=1)


class TraktAuth:
    """Obtain, persist and refresh Trakt access tokens."""

    OAUTH_URL = "https://api.trakt.tv/oauth"
    TOKEN_FILE = "trakt_tokens.json"

    def __init__(self, client_id: str, client_secret: str, data_dir: Path):
        """
        Initialize Trakt auth handler.

        Args:
            client_id: Trakt application client ID
            client_secret: Trakt application client secret
            data_dir: Directory holding the token file
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_path = data_dir / self.TOKEN_FILE
        self._tokens: Optional[TraktTokens] = None

    def load_tokens(self) -> Optional[TraktTokens]:
        """Load tokens from file; an unreadable file counts as no tokens."""
        if not self.token_path.exists():
            logger.debug("No Trakt token file found")
            return None

        try:
            self._tokens = TraktTokens.model_validate_json(self.token_path.read_text(encoding="utf-8"))
        except ValueError as e:
            logger.warning(f"Ignoring invalid Trakt token file {self.token_path}: {e}")
            return None

        logger.debug(f"Loaded Trakt tokens (expires: {self._tokens.expires_at})")
        return self._tokens

    def save_tokens(self, tokens: TraktTokens) -> None:
        self.token_path.parent.mkdir(parents=True, exist_ok=True)
        self.token_path.write_text(tokens.model_dump_json(indent=2), encoding="utf-8")
        self._tokens = tokens
        logger.info(f"Saved Trakt tokens (expires: {tokens.expires_at})")

    def delete_tokens(self) -> None:
        self.token_path.unlink(missing_ok=True)
        self._tokens = None

    async def get_valid_token(self) -> Optional[str]:
        """Get a usable access token, refreshing it when it is about to expire."""
        tokens = self._tokens or self.load_tokens()
        if not tokens:
            return None

        if tokens.is_expired():
            logger.info("Trakt access token expired, refreshing...")
            tokens = await self.refresh_tokens(tokens.refresh_token)

        return tokens.access_token if tokens else None

    async def refresh_tokens(self, refresh_token: str) -> Optional[TraktTokens]:
        """Exchange a refresh token; a rejected token is deleted."""
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(
                f"{self.OAUTH_URL}/token",
                json={
                    "refresh_token": refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "refresh_token",
                },
            )

        if response.status_code != 200:
            logger.error(f"Failed to refresh Trakt token: {response.status_code}")
            self.delete_tokens()
            return None

        tokens = TraktTokens.from_response(response.json())
        self.save_tokens(tokens)
        return tokens

    async def device_code_flow(
        self,
        on_code_received: Optional[Callable[[str, str, int], None]] = None,
    ) -> TraktTokens:
        """
        Authorize this application through the OAuth device code flow.

        Args:
            on_code_received: Called with (user_code, verification_url, expires_in)

        Returns:
            The new tokens (also saved to the token file)

        Raises:
            ExternalServiceError: Denied, expired or failed authorization
        """
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(f"{self.OAUTH_URL}/device/code", json={"client_id": self.client_id})
            if response.status_code != 200:
                raise ExternalServiceError("Trakt", f"Failed to get device code: {response.text}", response.status_code)

            data = response.json()
            interval = data["interval"]
            if on_code_received:
                on_code_received(data["user_code"], data["verification_url"], data["expires_in"])
            else:
                logger.info(f"Go to {data['verification_url']} and enter code {data['user_code']}")

            deadline = asyncio.get_running_loop().time() + data["expires_in"]
            while asyncio.get_running_loop().time() < deadline:
                await asyncio.sleep(interval)

                token_response = await client.post(
                    f"{self.OAUTH_URL}/device/token",
                    json={
                        "code": data["device_code"],
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                    },
                )

                # 400: authorization pending, 429: polling too fast
                if token_response.status_code == 400:
                    continue
                if token_response.status_code == 429:
                    interval += 1
                    continue
                if token_response.status_code == 200:
                    tokens = TraktTokens.from_response(token_response.json())
                    self.save_tokens(tokens)
                    logger.info("Trakt authentication successful")
                    return tokens

                # 404 invalid code, 409 already used, 410 expired, 418 denied
                raise ExternalServiceError("Trakt", "Device authorization failed", token_response.status_code)

        raise ExternalServiceError("Trakt", "Device authorization timed out")


