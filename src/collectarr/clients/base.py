"""Base HTTP client shared by all API clients."""

import asyncio
import random
from typing import Any, Optional

import httpx
from loguru import logger

from collectarr.core.exceptions import ExternalServiceError

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class BaseClient:
    """Async HTTP client bound to one base URL."""

    SERVICE = "HTTP"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 30.0,
    ):
        """
        Initialize client.

        Args:
            base_url: Service base URL
            api_key: API key (kept for subclasses that send it as a param)
            headers: Default headers for every request
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json", **(headers or {})},
            timeout=timeout,
            follow_redirects=True,
        )

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self._client.get(path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self._client.post(path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self._client.put(path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self._client.delete(path, **kwargs)

    async def post_binary(self, path: str, content: bytes, content_type: str) -> httpx.Response:
        return await self._client.post(path, content=content, headers={"Content-Type": content_type})

    def parse_json(self, response: httpx.Response, expected: Optional[type] = None) -> Any:
        """
        Decode a JSON body.

        Args:
            response: Successful response
            expected: Required top-level type (dict or list)

        Raises:
            ExternalServiceError: Body is not JSON (login page, proxy error) or has the wrong shape
        """
        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError(
                self.SERVICE, f"Invalid JSON response from {self.base_url}: {e}", response.status_code
            ) from e

        if expected is not None and not isinstance(data, expected):
            raise ExternalServiceError(
                self.SERVICE,
                f"Unexpected response from {self.base_url}: {type(data).__name__} instead of {expected.__name__}",
                response.status_code,
            )
        return data

    async def get_with_retry(
        self,
        path: str,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        GET with exponential backoff on transport errors and retryable status codes.

        The final response is returned as-is (callers still check its status);
        the final transport error is re-raised.
        """
        attempt = 0
        while True:
            try:
                response = await self.get(path, **kwargs)
                if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= max_retries:
                    return response
                reason = f"HTTP {response.status_code}"
            except httpx.TransportError as e:
                if attempt >= max_retries:
                    raise
                reason = type(e).__name__

            delay = min(initial_delay * (2**attempt), max_delay)
            delay += delay * 0.1 * (random.random() * 2 - 1)
            attempt += 1
            logger.debug(f"Retrying {self.base_url}{path} in {delay:.1f}s ({reason}, attempt {attempt}/{max_retries})")
            await asyncio.sleep(delay)

    async def close(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()

    async def __aenter__(self) -> "BaseClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
