"""Polling fallback for observing a value until it stops changing."""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from loguru import logger

from collectarr.core.exceptions import CollectarrError

T = TypeVar("T")


async def poll_until_settled(
    fetch: Callable[[], Awaitable[T]],
    interval: float = 1.0,
    max_unchanged: int = 5,
    on_change: Optional[Callable[[T], None]] = None,
    is_done: Optional[Callable[[T], bool]] = None,
) -> Optional[T]:
    """
    Observe `fetch()` every `interval` seconds until it settles.

    Stops after `max_unchanged` consecutive observations equal to the
    previous one, or as soon as `is_done(value)` is true. A failed
    observation counts as unchanged.

    Args:
        fetch: Coroutine function returning the observed value
        interval: Seconds between observations
        max_unchanged: Consecutive unchanged observations before stopping
        on_change: Called with every new value
        is_done: Optional early-exit predicate

    Returns:
        Last successfully observed value
    """
    last: Optional[T] = None
    has_value = False
    unchanged = 0

    while unchanged < max_unchanged:
        try:
            value = await fetch()
        except (httpx.HTTPError, CollectarrError) as e:
            logger.debug(f"Poll failed: {e}")
            unchanged += 1
        else:
            if has_value and value == last:
                unchanged += 1
            else:
                unchanged = 0
                last, has_value = value, True
                if on_change:
                    on_change(value)

            if is_done and is_done(value):
                break

        if unchanged < max_unchanged:
            await asyncio.sleep(interval)

    return last
