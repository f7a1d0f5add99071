"""
Retry with exponential backoff for provider calls
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tradingjournal.config.analysis_config import RETRY_CONFIG
from tradingjournal.exceptions import ProviderRateLimitError, ProviderTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``operation()`` until it succeeds or the attempt budget runs out.

    Only rate-limit and transient provider errors are retried. A rate-limit
    ``retry_after`` hint replaces the computed delay; otherwise the delay
    starts at ``base_delay`` and doubles. The last error is re-raised.
    """
    attempts = max_attempts if max_attempts is not None else RETRY_CONFIG["max_attempts"]
    delay = base_delay if base_delay is not None else RETRY_CONFIG["base_delay_seconds"]
    attempt = 1
    while True:
        try:
            return await operation()
        except ProviderTransientError as e:
            if attempt >= attempts:
                raise
            wait = delay
            if isinstance(e, ProviderRateLimitError) and e.retry_after is not None:
                wait = e.retry_after
            logger.warning("Provider call failed (attempt %d/%d), retrying in %.1fs: %s",
                           attempt, attempts, wait, e)
            await sleep(wait)
            delay *= 2
            attempt += 1
