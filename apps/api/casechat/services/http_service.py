"""HTTP helpers with retry/backoff for provider integrations."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

# Statuses where the provider guarantees nothing was processed
SAFE_RETRY_STATUSES = {429, 503}


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(max_delay, base_delay * (2**attempt))
    if delay:
        delay += random.uniform(0, delay / 2)
    return delay


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
) -> httpx.Response:
    """
    Execute an HTTP request with exponential backoff.

    Only connection failures (nothing reached the provider) and the given
    statuses are retried; read timeouts propagate since the request may
    already have been processed.
    """
    statuses = SAFE_RETRY_STATUSES if retry_statuses is None else retry_statuses

    attempt = 0
    while True:
        try:
            response = await request_fn()
        except httpx.ConnectError:
            if attempt >= max_attempts - 1:
                raise
            logger.warning("HTTP connect failed, retrying (attempt %s)", attempt + 1)
            await asyncio.sleep(_backoff(attempt, base_delay, max_delay))
            attempt += 1
            continue

        if response.status_code in statuses and attempt < max_attempts - 1:
            logger.warning("HTTP request returned %s, retrying", response.status_code)
            await asyncio.sleep(_backoff(attempt, base_delay, max_delay))
            attempt += 1
            continue

        return response
