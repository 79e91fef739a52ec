"""Outbound HTTP with a per-attempt timeout and bounded retry for transient failures."""

from __future__ import annotations

import asyncio
import random
from typing import Any

import httpx

from shopchat.errors import TransientServiceError
from shopchat.log import get_logger

logger = get_logger(__name__)

BASE_DELAY = 0.5
MAX_BACKOFF = 4.0
MAX_JITTER = 0.25


def backoff_delay(attempt: int, retry_after: str | None = None) -> float:
    """Seconds to wait before retry number ``attempt + 1``."""
    if retry_after:
        try:
            return min(5.0, max(0.5, float(retry_after)))
        except ValueError:
            pass
    return min(MAX_BACKOFF, BASE_DELAY * (2**attempt)) + random.uniform(0, MAX_JITTER)


def is_retryable(status: int) -> bool:
    return status == 429 or status >= 500


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    service: str,
    max_retries: int = 3,
    timeout: float = 30.0,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying on 5xx/429/transport errors with backoff and jitter.

    Success and 4xx responses (other than 429) are returned as-is; the caller
    decides what a 4xx means. When every attempt fails transiently a
    :class:`TransientServiceError` is raised.
    """
    last_error: str = ""
    last_status: int | None = None

    for attempt in range(max_retries + 1):
        try:
            response = await client.request(method, url, timeout=timeout, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            last_error = f"{type(e).__name__}: {e}"
            last_status = None
            retry_after = None
        else:
            if not is_retryable(response.status_code):
                return response
            last_error = f"HTTP {response.status_code}"
            last_status = response.status_code
            retry_after = response.headers.get("retry-after")

        if attempt < max_retries:
            delay = backoff_delay(attempt, retry_after)
            logger.warning(
                "http_retry",
                service=service,
                attempt=attempt + 1,
                delay=round(delay, 3),
                error=last_error,
            )
            await asyncio.sleep(delay)

    raise TransientServiceError(
        service, f"giving up after {max_retries + 1} attempts ({last_error})", status=last_status
    )
