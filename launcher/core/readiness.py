"""Bounded readiness probes for TCP and HTTP endpoints.

Both probes only answer "is something listening and answering?". Waits
between attempts are asyncio sleeps so the host event loop keeps running.
"""

import asyncio
import logging

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_MS = 1000


async def _tcp_connect(host: str, port: int, timeout: float) -> None:
    _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


async def wait_for_tcp(
    host: str,
    port: int,
    max_attempts: int = 30,
    interval_ms: int = 500,
    connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
) -> bool:
    """Retry a raw TCP connect until it succeeds or *max_attempts* are used up."""
    attempts = max(1, max_attempts)
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(interval_ms / 1000),
            retry=retry_if_exception_type((OSError, asyncio.TimeoutError)),
            reraise=True,
        ):
            with attempt:
                await _tcp_connect(host, port, connect_timeout_ms / 1000)
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug("TCP %s:%d not reachable after %d attempts: %s", host, port, attempts, e)
        return False
    return True


async def wait_for_http(
    url: str,
    max_attempts: int = 40,
    interval_ms: int = 500,
    per_attempt_timeout_ms: int = 2000,
) -> bool:
    """Issue GET requests until any HTTP response arrives.

    Error pages count as ready. Each attempt is capped at
    *per_attempt_timeout_ms* in total, so a server that accepts the
    connection but never answers cannot stall the probe.
    """
    attempts = max(1, max_attempts)
    per_attempt = per_attempt_timeout_ms / 1000

    async with httpx.AsyncClient(timeout=per_attempt, follow_redirects=False) as client:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_fixed(interval_ms / 1000),
                retry=retry_if_exception_type((httpx.TransportError, asyncio.TimeoutError)),
                reraise=True,
            ):
                with attempt:
                    response = await asyncio.wait_for(client.get(url), per_attempt)
                    logger.debug("HTTP %s answered with %d", url, response.status_code)
        except (httpx.TransportError, asyncio.TimeoutError) as e:
            logger.debug("HTTP %s not answering after %d attempts: %s", url, attempts, e)
            return False
    return True
