"""
HTTP request with per-attempt timeout and exponential backoff.

Retry policy (shared by commands, state fetches and public polling):
- 2xx / 3xx / 4xx: returned as-is on the first attempt (4xx is the caller's problem)
- 5xx, timeouts, transport errors: retried with `base_delay * 2**i` between attempts
- Retries exhausted: the last 5xx response is returned, or TransientCommandError is raised
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from escalada_client.errors import TransientCommandError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    json: Any = None,
    headers: Optional[Dict[str, str]] = None,
    retries: int = 3,
    timeout: float = 5.0,
    base_delay: float = 1.0,
    sleep: Sleep = asyncio.sleep,
    command_type: str = "REQUEST",
) -> httpx.Response:
    retries = max(1, retries)
    last_error: Exception | None = None
    last_response: httpx.Response | None = None

    for i in range(retries):
        try:
            response = await asyncio.wait_for(
                client.request(method, url, json=json, headers=headers),
                timeout=timeout,
            )
        except (httpx.TransportError, asyncio.TimeoutError) as exc:
            last_error = exc
            last_response = None
            logger.warning(
                "%s %s failed (attempt %s/%s): %s",
                method,
                url,
                i + 1,
                retries,
                exc.__class__.__name__,
            )
        else:
            if response.status_code < 500:
                return response
            last_error = None
            last_response = response
            logger.warning(
                "%s %s returned %s (attempt %s/%s)",
                method,
                url,
                response.status_code,
                i + 1,
                retries,
            )

        if i < retries - 1:
            delay = base_delay * (2 ** i)
            logger.info("Retrying %s %s in %.1fs", method, url, delay)
            await sleep(delay)

    if last_response is not None:
        return last_response
    raise TransientCommandError(
        command_type,
        detail=f"{last_error.__class__.__name__}: {last_error}" if last_error else "request failed",
    ) from last_error


def response_detail(response: httpx.Response) -> str | None:
    """The API's `detail` field when present, otherwise the raw body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict) and body.get("detail") is not None:
        return str(body["detail"])
    return response.text or None
