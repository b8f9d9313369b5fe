from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger("uvicorn.error")

_CLIENTS: dict[str, httpx.AsyncClient] = {}
_LOCK: asyncio.Lock | None = None


async def get_async_client(name: str) -> httpx.AsyncClient:
    """Return the shared client for `name`, creating it on first use."""
    global _LOCK
    if _LOCK is None:
        _LOCK = asyncio.Lock()
    client = _CLIENTS.get(name)
    if client is not None and not client.is_closed:
        return client
    async with _LOCK:
        client = _CLIENTS.get(name)
        if client is None or client.is_closed:
            client = httpx.AsyncClient(timeout=None, follow_redirects=False)
            _CLIENTS[name] = client
        return client


async def aclose_all() -> None:
    global _LOCK
    _LOCK = None
    clients = list(_CLIENTS.values())
    _CLIENTS.clear()
    for client in clients:
        try:
            await client.aclose()
        except Exception:
            logger.debug("http client close failed", exc_info=True)


async def request_json_with_retries(
    *,
    client: httpx.AsyncClient,
    method: str,
    url: str,
    timeout_s: float,
    retries: int = 2,
    backoff_s: float = 0.5,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying only when it never reached the server.

    Read errors and dropped connections may arrive after the server acted on
    the request (a rotated refresh token cannot be sent twice), so they raise.

    HTTP error statuses are returned to the caller untouched; token endpoints
    need the status and body to build their own errors.
    """
    attempt = 0
    while True:
        try:
            return await client.request(method, url, timeout=timeout_s, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            if attempt >= retries:
                raise
            delay = backoff_s * (2**attempt)
            attempt += 1
            logger.warning("%s %s failed (%s); retry %d/%d in %.1fs", method, url, e, attempt, retries, delay)
            await asyncio.sleep(delay)
