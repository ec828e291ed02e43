from __future__ import annotations

import logging

import httpx

from .config import DEFAULT_PROXY_CHECK_URL
from .types import ProbeResult

LOGGER = logging.getLogger("SSSupervisor.Probe")


async def check_proxy_connection(
    proxy_url: str,
    *,
    url: str = DEFAULT_PROXY_CHECK_URL,
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProbeResult:
    """Fetch ``url`` through the outbound proxy and report whether it worked."""

    if transport is not None:
        client = httpx.AsyncClient(transport=transport, timeout=timeout)
    else:
        client = httpx.AsyncClient(proxy=proxy_url, timeout=timeout)

    try:
        async with client:
            response = await client.get(url)
    except httpx.HTTPError as exc:
        LOGGER.error("Proxy connection via %s failed: %s", proxy_url, exc)
        return ProbeResult(ok=False, detail=str(exc))

    LOGGER.info("Proxy check status via %s: %s", proxy_url, response.status_code)
    body = response.text
    if body:
        LOGGER.debug("Proxy check response: %s", body[:512])
    return ProbeResult(
        ok=response.is_success, status_code=response.status_code, detail=body[:512]
    )
