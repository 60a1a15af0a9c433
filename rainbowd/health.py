from __future__ import annotations

import time

import httpx

from .settings import settings


async def check_health(
    client: httpx.AsyncClient, url: str, timeout_s: float | None = None
) -> tuple[bool, str, float | None]:
    """Call a backend health endpoint once.

    Any 2xx response counts as healthy; the body is not inspected.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.monotonic()
    try:
        resp = await client.get(url, timeout=timeout_s or settings.probe_timeout_s)
        latency_ms = round((time.monotonic() - start) * 1000.0, 2)
        if not 200 <= resp.status_code < 300:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.monotonic() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.monotonic() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms
