from __future__ import annotations

import time

import httpx


def check_endpoint(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Request `url` through the reverse proxy.

    Any HTTP answer from the upstream counts as reachable; nginx's own 502/504 mean
    the vhost exists but nothing listens behind it.
    Returns (reachable, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code in (502, 503, 504):
            return False, f"HTTP {resp.status_code} from proxy", latency_ms
        return True, f"HTTP {resp.status_code}", latency_ms
    except (httpx.ConnectError, httpx.ReadTimeout, httpx.ConnectTimeout):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms
