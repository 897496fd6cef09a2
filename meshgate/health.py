from __future__ import annotations

import socket
import time

import httpx

from .models import ProbeResult


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000.0, 2)


def check_http(url: str, timeout_s: float = 2.0) -> ProbeResult:
    """GET a health URL; any 2xx/3xx counts as healthy.

    Backends here are third-party servers (CI, artifact repository, code
    scanner), so the payload is not inspected, except that an explicit
    {"status": "unhealthy"} JSON body is honoured.
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = _elapsed_ms(start)
        if resp.status_code >= 400:
            return ProbeResult(False, f"HTTP {resp.status_code}", latency_ms)
        if resp.headers.get("content-type", "").startswith("application/json"):
            try:
                data = resp.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and data.get("status") == "unhealthy":
                return ProbeResult(False, f"Unhealthy payload: {data!r}", latency_ms)
        return ProbeResult(True, "Healthy", latency_ms)
    except (httpx.ConnectError, httpx.TimeoutException):
        return ProbeResult(False, "No response", _elapsed_ms(start))
    except httpx.HTTPError as e:
        return ProbeResult(False, f"Error: {type(e).__name__}: {e}", _elapsed_ms(start))


def check_tcp(host: str, port: int, timeout_s: float = 2.0) -> ProbeResult:
    """Connect-only probe for services that do not speak HTTP (databases)."""
    start = time.time()
    try:
        with socket.create_connection((host, int(port)), timeout=timeout_s):
            pass
        return ProbeResult(True, "Accepting connections", _elapsed_ms(start))
    except OSError as e:
        return ProbeResult(False, f"Connect failed: {e}", _elapsed_ms(start))
