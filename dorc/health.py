from __future__ import annotations

import time
from dataclasses import dataclass

import httpx


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    message: str
    latency_ms: float | None


class HealthProber:
    """Call workload health endpoints over a shared HTTP client.

    A healthy endpoint answers 200 with JSON {"status": "healthy"}.
    """

    def __init__(self, transport: httpx.BaseTransport | None = None):
        self._client = httpx.Client(transport=transport, follow_redirects=False)

    def close(self) -> None:
        self._client.close()

    def __call__(self, url: str, timeout_s: float = 2.0) -> ProbeResult:
        start = time.monotonic()

        def elapsed() -> float:
            return round((time.monotonic() - start) * 1000.0, 2)

        try:
            resp = self._client.get(url, timeout=timeout_s)
        except httpx.TimeoutException:
            return ProbeResult(False, "Timed out", elapsed())
        except httpx.TransportError as e:
            return ProbeResult(False, f"No response: {type(e).__name__}", elapsed())

        latency_ms = elapsed()
        if resp.status_code != 200:
            return ProbeResult(False, f"HTTP {resp.status_code}", latency_ms)
        try:
            data = resp.json()
        except ValueError:
            return ProbeResult(False, "Invalid JSON", latency_ms)
        if isinstance(data, dict) and data.get("status") == "healthy":
            return ProbeResult(True, "Healthy", latency_ms)
        return ProbeResult(False, f"Unhealthy payload: {data!r}", latency_ms)
