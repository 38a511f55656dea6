from __future__ import annotations

import time
from dataclasses import dataclass

import httpx


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    status_code: int | None
    message: str
    latency_ms: float | None


def parse_matcher(matcher: str) -> frozenset[int]:
    """Parse an ALB-style success matcher: "200", "200,204" or "200-299"."""
    codes: set[int] = set()
    for part in matcher.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, hi = (int(x) for x in part.split("-", 1))
            if lo > hi:
                raise ValueError(f"Invalid matcher range: {part!r}")
            codes.update(range(lo, hi + 1))
        else:
            codes.add(int(part))
    if not codes or any(c < 200 or c > 499 for c in codes):
        raise ValueError(f"Matcher codes must be within 200-499: {matcher!r}")
    return frozenset(codes)


def check_health(
    url: str,
    timeout_s: float = 2.0,
    success_codes: frozenset[int] = frozenset({200}),
    client: httpx.Client | None = None,
) -> ProbeResult:
    """Probe a health endpoint the way the load balancer does.

    Only the status code counts; no body is required.
    """
    start = time.time()
    try:
        if client is not None:
            resp = client.get(url, timeout=timeout_s, follow_redirects=False)
        else:
            with httpx.Client(timeout=timeout_s, follow_redirects=False) as c:
                resp = c.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code not in success_codes:
            return ProbeResult(False, resp.status_code, f"HTTP {resp.status_code}", latency_ms)
        if latency_ms > timeout_s * 1000.0:
            return ProbeResult(False, resp.status_code, "Request timed out", latency_ms)
        return ProbeResult(True, resp.status_code, "Healthy", latency_ms)
    except httpx.TimeoutException:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return ProbeResult(False, None, "Request timed out", latency_ms)
    except httpx.ConnectError:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return ProbeResult(False, None, "No response", latency_ms)
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return ProbeResult(False, None, f"Error: {type(e).__name__}: {e}", latency_ms)
