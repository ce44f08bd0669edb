from __future__ import annotations

"""Prometheus metrics for the reconciliation engine and its HTTP surface.

Adds an HTTP middleware that records request latency per method/path/status.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Gauge, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "canvaschat_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

RECONCILER_EVENTS = Counter(
    "canvaschat_reconciler_events_total",
    "Events applied to the identity reconciler by outcome",
    labelnames=("event", "outcome"),
)

STREAM_SESSIONS = Counter(
    "canvaschat_stream_sessions_total",
    "Stream sessions by terminal status",
    labelnames=("status",),
)

STREAM_DURATION = Histogram(
    "canvaschat_stream_duration_seconds",
    "Time from stream open to its terminal transition",
    buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

ACTIVE_SUBSCRIPTIONS = Gauge(
    "canvaschat_active_subscriptions",
    "Push-feed subscriptions currently established",
)


def observe_reconciler(event: str, outcome: str) -> None:
    try:
        RECONCILER_EVENTS.labels(event=event, outcome=outcome).inc()
    except Exception:
        # Metrics must never break event application
        pass


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /conversation/messages/{id}) to a coarse label."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 2:
        return "/" + "/".join(segs[1:3])
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except Exception:
            pass
        return response

    return middleware
