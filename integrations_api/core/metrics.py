"""Prometheus metrics shared by the API and the workers."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.requests import Request
from starlette.routing import Match

UNMATCHED_ENDPOINT = "unmatched"

HTTP_REQUESTS_PENDING = Gauge(
    "http_requests_pending",
    "Total number of HTTP requests in progress",
    ["method", "endpoint"],
)

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
)

HTTP_REQUESTS_DURATION_SECONDS = Histogram(
    "http_requests_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "endpoint", "status"],
)

JOBS_CREATED_TOTAL = Counter(
    "scrape_jobs_created_total",
    "Scrape jobs accepted by the API",
    ["registry"],
)

JOB_DELIVERIES_TOTAL = Counter(
    "scrape_job_deliveries_total",
    "Job message deliveries handled by workers, by outcome",
    ["registry", "outcome"],
)


def endpoint_label(request: Request) -> str:
    """Route template such as ``/jobs/{job_id}`` for the request.

    Paths that match no route share one label so label cardinality stays bounded.
    """
    route = request.scope.get("route")
    if route is None:
        for candidate in request.app.router.routes:
            match, _ = candidate.matches(request.scope)
            if match == Match.FULL:
                route = candidate
                break
    return getattr(route, "path", None) or UNMATCHED_ENDPOINT


def render_latest() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
