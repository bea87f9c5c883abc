"""Prometheus metric inventory for the progress service.

Every metric the service exports is declared here; the modules that own
the behaviour import the one they need and increment it at the point of
action.  Scraped from GET /metrics.

Counters only go up (events handled, conflicts seen); gauges go up and
down (in-flight requests); histograms bucket observations so Prometheus
can derive percentiles with histogram_quantile().
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, route, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Progress engine metrics
# ---------------------------------------------------------------------------

PROGRESS_EVENTS = Counter(
    "progress_events_total",
    "Engagement events handled, by event type and outcome",
    # outcome: applied | noop | rejected | conflict
    ["event", "outcome"],
)

CAS_CONFLICTS = Counter(
    "progress_cas_conflicts_total",
    "Compare-and-swap version conflicts, by record kind",
    ["record"],  # "chapter_progress" or "enrollment"
)

CAS_ATTEMPTS = Histogram(
    "progress_cas_attempts",
    "Attempts needed to commit one chapter progress write",
    buckets=[1, 2, 3, 4, 5, 8, 13],
)

STATUS_TRANSITIONS = Counter(
    "enrollment_status_transitions_total",
    "Enrollment lifecycle transitions",
    ["from_status", "to_status"],
)
