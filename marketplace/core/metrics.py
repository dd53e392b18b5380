"""Prometheus metrics for course-marketplace.

One inventory of everything the service measures.  Other modules import a
metric and increment or observe it at the point of action.

Domain counters are labelled by outcome rather than by user or course id,
so their cardinality stays bounded.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    # Checkout creation is a provider round trip, so the upper buckets
    # matter more here than for a pure CRUD service.
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Application-specific metrics
# ---------------------------------------------------------------------------

CACHE_OPERATIONS = Counter(
    "cache_operations_total",
    "Cache get operations by result",
    ["operation"],  # "hit" or "miss"
)

ENROLLMENTS_CREATED = Counter(
    "enrollments_created_total",
    "Enrollment records written, by payment method and initial status",
    ["payment_method", "status"],  # status: "pending" or "completed"
)

ENROLLMENT_VERIFICATIONS = Counter(
    "enrollment_verifications_total",
    "Checkout verification attempts by outcome",
    ["result"],  # "completed", "already_completed", "not_paid", "failed"
)

GATEWAY_ERRORS = Counter(
    "payment_gateway_errors_total",
    "Payment provider failures by operation and kind",
    ["operation", "kind"],  # kind: "timeout", "unavailable", "rejected"
)
