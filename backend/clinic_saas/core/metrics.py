"""Prometheus metrics for HTTP traffic and the billing core."""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
)
import os

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "clinic_saas_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Tenant Boundary Metrics
# ============================================
TENANT_RESOLUTION_TOTAL = Counter(
    "tenant_resolution_total",
    "Tenant resolution attempts by outcome",
    ["source", "outcome"],
    registry=REGISTRY,
)

RATE_LIMITED_REQUESTS_TOTAL = Counter(
    "rate_limited_requests_total",
    "Requests rejected by the per-tenant rate limiter",
    registry=REGISTRY,
)

RATE_LIMIT_STORE_ERRORS_TOTAL = Counter(
    "rate_limit_store_errors_total",
    "Rate limit store failures (requests admitted fail-open)",
    ["backend"],
    registry=REGISTRY,
)


# ============================================
# Billing Core Metrics
# ============================================
LEDGER_TRANSACTIONS_TOTAL = Counter(
    "ledger_transactions_total",
    "Ledger units of work by outcome (committed, rejected, failed)",
    ["outcome"],
    registry=REGISTRY,
)

BILLING_EVENTS_TOTAL = Counter(
    "billing_events_total",
    "Billing events appended by type and status",
    ["event_type", "status"],
    registry=REGISTRY,
)

PAYMENTS_TOTAL = Counter(
    "payments_total",
    "Payment status transitions",
    ["status"],
    registry=REGISTRY,
)

USAGE_LIMIT_EXCEEDED_TOTAL = Counter(
    "usage_limit_exceeded_total",
    "Usage limit overages flagged",
    ["metric_type"],
    registry=REGISTRY,
)

BILLING_SWEEP_DURATION_SECONDS = Histogram(
    "billing_sweep_duration_seconds",
    "Scheduled billing sweep duration in seconds",
    ["sweep"],
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
