"""
Prometheus Metrics for Observability

Tracks stage latency, tile throughput, upscaler calls and HTTP traffic.
Exposes /api/v1/metrics endpoint for Prometheus scraping.
"""

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Conversion Stage Latency
stage_latency_seconds = Histogram(
    "tilescale_stage_latency_seconds",
    "Time spent in each conversion stage",
    labelnames=["stage", "status"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0]
)

# Tiles
tiles_processed_total = Counter(
    "tilescale_tiles_processed_total",
    "Total number of tiles sent through the upscaler",
    labelnames=["status"]
)

# Upscaler Calls
upscaler_calls_total = Counter(
    "tilescale_upscaler_calls_total",
    "Total number of upscaler backend calls",
    labelnames=["backend", "status"]
)

# Conversions
conversions_total = Counter(
    "tilescale_conversions_total",
    "Total number of conversions finished",
    labelnames=["status", "failure_stage"]
)

active_conversions_gauge = Gauge(
    "tilescale_active_conversions",
    "Number of currently running conversions"
)

# API Request Metrics
http_requests_total = Counter(
    "tilescale_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "tilescale_http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "tilescale_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


def record_stage_latency(stage: str, status: str, duration_seconds: float):
    """Record how long a conversion stage took to reach a terminal state."""
    stage_latency_seconds.labels(stage=stage, status=status).observe(duration_seconds)


def record_tile(status: str):
    """Record one tile reaching a terminal state."""
    tiles_processed_total.labels(status=status).inc()


def record_upscaler_call(backend: str, status: str):
    """Record an upscaler backend call."""
    upscaler_calls_total.labels(backend=backend, status=status).inc()


def record_conversion_started():
    """Record a conversion entering the running state."""
    active_conversions_gauge.inc()


def record_conversion_finished(status: str, failure_stage: str = "none"):
    """Record conversion completion."""
    conversions_total.labels(status=status, failure_stage=failure_stage).inc()
    active_conversions_gauge.dec()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
