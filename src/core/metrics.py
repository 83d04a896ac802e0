"""
Prometheus Metrics for Observability

Tracks pipeline stage performance, cartoonize API calls and sessions.
Exposes /metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

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

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pipeline_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Stage outcomes, including results discarded after a reset
stage_runs_total = Counter(
    "pipeline_stage_runs_total",
    "Total number of pipeline stage runs",
    labelnames=["stage", "outcome"]
)

# Cartoonize API Calls
stylize_api_calls_total = Counter(
    "stylize_api_calls_total",
    "Total number of cartoonize API calls",
    labelnames=["status", "http_status"]
)

# Intake
uploads_total = Counter(
    "uploads_total",
    "Total number of file selections",
    labelnames=["status", "converted"]
)

# Exports
exports_total = Counter(
    "exports_total",
    "Total number of artifact downloads",
    labelnames=["kind", "status"]
)

# Active Sessions
active_sessions_gauge = Gauge(
    "cartoonizer_active_sessions",
    "Number of sessions currently held in memory"
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "cartoonizer_app",
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


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("background_removal"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_stage_run(stage: str, outcome: str):
    """Record a stage outcome (success, failed, discarded)."""
    stage_runs_total.labels(stage=stage, outcome=outcome).inc()


def record_stylize_call(status: str, http_status: int = 0):
    """Record a cartoonize API call."""
    stylize_api_calls_total.labels(
        status=status,
        http_status=str(http_status)
    ).inc()


def record_upload(status: str, converted: bool = False):
    """Record a file selection."""
    uploads_total.labels(status=status, converted=str(converted).lower()).inc()


def record_export(kind: str, status: str):
    """Record an artifact download."""
    exports_total.labels(kind=kind, status=status).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
