"""Prometheus metrics collection and registry"""

import time

from prometheus_client import (
    Counter, Histogram, Gauge, Info,
    REGISTRY, generate_latest, CONTENT_TYPE_LATEST
)

from forgejo_bridge.core.config import settings


metrics_registry = REGISTRY

service_info = Info(
    "forgejo_bridge_service",
    "Forgejo bridge service information",
    registry=metrics_registry
)

service_info.info({
    "version": settings.app_version,
    "environment": settings.environment,
    "service": "forgejo-bridge"
})

# ====================
# HTTP Metrics
# ====================

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint", "status"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=metrics_registry
)

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=metrics_registry
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently being processed",
    ["method", "endpoint"],
    registry=metrics_registry
)

# ====================
# Mirror Cache Metrics
# ====================

mirror_syncs_total = Counter(
    "mirror_syncs_total",
    "Upstream clone/fetch operations",
    ["kind", "status"],
    registry=metrics_registry
)

mirror_sync_duration_seconds = Histogram(
    "mirror_sync_duration_seconds",
    "Duration of upstream clone/fetch operations",
    ["kind"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
    registry=metrics_registry
)

mirror_sync_coalesced_total = Counter(
    "mirror_sync_coalesced_total",
    "Fetches skipped because a concurrent request already refreshed the mirror",
    registry=metrics_registry
)

mirrors_cached = Gauge(
    "mirrors_cached",
    "Number of mirrors currently on disk",
    registry=metrics_registry
)

mirror_evictions_total = Counter(
    "mirror_evictions_total",
    "Mirror deletions",
    ["reason", "status"],
    registry=metrics_registry
)

# ====================
# Git Backend Metrics
# ====================

git_backend_requests_total = Counter(
    "git_backend_requests_total",
    "git-http-backend invocations",
    ["operation", "outcome"],
    registry=metrics_registry
)

git_backend_duration_seconds = Histogram(
    "git_backend_duration_seconds",
    "Wall time of git-http-backend invocations",
    ["operation"],
    buckets=(0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 600.0),
    registry=metrics_registry
)

# ====================
# System Metrics
# ====================

health_check_status = Gauge(
    "health_check_status",
    "Health check status (1=healthy, 0=unhealthy)",
    ["check_type"],
    registry=metrics_registry
)


log_messages_total = Counter(
    "log_messages_total",
    "Total log messages by level",
    ["level", "logger"],
    registry=metrics_registry
)


class MetricsContext:
    """Observe the duration of a block into a histogram"""

    def __init__(self, histogram: Histogram, **labels):
        self.histogram = histogram
        self.labels = labels
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            duration = time.time() - self.start_time
            self.histogram.labels(**self.labels).observe(duration)


def get_metrics() -> bytes:
    """Generate metrics in Prometheus format"""
    return generate_latest(metrics_registry)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics"""
    return CONTENT_TYPE_LATEST
