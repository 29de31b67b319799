"""Prometheus metrics for observability.

Provides metrics for:
- Stream supervision (starts, stops, active count, worker exits)
- Readiness latency
- Manifest freshness per stream
- Service health

Logging Strategy:
    ERROR - Metric generation failures
"""
from __future__ import annotations

import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from . import __version__

logger = logging.getLogger(__name__)

# ============================================================================
# Application Info
# ============================================================================

app_info = Info("hlsgate_app", "Application information")
app_info.info({
    "version": __version__,
    "name": "HLSGate",
    "description": "RTSP to HLS stream supervisor"
})

# ============================================================================
# Stream Supervision Metrics
# ============================================================================

streams_active = Gauge("hlsgate_streams_active", "Streams with a live worker")

stream_starts_total = Counter(
    "hlsgate_stream_starts_total",
    "Stream start attempts",
    ["result"]  # success or an ErrorKind value
)

stream_stops_total = Counter(
    "hlsgate_stream_stops_total",
    "Stream teardowns",
    ["reason"]  # request, timeout, exited, shutdown
)

worker_exit_codes_total = Counter(
    "hlsgate_worker_exit_codes_total",
    "Worker exits by return code",
    ["code"]
)

readiness_seconds = Histogram(
    "hlsgate_readiness_seconds",
    "Time from spawn until the first manifest appeared",
    buckets=(0.5, 1.0, 2.0, 3.0, 5.0, 7.5, 10.0, 15.0, 20.0, 30.0, 60.0)
)

manifest_age_seconds = Gauge(
    "hlsgate_manifest_age_seconds",
    "Seconds since the stream's manifest was last written",
    ["stream_id"]
)

# ============================================================================
# System Health Metrics
# ============================================================================

health_status = Gauge("hlsgate_health_status", "Health status (1=healthy, 0.5=degraded, 0=unhealthy)")

# ============================================================================
# Metrics Export
# ============================================================================

def get_metrics() -> tuple[bytes, int, dict[str, str]]:
    """Generate Prometheus metrics in text format.

    Returns:
        (body, status_code, headers) for FastAPI Response
    """
    try:
        body = generate_latest(REGISTRY)
        return (body, 200, {"Content-Type": CONTENT_TYPE_LATEST})
    except Exception as e:
        logger.error(f"Metrics generation failed: {e}", exc_info=True)
        return (b"# Error\n", 500, {"Content-Type": "text/plain"})


# ============================================================================
# Helper Functions
# ============================================================================

def clear_stream_metrics(stream_id: str) -> None:
    """Drop per-stream label sets once a stream is gone."""
    try:
        manifest_age_seconds.remove(stream_id)
    except KeyError:
        pass


def update_health_status(status: str) -> None:
    """Update health status gauge.

    Args:
        status: "healthy" (1.0), "degraded" (0.5), "unhealthy" (0.0)
    """
    status_map = {"healthy": 1.0, "degraded": 0.5, "unhealthy": 0.0}
    health_status.set(status_map.get(status, 0.0))
