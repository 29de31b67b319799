"""Health check and metrics endpoints.

Health Status Levels:
    - healthy: Every active stream has a live worker and a playlist on disk
      (or no streams are active)
    - degraded: Some active streams are missing their playlist or worker
    - unhealthy: The output root is not a writable directory

Logging Strategy:
    DEBUG - Health check calls
    WARN  - Degraded status, specific stream problems
    ERROR - Unhealthy status

Usage:
    >>> GET /health
    {
        "status": "healthy",
        "streams": [{"id": "cam1", "pid": 4242, "manifest": true, "segments": 5}],
        "metrics": {"active": 1, "pending": 0, "maximum": 10, "errors": 0}
    }

    >>> GET /health/live
    {"status": "alive"}
"""
from __future__ import annotations

import logging
import os
from typing import Any, Literal

from fastapi import APIRouter, Depends, Response, status

from .. import metrics
from ..config.ffmpeg_defaults import MANIFEST_NAME
from ..services.container import get_supervisor
from ..services.readiness import observe_manifest
from ..services.supervisor import StreamSupervisor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

HealthStatus = Literal["healthy", "degraded", "unhealthy"]


def calculate_health_status(
    supervisor: StreamSupervisor
) -> tuple[HealthStatus, list[dict[str, Any]], list[str]]:
    """Inspect every active stream's worker and playlist.

    Returns:
        (overall_status, per-stream details, error messages)
    """
    errors: list[str] = []
    details: list[dict[str, Any]] = []

    output_root = supervisor.settings.output_root
    if not output_root.is_dir() or not os.access(output_root, os.W_OK):
        errors.append(f"Output directory not writable: {output_root}")
        return "unhealthy", details, errors

    for snapshot in supervisor.list_streams():
        record = supervisor.registry.lookup(snapshot.stream_id)
        alive = record is not None and record.worker.returncode is None
        observation = observe_manifest(
            supervisor.output_dir_for(snapshot.stream_id) / MANIFEST_NAME
        )

        details.append({
            "id": snapshot.stream_id,
            "pid": snapshot.pid,
            "manifest": observation.exists,
            "segments": observation.segment_count,
        })

        if not alive:
            errors.append(f"{snapshot.stream_id}: worker not running")
        elif not observation.exists:
            errors.append(f"{snapshot.stream_id}: no playlist on disk")

    return ("degraded" if errors else "healthy"), details, errors


# ============================================================================
# Health Check Endpoints
# ============================================================================

@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(
    response: Response,
    supervisor: StreamSupervisor = Depends(get_supervisor)
) -> dict[str, Any]:
    """Service health with per-stream worker and playlist checks.

    Answers 503 when unhealthy so load balancers can act on it.
    """
    logger.debug("Processing health check")
    overall, streams, errors = calculate_health_status(supervisor)
    metrics.update_health_status(overall)

    body: dict[str, Any] = {
        "status": overall,
        "streams": streams,
        "metrics": {
            "active": supervisor.active_count,
            "pending": supervisor.pending_count,
            "maximum": supervisor.max_streams,
            "errors": len(errors),
        },
    }
    if errors:
        body["errors"] = errors

    if overall == "unhealthy":
        logger.error(f"Health check: unhealthy - {errors[0]}")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif overall == "degraded":
        logger.warning(f"Health check: degraded - {len(errors)} problem(s)")
        for error in errors:
            logger.warning(f"  - {error}")

    return body


@router.get("/health/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    """Liveness probe; never touches the supervisor."""
    return {"status": "alive"}


@router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    body, status_code, headers = metrics.get_metrics()
    return Response(content=body, status_code=status_code, headers=headers)
