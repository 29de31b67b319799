"""Sequential start of the configured camera catalogue.

Cameras are started one after another with a fixed delay between them;
a failed camera is logged and the sequence continues.

Logging Strategy:
    INFO  - Sequence start, per-camera success
    WARN  - Per-camera failures
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import StreamError

if TYPE_CHECKING:
    from ..config_io import CameraConfig
    from .supervisor import StreamSupervisor

logger = logging.getLogger(__name__)


@dataclass
class CameraStartResult:
    camera_id: str
    name: str
    success: bool
    hls_url: str | None = None
    error: str | None = None


async def start_configured_cameras(
    supervisor: StreamSupervisor,
    cameras: list[CameraConfig],
    delay: float
) -> list[CameraStartResult]:
    """Start each camera in order, waiting `delay` seconds between starts.

    Returns:
        One result per camera, in catalogue order
    """
    if not cameras:
        logger.info("No cameras configured")
        return []

    logger.info(f"Auto-loading {len(cameras)} camera(s): {', '.join(c.id for c in cameras)}")
    results = []

    for idx, camera in enumerate(cameras):
        if idx > 0 and delay > 0:
            logger.debug(f"Waiting {delay:g}s before starting next camera")
            await asyncio.sleep(delay)

        try:
            snapshot = await supervisor.start_stream(camera.id, camera.url)
        except StreamError as e:
            logger.warning(f"Failed to start {camera.name} ({camera.id}): {e.message}")
            results.append(CameraStartResult(camera.id, camera.name, False, error=e.message))
            continue

        logger.info(f"{camera.name} started successfully")
        results.append(CameraStartResult(camera.id, camera.name, True, hls_url=snapshot.output_url))

    started = sum(1 for r in results if r.success)
    logger.info(f"Auto-load finished: {started}/{len(cameras)} started")
    return results
