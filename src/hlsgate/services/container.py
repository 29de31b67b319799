"""Service container for the supervisor singleton.

main.py creates the StreamSupervisor during lifespan startup and stores it
here; API routes receive it through Depends(get_supervisor). Every request
must see the same supervisor, since it owns the only stream registry.

Logging Strategy:
    ERROR - Supervisor requested before initialization
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..config_io import CameraConfig
    from .supervisor import StreamSupervisor

logger = logging.getLogger(__name__)

# ============================================================================
# Global Singleton Instance
# ============================================================================

supervisor: StreamSupervisor | None = None
"""Global StreamSupervisor initialized during app startup."""


# ============================================================================
# Dependency Injection
# ============================================================================

def get_supervisor() -> StreamSupervisor:
    """Get the global StreamSupervisor for dependency injection.

    Raises:
        RuntimeError: If called before app startup
    """
    if supervisor is None:
        logger.error("StreamSupervisor dependency requested before initialization")
        raise RuntimeError(
            "StreamSupervisor not initialized. "
            "Application startup may have failed."
        )
    return supervisor


cameras: list[CameraConfig] = []
"""Configured camera catalogue loaded during app startup."""


def get_cameras() -> list[CameraConfig]:
    return cameras
