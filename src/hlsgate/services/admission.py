"""Admission control for new streams.

Two decisions:
- Capacity: refuse a start once the configured maximum is occupied.
- Pacing: stagger FFmpeg launches when other streams are already
  running or starting, so their probe/encode spikes don't coincide.

try_admit() is invoked by StreamRegistry.reserve() under the registry
lock, which makes check-then-reserve one atomic step.
"""
from __future__ import annotations

import logging

from .errors import CapacityExceededError

logger = logging.getLogger(__name__)


class AdmissionController:
    """Capacity and pacing policy.

    Attributes:
        max_streams: Maximum streams active or starting at once
        pacing_delay_seconds: Delay before launching when others are active
    """

    def __init__(self, max_streams: int, pacing_delay_seconds: float) -> None:
        self.max_streams = max_streams
        self.pacing_delay_seconds = pacing_delay_seconds

    def try_admit(self, active_count: int) -> None:
        """Admit a start or raise.

        Raises:
            CapacityExceededError: active_count already at the maximum
        """
        if active_count >= self.max_streams:
            logger.warning(f"Max streams reached: {active_count}/{self.max_streams}")
            raise CapacityExceededError(
                "Maximum concurrent streams limit reached",
                max_streams=self.max_streams,
            )
        logger.debug(f"Admitted: {active_count}/{self.max_streams} in use")

    def pacing_delay(self, active_count: int) -> float:
        """Seconds to wait before launching; zero for the first stream."""
        if active_count <= 0:
            return 0.0
        return self.pacing_delay_seconds
