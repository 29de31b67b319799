"""Manifest-based readiness detection and health polling.

FFmpeg exposes no "ready" event, so the first appearance of the HLS
playlist on disk is the readiness signal.

State machine per launch attempt:
    WAITING → READY       manifest observed
    WAITING → TIMED_OUT   readiness timeout elapsed first
    WAITING → EXITED      worker died before writing a manifest

While a stream is active, HealthMonitor keeps polling the manifest and
reports missing or stalled playlists. It never stops a stream itself.

Logging Strategy:
    DEBUG - Poll ticks, manifest progress
    INFO  - Readiness reached
    WARN  - Timeouts, missing or stalled manifests
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Final

from .. import metrics

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

STALL_THRESHOLD_POLLS: Final[int] = 2
"""Consecutive polls without manifest change before warning."""


class ReadinessState(str, Enum):
    WAITING = "waiting"
    READY = "ready"
    TIMED_OUT = "timed_out"
    EXITED = "exited"


class ReadinessDetector:
    """Polls for a worker's manifest until ready, timed out or exited.

    Args:
        poll_interval: Seconds between filesystem checks
        timeout: Upper bound on the wait
        clock: Monotonic clock (injectable for tests)
        sleep: Async sleep (injectable for tests)
    """

    def __init__(
        self,
        poll_interval: float,
        timeout: float,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep
    ) -> None:
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

    async def wait_for_manifest(
        self,
        manifest_path: Path,
        is_alive: Callable[[], bool]
    ) -> ReadinessState:
        """Run one WAITING → terminal transition.

        Args:
            manifest_path: Playlist the worker is expected to write
            is_alive: Returns False once the worker has exited

        Returns:
            READY, TIMED_OUT or EXITED
        """
        started = self._clock()
        deadline = started + self.timeout
        state = ReadinessState.WAITING

        while state is ReadinessState.WAITING:
            if manifest_path.exists():
                state = ReadinessState.READY
            elif not is_alive():
                state = ReadinessState.EXITED
            elif self._clock() >= deadline:
                state = ReadinessState.TIMED_OUT
            else:
                remaining = deadline - self._clock()
                await self._sleep(max(0.0, min(self.poll_interval, remaining)))

        elapsed = self._clock() - started
        if state is ReadinessState.READY:
            metrics.readiness_seconds.observe(elapsed)
            logger.info(f"Manifest ready after {elapsed:.1f}s: {manifest_path}")
        else:
            logger.warning(f"Readiness ended in {state.value} after {elapsed:.1f}s: {manifest_path}")
        return state


# ============================================================================
# Health Polling
# ============================================================================

@dataclass
class ManifestObservation:
    exists: bool
    mtime: float | None = None
    size: int = 0
    segment_count: int = 0


def observe_manifest(manifest_path: Path) -> ManifestObservation:
    """Stat the manifest and count the segments beside it."""
    try:
        stat = manifest_path.stat()
    except FileNotFoundError:
        return ManifestObservation(exists=False)

    try:
        segments = sum(1 for _ in manifest_path.parent.glob("*.ts"))
    except OSError:
        segments = 0

    return ManifestObservation(
        exists=True,
        mtime=stat.st_mtime,
        size=stat.st_size,
        segment_count=segments,
    )


class HealthMonitor:
    """Standing health poll for one active stream.

    Calls on_progress whenever the manifest changed since the previous
    poll; the supervisor uses it to renew the hard timeout.
    """

    def __init__(
        self,
        stream_id: str,
        manifest_path: Path,
        interval: float,
        on_progress: Callable[[], None] | None = None,
        sleep: Sleep = asyncio.sleep
    ) -> None:
        self.stream_id = stream_id
        self.manifest_path = manifest_path
        self.interval = interval
        self.on_progress = on_progress
        self._sleep = sleep
        self._last_mtime: float | None = None
        self._stalled_polls = 0

    async def run(self) -> None:
        """Poll until cancelled."""
        try:
            while True:
                await self._sleep(self.interval)
                self.check()
        finally:
            metrics.clear_stream_metrics(self.stream_id)

    def check(self) -> ManifestObservation:
        observation = observe_manifest(self.manifest_path)

        if not observation.exists:
            logger.warning(f"HLS check [{self.stream_id}]: no m3u8 file found")
            return observation

        metrics.manifest_age_seconds.labels(stream_id=self.stream_id).set(
            max(0.0, time.time() - (observation.mtime or 0.0))
        )

        if observation.mtime != self._last_mtime:
            self._last_mtime = observation.mtime
            self._stalled_polls = 0
            logger.debug(
                f"HLS check [{self.stream_id}]: {observation.segment_count} segments, "
                f"m3u8 size: {observation.size}"
            )
            if self.on_progress is not None:
                self.on_progress()
        else:
            self._stalled_polls += 1
            if self._stalled_polls >= STALL_THRESHOLD_POLLS:
                logger.warning(
                    f"HLS check [{self.stream_id}]: manifest unchanged for "
                    f"{self._stalled_polls} polls"
                )

        return observation
