"""Stream lifecycle supervision.

Owns every FFmpeg worker from spawn to teardown and keeps the registry,
the timers and the on-disk output consistent with each other.

Lifecycle per start request:
    VALIDATING → ADMITTED → LAUNCHING → AWAITING_READINESS → ACTIVE
    → STOPPING → TERMINATED

Only ACTIVE streams have a registry record. Failed starts never leave a
record or a running worker behind.

Teardown triggers:
    - stop_stream() (reason "request")
    - hard timeout (reason "timeout")
    - worker exit (reason "exited")
    - shutdown_all() / close() (reason "shutdown")

Whichever trigger wins the atomic registry removal performs the teardown;
the others observe nothing to do.

Logging Strategy:
    DEBUG - Pacing, timer arming, cleanup scheduling
    INFO  - Stream lifecycle (start, ready, stop, cleanup)
    WARN  - Hard timeouts, unexpected worker exits, forced kills
    ERROR - Launch failures, cleanup failures
"""
from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Final

from .. import metrics
from ..config.ffmpeg_defaults import MANIFEST_NAME
from ..utils.strings import mask_rtsp_credentials, sanitize_argument
from ..utils.validation import validate_source_url, validate_stream_id
from .admission import AdmissionController
from .errors import (
    InputRejectedError,
    LaunchFailureError,
    ReadinessTimeoutError,
    StreamError,
    StreamNotFoundError,
)
from .launcher import WorkerHandle, WorkerLauncher
from .readiness import HealthMonitor, ReadinessDetector, ReadinessState
from .registry import StreamRecord, StreamRegistry, StreamSnapshot

if TYPE_CHECKING:
    from ..config_io import Settings

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

KILL_WAIT_TIMEOUT: Final[float] = 5.0
"""Upper bound on reaping a worker after SIGKILL."""


class StreamSupervisor:
    """Starts, tracks and terminates HLS workers.

    Attributes:
        settings: Resolved service configuration
        launcher: Builds and spawns workers
        registry: Active streams and in-flight reservations
        admission: Capacity and pacing policy
        detector: Manifest readiness detector
        started_at: Supervisor creation time (UTC)
    """

    def __init__(
        self,
        settings: Settings,
        launcher: WorkerLauncher | None = None,
        registry: StreamRegistry | None = None,
        detector: ReadinessDetector | None = None
    ) -> None:
        self.settings = settings
        self.launcher = launcher or WorkerLauncher(settings.ffmpeg_binary)
        self.registry = registry or StreamRegistry()
        self.admission = AdmissionController(
            settings.max_concurrent_streams,
            settings.start_pacing_delay,
        )
        self.detector = detector or ReadinessDetector(
            settings.readiness_poll_interval,
            settings.readiness_timeout,
        )
        self.started_at = datetime.now(timezone.utc)

        # stream_id -> (token, worker) while awaiting readiness
        self._launching: dict[str, tuple[str, WorkerHandle]] = {}
        # tokens of starts whose worker the hard timeout killed during readiness
        self._expired_launches: set[str] = set()
        # stream_id -> (timer, output_dir) for scheduled directory deletions
        self._pending_cleanups: dict[str, tuple[asyncio.TimerHandle, Path]] = {}
        self._tasks: set[asyncio.Task] = set()

        logger.info(
            f"StreamSupervisor initialized: max_streams={settings.max_concurrent_streams}, "
            f"output_root={settings.output_root}"
        )

    # ========================================================================
    # Queries
    # ========================================================================

    @property
    def active_count(self) -> int:
        return self.registry.size

    @property
    def pending_count(self) -> int:
        return self.registry.pending

    @property
    def max_streams(self) -> int:
        return self.admission.max_streams

    def output_dir_for(self, stream_id: str) -> Path:
        return self.settings.output_root / stream_id

    def output_url_for(self, stream_id: str) -> str:
        return f"{self.settings.output_url_prefix.rstrip('/')}/{stream_id}/{MANIFEST_NAME}"

    def list_streams(self) -> list[StreamSnapshot]:
        """Snapshots of every active stream, credentials redacted."""
        return self.registry.snapshots()

    def get_status(self, stream_id: str) -> StreamSnapshot:
        """Snapshot of one active stream.

        Raises:
            StreamNotFoundError: Stream is not active
        """
        snapshot = self.registry.get(stream_id)
        if snapshot is None:
            raise StreamNotFoundError("Stream not found", stream_id)
        return snapshot

    # ========================================================================
    # Start
    # ========================================================================

    async def start_stream(self, stream_id: str, source_url: str) -> StreamSnapshot:
        """Start a stream and wait until its manifest exists.

        Args:
            stream_id: Identifier, also the output directory name
            source_url: rtsp:// source

        Returns:
            Snapshot of the now-active stream

        Raises:
            InputRejectedError: Invalid identifier or URL
            AlreadyActiveError: Identifier active or starting
            CapacityExceededError: Maximum concurrent streams reached
            ReadinessTimeoutError: No manifest within the readiness timeout
            LaunchFailureError: Spawn failed or worker exited early
        """
        try:
            snapshot = await self._start(stream_id, source_url)
        except StreamError as e:
            metrics.stream_starts_total.labels(result=e.kind.value.lower()).inc()
            raise
        metrics.stream_starts_total.labels(result="success").inc()
        return snapshot

    def _validate_start(self, stream_id: str, source_url: str) -> None:
        ok, reason = validate_stream_id(stream_id)
        if not ok:
            logger.warning(f"Rejected stream ID {stream_id!r}: {reason}")
            raise InputRejectedError(reason or "Invalid stream ID", field="streamId")

        ok, reason = validate_source_url(source_url)
        if not ok:
            logger.warning(f"[{stream_id}] Rejected source URL: {reason}")
            raise InputRejectedError(reason or "Invalid RTSP URL", stream_id, field="rtspUrl")

    async def _start(self, stream_id: str, source_url: str) -> StreamSnapshot:
        self._validate_start(stream_id, source_url)

        prior = await self.registry.reserve(stream_id, self.admission.try_admit)

        token = uuid.uuid4().hex
        redacted = mask_rtsp_credentials(source_url)
        output_dir = self.output_dir_for(stream_id)
        worker: WorkerHandle | None = None
        hard_timeout: asyncio.TimerHandle | None = None
        inserted = False

        try:
            # A late deletion from a previous incarnation must not hit our output
            self._flush_cleanup(stream_id)

            delay = self.admission.pacing_delay(prior)
            if delay > 0:
                logger.info(f"[{stream_id}] Waiting {delay:.1f}s before starting ({prior} other stream(s))")
                await asyncio.sleep(delay)

            if self.registry.closed:
                raise LaunchFailureError("Service is shutting down", stream_id)

            # A playlist left by an earlier run would pass for readiness
            self._clear_stale_output(stream_id, output_dir)

            safe_url = sanitize_argument(source_url)
            concurrent = max(0, self.registry.occupancy - 1)
            argv = self.launcher.build_invocation(safe_url, output_dir, concurrent)

            logger.info(f"Starting FFmpeg: {stream_id} ({redacted})")
            worker = await self.launcher.launch(stream_id, argv, output_dir)
            hard_timeout = self._arm_hard_timeout(stream_id, token)

            self._launching[stream_id] = (token, worker)
            try:
                state = await self.detector.wait_for_manifest(
                    output_dir / MANIFEST_NAME,
                    lambda: worker.returncode is None,
                )
            finally:
                self._launching.pop(stream_id, None)

            if state is not ReadinessState.READY:
                code = await self._reap(stream_id, worker)
                if state is ReadinessState.TIMED_OUT:
                    raise ReadinessTimeoutError(
                        f"Stream did not become ready within {self.detector.timeout:g}s",
                        stream_id,
                        timeout=self.detector.timeout,
                    )
                if token in self._expired_launches:
                    raise ReadinessTimeoutError(
                        f"Stream did not become ready within the hard timeout "
                        f"({self.settings.hard_timeout:g}s)",
                        stream_id,
                        timeout=self.settings.hard_timeout,
                    )
                raise LaunchFailureError(
                    f"FFmpeg exited before producing a playlist (code {code})",
                    stream_id,
                    exit_code=code,
                )

            record = StreamRecord(
                stream_id=stream_id,
                source_url=safe_url,
                redacted_url=redacted,
                worker=worker,
                start_time=datetime.now(timezone.utc),
                output_dir=output_dir,
                output_url=self.output_url_for(stream_id),
                token=token,
                hard_timeout=hard_timeout,
            )
            await self.registry.insert(record)
            inserted = True

        finally:
            self._expired_launches.discard(token)
            if not inserted:
                await self.registry.release(stream_id)
                if hard_timeout is not None:
                    hard_timeout.cancel()
                if worker is not None:
                    if worker.returncode is None:
                        worker.kill()
                    self._schedule_cleanup(stream_id, output_dir)

        record.exit_watcher = self._spawn(
            self._watch_exit(record),
            name=f"exit-watch:{stream_id}",
        )
        monitor = HealthMonitor(
            stream_id,
            output_dir / MANIFEST_NAME,
            self.settings.health_poll_interval,
            on_progress=self._progress_callback(stream_id, token),
        )
        record.health_task = asyncio.create_task(monitor.run(), name=f"health:{stream_id}")

        metrics.streams_active.set(self.registry.size)
        logger.info(f"Stream started: {stream_id} (PID={worker.pid}, {record.output_url})")
        return record.snapshot()

    async def _reap(self, stream_id: str, worker: WorkerHandle) -> int | None:
        """Kill a worker that never became ready and collect its exit code."""
        if worker.returncode is None:
            logger.warning(f"[{stream_id}] Killing worker that never became ready")
            worker.kill()
        try:
            return await asyncio.wait_for(worker.wait(), timeout=KILL_WAIT_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error(f"[{stream_id}] Worker did not exit after SIGKILL")
            return None

    # ========================================================================
    # Stop
    # ========================================================================

    async def stop_stream(self, stream_id: str) -> None:
        """Stop an active stream and schedule its output for deletion.

        Raises:
            InputRejectedError: Invalid identifier
            StreamNotFoundError: Stream is not active
        """
        ok, reason = validate_stream_id(stream_id)
        if not ok:
            raise InputRejectedError(reason or "Invalid stream ID", field="streamId")

        record = await self.registry.remove(stream_id)
        if record is None:
            logger.debug(f"Not running: {stream_id}")
            raise StreamNotFoundError("Stream not found", stream_id)

        logger.info(f"Stopping stream: {stream_id}")
        await self._teardown(record, "request")

    async def shutdown_all(self) -> int:
        """Stop every active stream concurrently.

        Returns:
            Number of streams stopped
        """
        records = await self.registry.drain()
        await self._teardown_many(records, "shutdown")
        logger.info(f"Stopped all streams ({len(records)})")
        return len(records)

    async def close(self) -> None:
        """Process shutdown: refuse new starts, stop everything, delete output now."""
        records = await self.registry.drain(close=True)
        logger.info(f"Supervisor closing: {len(records)} active stream(s)")
        await self._teardown_many(records, "shutdown", immediate_cleanup=True)

        # Exit watchers or hard timeouts already tearing down
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        for stream_id in list(self._pending_cleanups):
            self._flush_cleanup(stream_id)

        metrics.streams_active.set(0)
        logger.info("Supervisor closed")

    async def _teardown_many(
        self,
        records: list[StreamRecord],
        reason: str,
        immediate_cleanup: bool = False
    ) -> None:
        results = await asyncio.gather(
            *(self._teardown(record, reason, immediate_cleanup) for record in records),
            return_exceptions=True,
        )
        for record, result in zip(records, results):
            if isinstance(result, BaseException):
                logger.error(f"Teardown failed for {record.stream_id}: {result}")

    async def _teardown(
        self,
        record: StreamRecord,
        reason: str,
        immediate_cleanup: bool = False
    ) -> None:
        """STOPPING → TERMINATED for a record already removed from the registry."""
        stream_id = record.stream_id
        record.cancel_timers()

        watcher = record.exit_watcher
        if watcher is not None and watcher is not asyncio.current_task() and not watcher.done():
            watcher.cancel()

        code = await self._terminate_worker(stream_id, record.worker)

        metrics.stream_stops_total.labels(reason=reason).inc()
        if code is not None:
            metrics.worker_exit_codes_total.labels(code=str(code)).inc()
        metrics.streams_active.set(self.registry.size)

        if immediate_cleanup:
            self._cancel_cleanup(stream_id)
            _remove_output_dir(stream_id, record.output_dir)
        else:
            self._schedule_cleanup(stream_id, record.output_dir)

        logger.info(f"Stream stopped: {stream_id} (reason={reason}, code={code})")

    async def _terminate_worker(self, stream_id: str, worker: WorkerHandle) -> int | None:
        """SIGTERM, grace period, then SIGKILL."""
        worker.terminate()
        try:
            code = await asyncio.wait_for(worker.wait(), timeout=self.settings.stop_grace_period)
            logger.debug(f"FFmpeg terminated gracefully: {stream_id}")
            return code
        except asyncio.TimeoutError:
            logger.warning(f"Timeout, killing: {stream_id}")

        worker.kill()
        try:
            return await asyncio.wait_for(worker.wait(), timeout=KILL_WAIT_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error(f"[{stream_id}] Worker did not exit after SIGKILL (PID={worker.pid})")
            return None

    # ========================================================================
    # Exit Watcher & Hard Timeout
    # ========================================================================

    async def _watch_exit(self, record: StreamRecord) -> None:
        code = await record.worker.wait()
        removed = await self.registry.remove(record.stream_id, record.token)
        if removed is None:
            return
        logger.warning(f"[{record.stream_id}] FFmpeg exited with code {code}")
        await self._teardown(removed, "exited")

    def _arm_hard_timeout(self, stream_id: str, token: str) -> asyncio.TimerHandle | None:
        if self.settings.hard_timeout <= 0:
            return None
        logger.debug(f"[{stream_id}] Hard timeout armed: {self.settings.hard_timeout:g}s")
        return asyncio.get_running_loop().call_later(
            self.settings.hard_timeout,
            self._on_hard_timeout,
            stream_id,
            token,
        )

    def _on_hard_timeout(self, stream_id: str, token: str) -> None:
        self._spawn(self._expire(stream_id, token), name=f"expire:{stream_id}")

    async def _expire(self, stream_id: str, token: str) -> None:
        record = await self.registry.remove(stream_id, token)
        if record is None:
            launching = self._launching.get(stream_id)
            if launching is not None and launching[0] == token:
                logger.warning(f"[{stream_id}] Hard timeout during startup, killing worker")
                self._expired_launches.add(token)
                launching[1].kill()
            return

        logger.warning(f"[{stream_id}] Hard timeout reached ({self.settings.hard_timeout:g}s), stopping")
        await self._teardown(record, "timeout")

    def _progress_callback(self, stream_id: str, token: str):
        if self.settings.hard_timeout_policy != "renew" or self.settings.hard_timeout <= 0:
            return None

        def renew() -> None:
            record = self.registry.lookup(stream_id)
            if record is None or record.token != token:
                return
            if record.hard_timeout is not None:
                record.hard_timeout.cancel()
            record.hard_timeout = self._arm_hard_timeout(stream_id, token)

        return renew

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ========================================================================
    # Output Cleanup
    # ========================================================================

    def _schedule_cleanup(self, stream_id: str, output_dir: Path) -> None:
        self._cancel_cleanup(stream_id)
        delay = self.settings.cleanup_delay
        handle = asyncio.get_running_loop().call_later(delay, self._run_cleanup, stream_id, output_dir)
        self._pending_cleanups[stream_id] = (handle, output_dir)
        logger.debug(f"[{stream_id}] Output cleanup in {delay:g}s: {output_dir}")

    def _clear_stale_output(self, stream_id: str, output_dir: Path) -> None:
        """Remove output that no live stream owns before a new worker writes there.

        Raises:
            LaunchFailureError: The leftover output could not be removed
        """
        if not output_dir.exists():
            return
        logger.warning(f"[{stream_id}] Removing stale output from a previous run: {output_dir}")
        try:
            shutil.rmtree(output_dir)
        except OSError as e:
            logger.error(f"Failed to clear stale output {output_dir}: {e}")
            raise LaunchFailureError(f"Cannot clear stale output: {e}", stream_id) from e

    def _run_cleanup(self, stream_id: str, output_dir: Path) -> None:
        self._pending_cleanups.pop(stream_id, None)
        if self.registry.lookup(stream_id) is not None or self.registry.is_reserved(stream_id):
            logger.debug(f"[{stream_id}] Skipping cleanup, identifier in use again")
            return
        _remove_output_dir(stream_id, output_dir)

    def _cancel_cleanup(self, stream_id: str) -> None:
        pending = self._pending_cleanups.pop(stream_id, None)
        if pending is not None:
            pending[0].cancel()

    def _flush_cleanup(self, stream_id: str) -> None:
        """Run a pending deletion for stream_id right now."""
        pending = self._pending_cleanups.pop(stream_id, None)
        if pending is None:
            return
        handle, output_dir = pending
        handle.cancel()
        _remove_output_dir(stream_id, output_dir)


def _remove_output_dir(stream_id: str, output_dir: Path) -> None:
    try:
        shutil.rmtree(output_dir)
        logger.info(f"Cleaned up stream directory: {stream_id}")
    except FileNotFoundError:
        logger.debug(f"[{stream_id}] Output directory already gone: {output_dir}")
    except OSError as e:
        logger.error(f"Failed to clean up {output_dir}: {e}")
