"""FFmpeg worker launching.

Builds the HLS worker's argument vector and spawns it as a subprocess.

FFmpeg Pipeline:
    RTSP → FFmpeg (libx264/aac) → HLS playlist + .ts segments on disk

Security:
    Workers are always spawned with asyncio.create_subprocess_exec() and an
    argument vector. No shell ever sees the source URL.

Logging Strategy:
    DEBUG - Command building, worker output lines
    INFO  - Worker spawned (PID)
    WARN  - Worker output containing warnings
    ERROR - Spawn failures, worker output containing errors
"""
from __future__ import annotations

import asyncio
import logging
import signal
import subprocess
from pathlib import Path
from typing import Protocol

from ..config.ffmpeg_defaults import (
    INPUT_FFMPEG_PARAMS,
    MANIFEST_NAME,
    OUTPUT_FFMPEG_PARAMS,
    TRAILING_FFMPEG_PARAMS,
    get_quality_params,
    select_quality_profile,
)
from .errors import LaunchFailureError

logger = logging.getLogger(__name__)
worker_logger = logging.getLogger("hlsgate.worker")

# ============================================================================
# Worker Handle
# ============================================================================

class WorkerHandle(Protocol):
    """Capability object for one running worker.

    Only the supervisor that launched the worker may signal or wait on it.
    """

    @property
    def pid(self) -> int | None: ...

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int:
        """Exit notification: resolves with the exit code (negative = signal)."""
        ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class SubprocessWorker:
    """WorkerHandle backed by an asyncio subprocess.

    Owns the tasks that drain stdout/stderr into the log, so the worker
    never blocks on a full pipe.
    """

    def __init__(self, stream_id: str, process: asyncio.subprocess.Process) -> None:
        self.stream_id = stream_id
        self._process = process
        self._pumps = [
            asyncio.create_task(_pump_output(stream_id, process.stdout, "stdout")),
            asyncio.create_task(_pump_output(stream_id, process.stderr, "stderr")),
        ]

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def wait(self) -> int:
        code = await self._process.wait()
        # Let the pumps flush whatever the worker printed last; asyncio.wait
        # leaves them running if this waiter is cancelled
        await asyncio.wait(self._pumps)
        return code

    def terminate(self) -> None:
        self._send(signal.SIGTERM)

    def kill(self) -> None:
        self._send(signal.SIGKILL)

    def _send(self, sig: signal.Signals) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            logger.debug(f"[{self.stream_id}] {sig.name} skipped, worker already gone")


async def _pump_output(
    stream_id: str,
    reader: asyncio.StreamReader | None,
    channel: str
) -> None:
    """Log captured worker output line by line, classified by severity."""
    if reader is None:
        return

    try:
        while True:
            line = await reader.readline()
            if not line:
                break

            message = line.decode(errors="replace").strip()
            if not message:
                continue

            msg_lower = message.lower()
            if 'error' in msg_lower or 'fatal' in msg_lower or 'failed' in msg_lower:
                worker_logger.error(f"FFmpeg [{stream_id}]: {message[:200]}")
            elif 'warning' in msg_lower:
                worker_logger.warning(f"FFmpeg [{stream_id}]: {message[:200]}")
            else:
                worker_logger.debug(f"FFmpeg {channel} [{stream_id}]: {message[:200]}")
    except asyncio.CancelledError:
        logger.debug(f"FFmpeg {channel} monitor cancelled: {stream_id}")
        raise
    except Exception as e:
        logger.error(f"{channel} monitor error for {stream_id}: {e}")


# ============================================================================
# Launcher
# ============================================================================

class WorkerLauncher:
    """Builds FFmpeg invocations and starts workers.

    Attributes:
        ffmpeg_binary: Executable name or path
    """

    def __init__(self, ffmpeg_binary: str = "ffmpeg") -> None:
        self.ffmpeg_binary = ffmpeg_binary

    def build_invocation(
        self,
        source_url: str,
        output_dir: Path,
        concurrent_streams: int
    ) -> list[str]:
        """Build the worker's argument vector.

        Command structure:
        1. Fixed input flags (transport, timeouts, error tolerance)
        2. Input (-i rtsp://...)
        3. Fixed encoder/HLS flags
        4. Quality profile for the current load
        5. Trailing flags and the playlist path

        Args:
            source_url: Sanitized RTSP URL
            output_dir: Directory the worker writes into
            concurrent_streams: Other streams active or starting right now

        Returns:
            Argument vector, binary first
        """
        profile = select_quality_profile(concurrent_streams)
        logger.debug(f"Building FFmpeg command: profile={profile}, concurrent={concurrent_streams}")

        cmd = [self.ffmpeg_binary]
        cmd.extend(INPUT_FFMPEG_PARAMS)
        cmd.extend(["-i", source_url])
        cmd.extend(OUTPUT_FFMPEG_PARAMS)
        cmd.extend(get_quality_params(profile))
        cmd.extend(TRAILING_FFMPEG_PARAMS)
        cmd.append(str(output_dir / MANIFEST_NAME))
        return cmd

    async def launch(self, stream_id: str, argv: list[str], output_dir: Path) -> WorkerHandle:
        """Create the output directory and spawn the worker.

        Raises:
            LaunchFailureError: Directory could not be created or the
                binary could not be started. Nothing is left running.
        """
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"[{stream_id}] Cannot create output dir {output_dir}: {e}")
            raise LaunchFailureError(f"Cannot create output directory: {e}", stream_id) from e

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"[{stream_id}] Failed to spawn {argv[0]}: {e}")
            raise LaunchFailureError(f"Failed to start worker: {e}", stream_id) from e

        logger.info(f"[{stream_id}] FFmpeg started: PID={process.pid}")
        return SubprocessWorker(stream_id, process)
