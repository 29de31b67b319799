"""Shared fixtures: fake workers, a fake launcher and fast settings."""
from __future__ import annotations

import asyncio
import itertools
from pathlib import Path

import pytest
import pytest_asyncio

from hlsgate.config.ffmpeg_defaults import MANIFEST_NAME
from hlsgate.config_io import Settings
from hlsgate.services.errors import LaunchFailureError
from hlsgate.services.launcher import WorkerLauncher
from hlsgate.services.supervisor import StreamSupervisor

_pids = itertools.count(4000)


class FakeWorker:
    """In-memory WorkerHandle.

    terminate() exits with -15 unless ignore_terminate is set; kill()
    always exits with -9. Every signal is recorded in `signals`.
    """

    def __init__(self, ignore_terminate: bool = False) -> None:
        self.pid = next(_pids)
        self.returncode: int | None = None
        self.ignore_terminate = ignore_terminate
        self.signals: list[str] = []
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def terminate(self) -> None:
        self.signals.append("SIGTERM")
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.signals.append("SIGKILL")
        self.exit(-9)


class FakeLauncher(WorkerLauncher):
    """Launcher that fakes FFmpeg by writing the playlist itself.

    Modes:
        ready   - playlist written immediately (optionally after manifest_delay)
        stall   - worker runs but never writes a playlist
        crash   - worker exits with code 1 before writing anything
        fail    - spawn fails
    """

    def __init__(
        self,
        mode: str = "ready",
        manifest_delay: float = 0.0,
        ignore_terminate: bool = False
    ) -> None:
        super().__init__("ffmpeg")
        self.mode = mode
        self.manifest_delay = manifest_delay
        self.ignore_terminate = ignore_terminate
        self.launches: list[tuple[str, list[str]]] = []
        self.workers: dict[str, FakeWorker] = {}

    async def launch(self, stream_id: str, argv: list[str], output_dir: Path) -> FakeWorker:
        self.launches.append((stream_id, argv))
        if self.mode == "fail":
            raise LaunchFailureError("Failed to start worker: ffmpeg not found", stream_id)

        output_dir.mkdir(parents=True, exist_ok=True)
        worker = FakeWorker(ignore_terminate=self.ignore_terminate)
        self.workers[stream_id] = worker

        if self.mode == "ready":
            if self.manifest_delay > 0:
                asyncio.get_running_loop().call_later(
                    self.manifest_delay, write_playlist, output_dir
                )
            else:
                write_playlist(output_dir)
        elif self.mode == "crash":
            worker.exit(1)

        return worker


def write_playlist(output_dir: Path) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    (output_dir / MANIFEST_NAME).write_text("#EXTM3U\n#EXT-X-VERSION:3\n")
    (output_dir / "stream0.ts").write_bytes(b"\x47" * 188)


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        output_root=tmp_path / "streams",
        max_concurrent_streams=10,
        start_pacing_delay=0.0,
        hard_timeout=0.0,
        readiness_poll_interval=0.01,
        readiness_timeout=0.2,
        health_poll_interval=60.0,
        stop_grace_period=0.1,
        cleanup_delay=0.0,
        rate_limit_rps=100.0,
        rate_limit_burst=100,
        static_root=None,
    )
    values.update(overrides)
    return Settings(**values)


async def settle(seconds: float = 0.05) -> None:
    """Let timers and background tasks run."""
    await asyncio.sleep(seconds)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest_asyncio.fixture
async def supervisor(settings: Settings, launcher: FakeLauncher):
    sup = StreamSupervisor(settings, launcher)
    yield sup
    await sup.close()
