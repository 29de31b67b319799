"""REST API endpoints for stream supervision.

Thin HTTP mapping over StreamSupervisor. Supervisor failures propagate as
StreamError and are rendered by api.errors.stream_error_handler, so the
handlers here only cover the success path.

Endpoints:
    POST /api/stream/start          Start a stream, wait for its playlist
    POST /api/stream/stop           Stop a stream
    GET  /api/streams               Active streams
    GET  /api/stream/{id}/status    One active stream
    POST /api/cameras/start-all     Start the configured cameras in sequence
    POST /api/cameras/stop-all      Stop every stream
    GET  /api/cameras/auto-load     Configured cameras and their state
    GET  /api/system/status         Uptime and stream counts
    GET  /api/debug/stream/{id}     Files in a stream's output directory

Logging Strategy:
    DEBUG - Listing, status queries
    INFO  - Start/stop requests
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from ..config_io import CameraConfig
from ..models.stream import (
    AutoLoadInfo,
    CameraResult,
    ConfiguredCamera,
    StartAllResponse,
    StartStreamRequest,
    StartStreamResponse,
    StopAllResponse,
    StopStreamRequest,
    StopStreamResponse,
    StreamCounts,
    StreamDebugInfo,
    StreamFile,
    StreamInfo,
    StreamList,
    StreamStatus,
    SystemStatus,
)
from ..services.autoload import start_configured_cameras
from ..services.container import get_cameras, get_supervisor
from ..services.errors import InputRejectedError
from ..services.registry import StreamSnapshot
from ..services.supervisor import StreamSupervisor
from ..utils.validation import validate_stream_id
from .errors import raise_not_found

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["streams"])


def _stream_info(snapshot: StreamSnapshot) -> StreamInfo:
    return StreamInfo(
        id=snapshot.stream_id,
        rtsp_url=snapshot.source_url,
        start_time=snapshot.start_time,
        hls_url=snapshot.output_url,
    )


# ============================================================================
# Single Stream Operations
# ============================================================================

@router.post("/stream/start", response_model=StartStreamResponse)
async def start_stream(
    body: StartStreamRequest,
    supervisor: StreamSupervisor = Depends(get_supervisor)
) -> StartStreamResponse:
    """Start a stream; responds once the HLS playlist exists."""
    logger.info(f"Start requested: {body.stream_id}")
    snapshot = await supervisor.start_stream(body.stream_id, body.rtsp_url)
    return StartStreamResponse(
        stream_id=snapshot.stream_id,
        hls_url=snapshot.output_url,
        message="Stream started successfully",
    )


@router.post("/stream/stop", response_model=StopStreamResponse)
async def stop_stream(
    body: StopStreamRequest,
    supervisor: StreamSupervisor = Depends(get_supervisor)
) -> StopStreamResponse:
    """Stop an active stream."""
    logger.info(f"Stop requested: {body.stream_id}")
    await supervisor.stop_stream(body.stream_id)
    return StopStreamResponse(message="Stream stopped successfully")


@router.get("/streams", response_model=StreamList)
async def list_streams(
    supervisor: StreamSupervisor = Depends(get_supervisor)
) -> StreamList:
    """Active streams with masked credentials."""
    streams = [_stream_info(s) for s in supervisor.list_streams()]
    logger.debug(f"Listed {len(streams)} stream(s)")
    return StreamList(streams=streams)


@router.get("/stream/{stream_id}/status", response_model=StreamStatus)
async def get_stream_status(
    stream_id: str,
    supervisor: StreamSupervisor = Depends(get_supervisor)
) -> StreamStatus:
    snapshot = supervisor.get_status(stream_id)
    return StreamStatus(**_stream_info(snapshot).model_dump(), active=True)


# ============================================================================
# Camera Catalogue Operations
# ============================================================================

@router.post("/cameras/start-all", response_model=StartAllResponse)
async def start_all_cameras(
    supervisor: StreamSupervisor = Depends(get_supervisor),
    cameras: list[CameraConfig] = Depends(get_cameras)
) -> StartAllResponse:
    """Start every configured camera, one after another."""
    results = await start_configured_cameras(
        supervisor,
        cameras,
        supervisor.settings.auto_start_delay,
    )
    started = sum(1 for r in results if r.success)
    return StartAllResponse(
        message=f"Started {started} of {len(results)} configured cameras",
        active_streams=supervisor.active_count,
        results=[
            CameraResult(
                id=r.camera_id,
                name=r.name,
                success=r.success,
                hls_url=r.hls_url,
                error=r.error,
            )
            for r in results
        ],
    )


@router.post("/cameras/stop-all", response_model=StopAllResponse)
async def stop_all_cameras(
    supervisor: StreamSupervisor = Depends(get_supervisor)
) -> StopAllResponse:
    stopped = await supervisor.shutdown_all()
    return StopAllResponse(message=f"Stopped {stopped} cameras", stopped_count=stopped)


@router.get("/cameras/auto-load", response_model=AutoLoadInfo)
async def auto_load_info(
    supervisor: StreamSupervisor = Depends(get_supervisor),
    cameras: list[CameraConfig] = Depends(get_cameras)
) -> AutoLoadInfo:
    """Configured cameras with masked URLs and whether each is running."""
    active = {s.stream_id for s in supervisor.list_streams()}
    configured = [
        ConfiguredCamera(
            index=idx,
            id=camera.id,
            name=camera.name,
            url=camera.masked_url,
            active=camera.id in active,
        )
        for idx, camera in enumerate(cameras, start=1)
    ]
    return AutoLoadInfo(
        auto_load_enabled=supervisor.settings.auto_load_cameras,
        configured_cameras=len(configured),
        cameras=configured,
        active_streams=supervisor.active_count,
    )


# ============================================================================
# Diagnostics
# ============================================================================

@router.get("/system/status", response_model=SystemStatus)
async def system_status(
    supervisor: StreamSupervisor = Depends(get_supervisor)
) -> SystemStatus:
    uptime = datetime.now(timezone.utc) - supervisor.started_at
    return SystemStatus(
        uptime=int(uptime.total_seconds()),
        started_at=supervisor.started_at,
        streams=StreamCounts(
            active=supervisor.active_count,
            pending=supervisor.pending_count,
            maximum=supervisor.max_streams,
            ids=[s.stream_id for s in supervisor.list_streams()],
        ),
    )


@router.get("/debug/stream/{stream_id}", response_model=StreamDebugInfo)
async def debug_stream(
    stream_id: str,
    supervisor: StreamSupervisor = Depends(get_supervisor)
) -> StreamDebugInfo:
    """List the files in a stream's output directory."""
    ok, reason = validate_stream_id(stream_id)
    if not ok:
        raise InputRejectedError(reason or "Invalid stream ID", field="streamId")

    output_dir = supervisor.output_dir_for(stream_id)
    if not output_dir.is_dir():
        raise_not_found("stream directory", stream_id)

    files = []
    for path in sorted(output_dir.iterdir()):
        try:
            stat = path.stat()
        except FileNotFoundError:
            # Segment rotated away while listing
            continue
        files.append(StreamFile(
            name=path.name,
            size=stat.st_size,
            modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        ))

    logger.debug(f"Debug listing for {stream_id}: {len(files)} file(s)")
    return StreamDebugInfo(
        stream_id=stream_id,
        directory=str(output_dir),
        files=files,
        total_files=len(files),
    )
