"""FastAPI application entry point for HLSGate.

HLSGate: RTSP camera feeds as browser-playable HLS, one supervised FFmpeg
worker per feed.

Architecture:
    - FastAPI async web framework
    - One StreamSupervisor per process, held in services.container
    - FFmpeg subprocesses writing playlists + segments under HLS_OUTPUT_DIR
    - Output served statically under /streams, frontend under /

Critical Design Decisions:
    1. Singleton StreamSupervisor: all requests share the supervisor that
       owns the only stream registry.
    2. Lifespan Context: the supervisor lives exactly as long as the app;
       shutdown stops every worker and deletes their output.
    3. App factory: create_app() takes settings and a launcher so tests run
       the full HTTP stack against fake workers.

Logging Strategy:
    INFO  - Application lifecycle, configuration summary
    WARN  - Auto-load problems, missing frontend
    ERROR - Startup/shutdown failures with stack traces
"""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .api import health, streams
from .api.errors import (
    general_exception_handler,
    http_exception_handler,
    stream_error_handler,
    validation_exception_handler,
)
from .config_io import Settings, load_cameras, load_settings
from .logging_config import configure_logging
from .middleware.headers import HLSHeadersMiddleware
from .middleware.rate_limit import RateLimitMiddleware
from .middleware.request_id import RequestIDMiddleware
from .services import container
from .services.autoload import start_configured_cameras
from .services.errors import StreamError
from .services.launcher import WorkerLauncher
from .services.supervisor import StreamSupervisor

logger = logging.getLogger(__name__)


async def _auto_load(supervisor: StreamSupervisor, settings: Settings) -> None:
    """Start the configured cameras shortly after startup."""
    await asyncio.sleep(settings.auto_load_initial_delay)
    await start_configured_cameras(supervisor, container.cameras, settings.auto_start_delay)


def create_app(
    settings: Settings | None = None,
    launcher: WorkerLauncher | None = None
) -> FastAPI:
    """Build the application.

    Args:
        settings: Resolved configuration (default: from environment)
        launcher: Worker launcher (default: real FFmpeg launcher)
    """
    settings = settings or load_settings()

    # ========================================================================
    # Application Lifespan Management
    # ========================================================================

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("=" * 80)
        logger.info(f"HLSGate {__version__} starting...")
        logger.info("=" * 80)

        settings.output_root.mkdir(parents=True, exist_ok=True)

        supervisor = StreamSupervisor(settings, launcher)
        container.supervisor = supervisor
        container.cameras = load_cameras(settings)

        auto_load_task: asyncio.Task | None = None
        if settings.auto_load_cameras:
            if container.cameras:
                logger.info(
                    f"Auto-load enabled: {len(container.cameras)} camera(s) in "
                    f"{settings.auto_load_initial_delay:g}s"
                )
                auto_load_task = asyncio.create_task(_auto_load(supervisor, settings))
            else:
                logger.warning("Auto-load enabled but no cameras configured")

        logger.info("HLSGate ready")
        logger.info("=" * 80)

        yield

        logger.info("=" * 80)
        logger.info("HLSGate shutting down...")
        logger.info("=" * 80)

        if auto_load_task is not None and not auto_load_task.done():
            auto_load_task.cancel()
            try:
                await auto_load_task
            except asyncio.CancelledError:
                logger.debug("Auto-load cancelled by shutdown")

        try:
            await supervisor.close()
        except Exception as e:
            logger.error(f"Shutdown error: {e}", exc_info=True)
        finally:
            container.supervisor = None
            container.cameras = []

        logger.info("HLSGate shutdown complete")

    # ========================================================================
    # FastAPI Application
    # ========================================================================

    app = FastAPI(
        title="HLSGate",
        description=(
            "RTSP to HLS stream supervisor.\n\n"
            "Start and stop per-camera FFmpeg workers; playback under /streams."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )

    app.add_exception_handler(StreamError, stream_error_handler)  # type: ignore
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore
    app.add_exception_handler(Exception, general_exception_handler)

    # Middleware (last added runs first)
    app.add_middleware(HLSHeadersMiddleware, prefix=settings.output_url_prefix)
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_second=settings.rate_limit_rps,
        burst=settings.rate_limit_burst
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)

    app.include_router(health.router)
    app.include_router(streams.router)

    # HLS output; the directory is created during startup
    app.mount(
        settings.output_url_prefix,
        StaticFiles(directory=settings.output_root, check_dir=False),
        name="streams"
    )

    static_root = settings.static_root
    if static_root is not None and static_root.is_dir():
        app.mount("/", StaticFiles(directory=static_root, html=True), name="frontend")
        logger.info(f"Frontend: {static_root}")
    else:
        logger.info("No frontend directory, API only")

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    configure_logging()
    uvicorn.run(
        "hlsgate.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
        log_config=None,
    )
