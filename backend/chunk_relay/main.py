"""Chunk Relay Application.

This is the main entry point for the chunk relay service. A sender uploads a
file as base64 chunks over a WebSocket; the server stores each chunk in
temporary storage and relays it to the receiver joined to the same transfer
session. Completed sessions are cleaned up after a configurable delay.

Modules:
    - transfer: Session protocol engine, WebSocket endpoint, snapshot API
    - storage: Temporary chunk store on the local filesystem
    - cleanup: Per-transfer delayed cleanup timers
    - activity: Daily JSON-lines activity log
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from .activity import ActivityLog
from .config import AppSettings, get_config
from .storage import ChunkStore
from .transfer import ConnectionManager, TransferEngine
from .transfer import router as transfer_router
from .transfer.schemas import HealthResponse

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn.access logs every health probe; websockets logs every frame at debug.
for _noisy in (
    "uvicorn.access",
    "websockets",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def _ensure_directories(settings: AppSettings) -> None:
    """Create the storage directories. Failures are logged, not fatal."""
    for directory in (
        settings.storage.temp_dir,
        settings.storage.upload_dir,
        settings.storage.log_dir,
    ):
        try:
            Path(directory).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Could not create directory %s: %s", directory, exc)


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Settings to use. Defaults to the process-wide settings
            from ``get_config()``.

    Returns:
        The configured application. Services are created in the lifespan
        hook and stored on ``app.state``.
    """
    settings = settings or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        configured_level = getattr(logging, settings.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", settings.logging.level.upper())

        _ensure_directories(settings)

        engine = TransferEngine(
            chunk_store=ChunkStore(settings.storage.temp_dir),
            activity=ActivityLog(
                settings.storage.log_dir,
                enabled=settings.logging.activity_enabled,
            ),
            cleanup_delay_seconds=settings.transfer.cleanup_interval_seconds,
            max_file_size=settings.transfer.max_file_size,
        )
        app.state.settings = settings
        app.state.transfer_engine = engine
        app.state.connection_manager = ConnectionManager()
        app.state.started_at = time.monotonic()

        logger.info(
            f"Chunk relay running on http://{settings.server.host}:{settings.server.port} "
            f"(chunk size {settings.transfer.chunk_size}, "
            f"max file size {settings.transfer.max_file_size})"
        )

        yield  # Application runs here

        # Shutdown
        await engine.shutdown()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Chunk Relay API",
        description="Relays chunked file uploads from a sender to a receiver over WebSocket",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(transfer_router)

    @app.get("/health")
    async def health(request: Request) -> HealthResponse:
        """Health check endpoint.

        Returns:
            HealthResponse: Uptime in seconds plus live session and
            connection counts.
        """
        engine: TransferEngine = request.app.state.transfer_engine
        return HealthResponse(
            uptime=time.monotonic() - request.app.state.started_at,
            activeSessions=engine.active_sessions,
            activeConnections=engine.active_connections,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    # Static client last so it never shadows the API routes.
    static_dir = Path(settings.server.static_dir)
    if static_dir.is_dir():
        app.mount("/", StaticFiles(directory=static_dir, html=True), name="static")
        logger.info("Serving static files from %s", static_dir)

    return app


app = create_app()
