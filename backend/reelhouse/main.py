"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from reelhouse.api import media
from reelhouse.core import otel
from reelhouse.core.config import settings
from reelhouse.core.logging import setup_logging
from reelhouse.db.redis import ping_redis
from reelhouse.db.session import engine, init_db
from reelhouse.schemas.media import ToolHealthResponse, ToolInfo
from reelhouse.services.media.errors import MediaPipelineError, RangeNotSatisfiableError
from reelhouse.services.media.orchestrator import build_orchestrator
from reelhouse.tasks.cleanup import cleanup_task

setup_logging()
logger = logging.getLogger(__name__)


async def check_toolchain(orchestrator) -> bool:
    """Run the cached ffmpeg/ffprobe check and raise the alarm if one is missing"""
    status = await orchestrator.toolchain.check()
    healthy = True
    for tool in status.values():
        if tool.available:
            logger.info(f"{tool.name} available: {tool.version}")
        else:
            healthy = False
            logger.error(f"ALARM: {tool.name} ({tool.binary}) is not available, processing will fail: {tool.error}")
    return healthy


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if otel.initialize_otel():
        otel.setup_otel_logging()
        otel.instrument_sqlalchemy(engine)
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    if ping_redis():
        logger.info("Redis connection successful")
    else:
        logger.warning("Redis unavailable - live processing progress is disabled")

    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = build_orchestrator()
        app.state.orchestrator = orchestrator
    await check_toolchain(orchestrator)

    sweeper = None
    if settings.STALE_SWEEP_ENABLED:
        sweeper = asyncio.create_task(cleanup_task(orchestrator))
        logger.info("Cleanup task started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if sweeper is not None:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
    await orchestrator.shutdown()


# Create FastAPI app
app = FastAPI(
    title="Reelhouse Backend",
    description="Video ingestion, transcoding and range streaming",
    version="1.0.0",
    lifespan=lifespan
)

if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
    otel.instrument_fastapi(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length", "X-Served-Quality"],
)

app.include_router(media.router)

if settings.STORAGE_BACKEND == "local":
    app.mount(
        settings.STORAGE_PUBLIC_URL,
        StaticFiles(directory=settings.STORAGE_DIR, check_dir=False),
        name="files"
    )


@app.exception_handler(MediaPipelineError)
async def media_error_handler(request: Request, exc: MediaPipelineError):
    """Map pipeline errors to their status with a user-safe message"""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc}")

    headers = {}
    if isinstance(exc, RangeNotSatisfiableError):
        headers["Content-Range"] = f"bytes */{exc.file_size}"
        headers["Accept-Ranges"] = "bytes"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.public_message},
        headers=headers
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


@app.get("/health/tools", response_model=ToolHealthResponse)
async def tools_health(request: Request):
    """Report whether ffmpeg and ffprobe are runnable (cached after startup)"""
    status = await request.app.state.orchestrator.toolchain.check()
    body = ToolHealthResponse(
        healthy=all(tool.available for tool in status.values()),
        tools={
            name: ToolInfo(available=tool.available, binary=tool.binary, version=tool.version)
            for name, tool in status.items()
        },
    )
    return JSONResponse(status_code=200 if body.healthy else 503, content=body.model_dump())
