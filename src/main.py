"""
Background Remover & Cartoonizer - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Storage abstraction for previews and downloads
- Optional background model warmup
"""

import asyncio
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from src.core.config import settings
from src.core.logging import setup_logging, get_logger, clear_session_context
from src.core.exceptions import register_exception_handlers
from src.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from src.core.storage import get_storage
from src.api.v1 import api_v1_router
from src.api.dependencies import build_registry
from src.pipeline.stages import RembgSegmenter


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    segmenter = RembgSegmenter(settings.REMBG_MODEL)
    app.state.http_client = httpx.AsyncClient(timeout=settings.STYLIZE_TIMEOUT_SECONDS)
    app.state.registry = build_registry(
        segmenter=segmenter,
        storage=get_storage(),
        http_client=app.state.http_client
    )
    logger.info("stylize_api_configured", endpoint=settings.stylize_endpoint)

    warmup_task = None
    if settings.REMBG_PRELOAD:
        # Model download/initialisation can take a while; don't block startup
        warmup_task = asyncio.create_task(asyncio.to_thread(segmenter.load))
        logger.info("rembg_model_loading_in_background", model=settings.REMBG_MODEL)

    startup_time = time.time() - startup_start
    logger.info("application_ready", startup_time_seconds=startup_time)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    if warmup_task is not None and not warmup_task.done():
        warmup_task.cancel()
    await app.state.registry.shutdown()
    await app.state.http_client.aclose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Upload an image, strip its background and turn it into a cartoon.

    ## Pipeline Stages

    1. **Intake** (sync) - HEIC/HEIF conversion, type and size checks
    2. **Background Removal** (background task) - local rembg segmentation
       with estimated progress
    3. **Cartoonize** (background task) - remote cartoonize API

    A failed stage can be retried on its own; earlier results are kept.
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    try:
        response = await call_next(request)
    finally:
        clear_session_context()
    duration = time.time() - start_time

    # Label by route template to keep session ids out of label values
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_v1_router)


# =============================================================================
# Static Files
# =============================================================================

# Serve background-removed previews and exports
app.mount("/static/storage", StaticFiles(directory=settings.LOCAL_STORAGE_PATH), name="storage")


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/api/docs",
        "api_v1": "/api/v1",
        "metrics": "/api/v1/metrics"
    }


@app.get("/health", tags=["health"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
