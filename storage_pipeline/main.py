"""
FastAPI application entry point.

This module creates and configures the FastAPI application.
Using an application factory pattern (create_app function) because:
- Easier to test with different configurations
- Explicit about initialization order

For local development:
    uvicorn storage_pipeline.main:app --reload

Jobs run as tasks on the server's event loop and their state lives in
process memory, so run a single worker:
    uvicorn storage_pipeline.main:app --host 0.0.0.0 --port 8000
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api.routes import files, health, jobs
from .config.settings import get_settings

# Configure logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=get_settings().log_level.upper(),
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Logs the mode we're running in and any missing configuration on
    startup. Missing configuration doesn't stop the service: /health/ready
    reports it, and jobs refuse to run until it's fixed.
    """
    settings = get_settings()

    logger.info(
        "Storage Pipeline API starting",
        extra={
            "version": __version__,
            "mock_mode": {
                "snowflake": settings.snowflake_mock_mode,
                "storage": settings.storage_mock_mode,
            }
        }
    )

    missing_fields = settings.validate_required_fields()
    if missing_fields:
        logger.error(
            "Missing required configuration",
            extra={"missing_fields": missing_fields}
        )

    yield

    logger.info("Storage Pipeline API shutting down")


def create_app() -> FastAPI:
    """
    Application factory.

    Creates and configures the FastAPI application.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.api_title,
        version=__version__,
        description="""
        Object storage uploads and batch maintenance jobs.

        ## Jobs

        - **Legacy migration**: `POST /api/v1/jobs/migration` moves files off
          the legacy backend and rewrites each record's file path.
        - **Derivative retrofit**: `POST /api/v1/jobs/retrofit` creates WebP
          thumbnails and previews where they are missing or outdated.

        Poll `GET /api/v1/jobs/{job_id}` for progress, stop a run with
        `POST /api/v1/jobs/{job_id}/cancel`.

        ## Authentication

        All endpoints except health checks require an API key provided in
        the `X-API-Key` header.
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(
        health.router,
        prefix="/health",
        tags=["Health"],
    )

    app.include_router(
        jobs.router,
        prefix="/api/v1/jobs",
        tags=["Jobs"],
    )

    app.include_router(
        files.router,
        prefix="/api/v1/files",
        tags=["Files"],
    )

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "message": "Storage Pipeline API",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """
        Catch-all exception handler.

        Prevents stack traces from leaking to clients. We log the full
        error server-side but return a generic message.
        """
        logger.error(
            "Unhandled exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error": str(exc),
            },
            exc_info=exc,
        )

        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error. Please contact support if this persists."
            }
        )

    logger.info(
        "FastAPI application created",
        extra={
            "title": settings.api_title,
            "version": __version__,
        }
    )

    return app


# Create the application instance
# This is what uvicorn will import
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "storage_pipeline.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
