"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from shortsmith.config import settings
from shortsmith.db.database import init_db, close_db
from shortsmith.api.routes import router
from shortsmith.pipeline.job import sweep_stale_files
from shortsmith.workers.job_runner import job_runner

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info(f"Starting {settings.app_name}...")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Files left behind by a previous crash
    swept = sweep_stale_files(
        [settings.processing_dir, settings.output_dir],
        max_age_seconds=settings.stale_file_max_age_seconds,
    )
    logger.info(f"Startup sweep removed {swept} stale files")

    if not settings.service_token:
        logger.warning("SERVICE_TOKEN is not set; every authenticated request will be rejected")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}...")
    await job_runner.shutdown()
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Turns long videos into short clips and delivers them to storage and a webhook",
    version="1.0.0",
    lifespan=lifespan
)

# Include API routes
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.app_name,
        "version": "1.0.0",
        "process": "/process-video",
        "docs": "/docs"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "shortsmith.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
