import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crop_analytics.config.settings import get_settings
from crop_analytics.core.exceptions import AnalyticsError
from crop_analytics.database.connection import AsyncSessionLocal, dispose_db, init_db
from crop_analytics.database.repository import AnalyticsRepository
from crop_analytics.api.handlers import router, analytics_error_handler
from crop_analytics.models.responses import HealthCheckResponse
from crop_analytics.services.analytics_service import build_analytics_service
from crop_analytics.utils.async_helpers import shutdown_executor

# Get application settings
settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""
    # Startup
    logger.info(f"Initializing {settings.app_name}")
    logger.info(
        f"Database URL: {settings.database_url.split('@')[1] if '@' in settings.database_url else settings.database_url.split(':')[0]}"
    )
    logger.info(f"Capture source: {settings.capture_source}")

    try:
        await init_db()
        logger.info("Database initialized successfully")

        service = build_analytics_service(settings, AnalyticsRepository(AsyncSessionLocal))
        await service.hydrate()
        app.state.analytics_service = service
        logger.info("Analytics pipeline ready")
    except Exception as e:
        logger.error(f"Failed to initialize service: {e}")
        raise

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}")
    app.state.analytics_service.band_reader.shutdown()
    shutdown_executor()
    await dispose_db()


# Create FastAPI app
app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routes
app.add_exception_handler(AnalyticsError, analytics_error_handler)
app.include_router(router)


@app.get("/health", response_model=HealthCheckResponse)
async def health_check() -> HealthCheckResponse:
    """Basic health check endpoint."""
    service = app.state.analytics_service
    return HealthCheckResponse(
        status="healthy",
        service=settings.app_name,
        version=settings.app_version,
        timestamp=datetime.now(timezone.utc),
        dependencies={
            "capture_source": settings.capture_source,
            "fields_tracked": str(len(service.store.field_ids())),
            "yield_observations": str(len(service.yield_history)),
        },
    )


# For development/testing only - DON'T use this in production
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting FastAPI server for development...")
    uvicorn.run(
        "crop_analytics.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
