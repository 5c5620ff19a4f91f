"""
Tent Migrate - Account migration service
Moves posts, profile, followers, followings, groups, permissions, apps and
secrets from one Tent entity to another.
"""
from fastapi import FastAPI, Request
from contextlib import asynccontextmanager
import time
from dotenv import load_dotenv

load_dotenv()

from core.config import settings
from core.database import test_connection
from core.logging import setup_logging, get_logger, log_request
from core.sentry import init_sentry
from services.migration.service import MigrationService
from api.migration import router as migration_router

setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT == "json"
)

logger = get_logger("tent_migrate.main")


def create_app(migration_service: MigrationService = None) -> FastAPI:
    """Build the application; the service is created from settings unless given"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Tent Migrate starting...", action="app_startup")
        init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)
        service = migration_service or MigrationService(settings)
        app.state.migration_service = service
        await service.startup()
        yield
        logger.info("Tent Migrate shutting down...", action="app_shutdown")
        await service.shutdown()

    app = FastAPI(
        title="Tent Migrate",
        description="Move your data between Tent entities",
        version="1.0.0",
        lifespan=lifespan
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()

        if request.url.path == "/health":
            return await call_next(request)

        response = await call_next(request)

        duration_ms = (time.time() - start_time) * 1000

        if request.url.path.startswith("/api/"):
            await log_request(
                request=request,
                response_status=response.status_code,
                duration_ms=duration_ms
            )

        return response

    @app.get("/health")
    async def health(request: Request):
        service: MigrationService = request.app.state.migration_service
        if not await test_connection(service.engine):
            return {"status": "degraded", "service": "tent-migrate"}
        return {
            "status": "healthy",
            "service": "tent-migrate",
            "queue_depth": await service.queue.depth(),
            "active_jobs": len(service.workers.active_jobs),
        }

    app.include_router(migration_router, prefix="/api/v1")

    return app


app = create_app()
