# app/main.py
"""
Grooming scheduler API with database pool and Redis lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.features.scheduling.api.router import router as scheduling_router
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.middleware.request_context import RequestContextMiddleware
from app.routes import health
from app.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        backend=settings.SCHEDULING_BACKEND,
        timezone=settings.BUSINESS_TIMEZONE,
    )

    startup_tasks = []

    # The in-memory backend needs neither Postgres nor Redis
    if settings.SCHEDULING_BACKEND == "postgres":
        try:
            logger.info("Initializing database pool")
            await db_pool.initialize()
            startup_tasks.append("database_pool")

            logger.info("Initializing Redis connection")
            await fast_redis.initialize()
            startup_tasks.append("redis")

            logger.info("All services initialized successfully", services=startup_tasks)

        except Exception as e:
            logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

            # Clean up any successfully initialized services in reverse order
            if "redis" in startup_tasks:
                try:
                    await fast_redis.close()
                except Exception as cleanup_error:
                    logger.error("Error cleaning up Redis", error=str(cleanup_error))

            if "database_pool" in startup_tasks:
                try:
                    await db_pool.close()
                except Exception as cleanup_error:
                    logger.error("Error cleaning up database pool", error=str(cleanup_error))

            raise

    yield

    logger.info("Application shutting down")

    shutdown_errors = []

    if "redis" in startup_tasks:
        try:
            logger.info("Closing Redis connection")
            await fast_redis.close()
        except Exception as e:
            logger.error("Error closing Redis", error=str(e))
            shutdown_errors.append(f"Redis: {e}")

    # Close database pool last (may have active connections)
    if "database_pool" in startup_tasks:
        try:
            logger.info("Closing database pool")
            await db_pool.close()
        except Exception as e:
            logger.error("Error closing database pool", error=str(e))
            shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Grooming Scheduler",
    description="Station scheduling for a pet-grooming business",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(scheduling_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
