"""
FastAPI host for the quote lifecycle engine.

Owns the database pool and the quote expiration scheduler for the
lifetime of the process.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.features.quotes.jobs import build_quote_expiration_scheduler
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.routes import health

setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    app.state.quote_expiration_scheduler = None

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
    except Exception as e:
        logger.error("Failed to initialize database pool", error=str(e))
        raise

    if settings.QUOTE_SWEEP_ENABLED:
        scheduler = build_quote_expiration_scheduler()
        scheduler.start()
        app.state.quote_expiration_scheduler = scheduler
        logger.info("Quote expiration scheduler started", interval_seconds=scheduler.interval_seconds)
    else:
        logger.info("Quote expiration sweep disabled")

    yield

    logger.info("Application shutting down")

    shutdown_errors = []

    # Stop the scheduler first; an in-flight sweep still needs the pool
    scheduler = app.state.quote_expiration_scheduler
    if scheduler is not None:
        try:
            await scheduler.stop()
        except Exception as e:
            logger.error("Error stopping quote expiration scheduler", error=str(e))
            shutdown_errors.append(f"Scheduler: {e}")

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
    title="Quote Lifecycle Engine",
    description="Quote lifecycle transitions, expiration sweep and notification fan-out",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
