"""FitPlatform Commerce: FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.api.errors import register_exception_handlers
from app.api.v1.audit import router as audit_router
from app.api.v1.programs import router as programs_router
from app.api.v1.purchases import router as purchases_router
from app.api.v1.subscriptions import router as subscriptions_router
from app.api.v1.webhooks import router as webhooks_router
from app.billing.catalog import get_catalog
from app.billing.exceptions import ConfigurationMissing
from app.billing.scheduler import init_scheduler, shutdown_scheduler
from app.config import settings
from app.database import engine

# Configure root logger so all app.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


async def wait_for_database(retries: int | None = None, delay: float | None = None) -> None:
    """Block until the database answers ``SELECT 1``.

    Raises the last connection error after ``retries`` failed attempts, which
    aborts startup with a non-zero exit.
    """
    retries = retries or settings.db_startup_retries
    delay = settings.db_startup_retry_delay_seconds if delay is None else delay
    for attempt in range(1, retries + 1):
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return
        except (SQLAlchemyError, OSError) as e:
            if attempt == retries:
                logger.error("Database unreachable after %d attempts: %s", retries, e)
                raise
            logger.warning("Database not ready (attempt %d/%d): %s", attempt, retries, e)
            await asyncio.sleep(delay * attempt)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    # Startup
    missing = settings.missing_commerce_settings
    if missing:
        if settings.environment == "production":
            raise ConfigurationMissing(f"Missing required settings: {', '.join(missing)}")
        logger.warning("Commerce routes disabled until configured: %s", ", ".join(missing))

    await wait_for_database()
    get_catalog()
    if settings.scheduler_enabled:
        init_scheduler()

    yield

    # Shutdown: stop jobs, then dispose engine connections
    shutdown_scheduler()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Subscriptions, program purchases and entitlements for FitPlatform.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

register_exception_handlers(app)

# Routers
app.include_router(subscriptions_router)
app.include_router(programs_router)
app.include_router(purchases_router)
app.include_router(webhooks_router)
app.include_router(audit_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": settings.app_name,
        "billingEnvironment": settings.billing_environment,
    }


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.host, port=settings.port)
