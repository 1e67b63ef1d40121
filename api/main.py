"""
Main FastAPI application for the LeadFlow WhatsApp agent.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routes import analytics, conversations, leads, scheduled, webhooks
from .services import get_services, initialize_services
from .middleware.metrics import MetricsMiddleware, metrics_endpoint
from config.settings import get_settings
from database.session import close_db, init_db

logger = logging.getLogger(__name__)


async def _periodic(name: str, interval_minutes: int, job: Callable[[], Awaitable]):
    """Run a sweep every interval; a failing run is logged and retried next tick."""
    interval = max(interval_minutes, 1) * 60
    while True:
        await asyncio.sleep(interval)
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Background job {name} failed")


def _start_sweeps() -> List[asyncio.Task]:
    settings = get_settings()
    services = get_services()
    jobs = [
        ("reminders_day_before", settings.reminder_daily_interval_minutes, services.reminders.run_day_before),
        ("reminders_hour_before", settings.reminder_sweep_interval_minutes, services.reminders.run_hour_before),
        ("idle_cleanup", settings.cleanup_interval_minutes, services.cleanup.run),
        ("analytics", settings.analytics_interval_minutes, services.aggregator.recompute),
    ]
    return [
        asyncio.create_task(_periodic(name, minutes, job), name=name)
        for name, minutes, job in jobs
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(f"{settings.brand_name} agent starting up...")

    try:
        session_factory = await init_db(settings.database_url)
    except Exception as e:
        logger.error(f"Database init failed: {e}")
        raise

    initialize_services(session_factory)

    tasks: List[asyncio.Task] = []
    if settings.enable_background_sweeps:
        tasks = _start_sweeps()
        logger.info(f"Started {len(tasks)} background sweeps")

    logger.info(f"{settings.brand_name} agent ready")
    yield
    logger.info(f"{settings.brand_name} agent shutting down...")

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    await close_db()
    get_services().reset()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.api_title,
        description="AI-driven WhatsApp lead qualification with meeting booking, reminders and analytics.",
        version=settings.api_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Prometheus metrics middleware
    app.add_middleware(MetricsMiddleware)

    # --- Transport webhook (path registered with Meta) ---
    app.include_router(webhooks.router, tags=["Webhooks"])

    # --- Admin ---
    app.include_router(conversations.router, prefix="/api/v1", tags=["Conversations"])
    app.include_router(scheduled.router, prefix="/api/v1", tags=["Scheduled"])
    app.include_router(analytics.router, prefix="/api/v1", tags=["Analytics"])
    app.include_router(leads.router, prefix="/api/v1", tags=["Leads"])

    # --- Prometheus metrics endpoint ---
    app.get("/metrics", tags=["Monitoring"])(metrics_endpoint)

    # Root endpoint
    @app.get("/")
    async def root():
        return {
            "service": f"{settings.brand_name} WhatsApp Agent",
            "version": settings.api_version,
            "status": "operational",
            "docs": "/docs",
        }

    # Health check
    @app.get("/health")
    async def health():
        services = get_services()
        return {
            "status": "healthy" if services.is_ready else "degraded",
            "services": services.health(),
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
