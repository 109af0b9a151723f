from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from backend.src.api.database import async_session_factory, engine
from backend.src.api.routes import limiter, register_exception_handlers, router
from backend.src.config import settings
from backend.src.container import build_services
from backend.src.contracts.models import Base
from backend.src.scheduler.scheduler import PriceCheckScheduler

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        structlog.get_config().get("min_level", 0),
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    logger.info("starting_up", cors_origins=settings.cors_origin_list)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_ready")

    services = build_services(settings, async_session_factory)
    app.state.services = services

    scheduler: PriceCheckScheduler | None = None
    if settings.scheduled_checks_enabled:
        scheduler = PriceCheckScheduler(services.price_service, settings)
        scheduler.start()
        logger.info("scheduler_started")

    yield

    # Shutdown
    if scheduler is not None:
        await scheduler.stop()
        logger.info("scheduler_stopped")

    await services.aclose()
    logger.info("notifications_drained")

    await engine.dispose()
    logger.info("shutdown_complete")


app = FastAPI(
    title="PriceWatch API",
    description="Retail price tracking and alerting",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
