"""Storymeter API - usage metering and quota enforcement for AI story generation."""

import asyncio
import contextlib
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from storymeter.config import settings
from storymeter.database import close_database, get_db_context, init_database
from storymeter.exceptions import ProviderConfigurationError
from storymeter.log_config import configure_logging, init_sentry
from storymeter.middleware.auth import AuthMiddleware
from storymeter.middleware.rate_limit import (
    RATE_LIMIT_HEALTH,
    build_chat_rate_limiter,
    close_redis_client,
    get_redis_client,
    limiter,
)
from storymeter.providers import build_text_generator
from storymeter.routes import ai, subscription, usage, webhooks
from storymeter.services.quota import reset_monthly_usage

logger = structlog.get_logger()


async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return a generic 500 and log the details under an error id."""
    error_id = str(uuid.uuid4())[:8]
    logger.exception(
        "Unhandled exception",
        error_id=error_id,
        path=str(request.url.path),
        method=request.method,
        exc_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred. Please try again later.",
            "error_id": error_id,
        },
    )


class _BackgroundTasks:
    """Container for background tasks to avoid global statement."""

    usage_reset: asyncio.Task[None] | None = None


_tasks = _BackgroundTasks()


def _task_exception_callback(task: asyncio.Task[None], task_name: str) -> None:
    """Log exceptions from background tasks as soon as they finish."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed with exception",
            task_name=task_name,
            exc_info=exc,
        )


def create_monitored_task(coro: Any, name: str) -> asyncio.Task[None]:
    """Create an asyncio task with exception monitoring.

    Args:
        coro: The coroutine to run
        name: Name for logging purposes

    Returns:
        The created task with exception callback attached
    """
    task = asyncio.create_task(coro)
    task.add_done_callback(lambda t: _task_exception_callback(t, name))
    return task


async def usage_reset_background_task(interval_seconds: float | None = None) -> None:
    """Periodically start a new usage cycle for users still on last month's.

    The quota check also resets lazily, so this only keeps idle accounts and
    the usage endpoints current.
    """
    interval = interval_seconds or settings.USAGE_RESET_INTERVAL_SECONDS
    while True:
        try:
            async with get_db_context() as db:
                reset_count = await reset_monthly_usage(db)
                if reset_count > 0:
                    logger.info("Reset monthly usage", count=reset_count)
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Usage reset task cancelled")
            break
        except Exception as e:
            logger.exception("Error in usage reset task", error=str(e))
            await asyncio.sleep(60)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    init_sentry(
        "storymeter",
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=f"storymeter@{settings.VERSION}",
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )
    configure_logging("storymeter", settings.LOG_LEVEL, settings.LOG_JSON)
    logger.info("Starting Storymeter API", version=settings.VERSION)

    await init_database()

    http_client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_DEFAULT)
    try:
        app.state.text_generator = build_text_generator(settings, http_client)
        logger.info("AI provider configured", provider=settings.AI_PROVIDER)
    except ProviderConfigurationError as e:
        app.state.text_generator = None
        logger.warning("AI provider not configured, AI routes will fail", error=str(e))

    if settings.USAGE_RESET_TASK_ENABLED:
        _tasks.usage_reset = create_monitored_task(usage_reset_background_task(), "usage_reset")
        logger.info("Usage reset background task started")

    yield

    logger.info("Shutting down Storymeter API")
    if _tasks.usage_reset:
        _tasks.usage_reset.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _tasks.usage_reset
        _tasks.usage_reset = None
        logger.info("Usage reset background task stopped")

    await http_client.aclose()
    await close_database()
    await close_redis_client()


OPENAPI_TAGS = [
    {"name": "ai", "description": "Metered AI generation"},
    {"name": "subscription", "description": "Plans, subscription status and cancellation"},
    {"name": "usage", "description": "Token and image usage"},
    {"name": "webhooks", "description": "Payment provider webhooks"},
]


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(
        title="Storymeter API",
        description="Usage metering, quota enforcement and rate limiting for AI story generation.",
        version=settings.VERSION,
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
        openapi_tags=OPENAPI_TAGS,
        lifespan=lifespan,
    )

    app.state.limiter = limiter
    app.state.chat_rate_limiter = build_chat_rate_limiter(get_redis_client())
    app.state.text_generator = None

    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _global_exception_handler)

    app.add_middleware(AuthMiddleware)

    @app.get("/health")
    @limiter.limit(RATE_LIMIT_HEALTH)
    async def health_check(request: Request, response: Response) -> dict[str, str]:
        return {"status": "healthy", "version": settings.VERSION}

    api = APIRouter(prefix="/api")
    api.include_router(subscription.router)
    api.include_router(webhooks.router)
    api.include_router(usage.router)
    api.include_router(ai.router)
    app.include_router(api)

    return app


app = create_app()
