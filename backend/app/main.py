"""
FastAPI application entry point with application factory pattern.
"""
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.database import engine, Base, run_with_retry
from app.core.exceptions import ABTestNotFound, InvalidConfiguration, InvalidStateTransition
from app.core.sentry import init_sentry, capture_exception
from app.api.health import router as health_router
from app.services.ab_testing.ab_test_manager import ABTestManager

# Setup logging
setup_logging()
logger = get_logger(__name__)

if init_sentry(dsn=settings.SENTRY_DSN):
    logger.info("Sentry error tracking initialized")


async def auto_conclusion_sweep(interval_seconds: float) -> None:
    """Periodically conclude running tests whose stopping rule is met."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            checked, concluded = await run_with_retry(ABTestManager.sweep_running_tests)
            if concluded:
                logger.info(f"Sweep concluded A/B tests {sorted(concluded)} ({checked} checked)")
        except Exception as e:
            capture_exception(e)
            logger.error(f"Auto-conclusion sweep failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan events.
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    # Create database tables (in production, use migrations)
    if settings.ENVIRONMENT == "local":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    sweep_task = None
    if settings.AB_SWEEP_ENABLED:
        sweep_task = asyncio.create_task(auto_conclusion_sweep(settings.AB_SWEEP_INTERVAL_SECONDS))
        logger.info(f"Started A/B auto-conclusion sweep every {settings.AB_SWEEP_INTERVAL_SECONDS}s")

    yield

    logger.info("Shutting down application")
    if sweep_task:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped A/B auto-conclusion sweep")

    await engine.dispose()


def register_exception_handlers(app: FastAPI) -> None:
    """Map engine errors to HTTP responses."""

    @app.exception_handler(InvalidConfiguration)
    async def invalid_configuration_handler(request: Request, exc: InvalidConfiguration):
        logger.warning(f"Invalid A/B test configuration: {exc}", extra={"request": {"path": request.url.path}})
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ABTestNotFound)
    async def not_found_handler(request: Request, exc: ABTestNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidStateTransition)
    async def invalid_transition_handler(request: Request, exc: InvalidStateTransition):
        logger.warning(str(exc), extra={"request": {"path": request.url.path}})
        return JSONResponse(
            status_code=409,
            content={
                "detail": str(exc),
                "status": exc.current_status.value,
                "operation": exc.operation,
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        capture_exception(exc)
        logger.error(
            f"Unhandled exception: {exc}",
            exc_info=exc,
            extra={"request": {"path": request.url.path, "method": request.method}},
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )


def create_app() -> FastAPI:
    """
    Application factory function.
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="A/B testing engine for the AUTO ANI dealership website",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
            "api_v1": settings.API_V1_PREFIX,
        }

    app.include_router(health_router, tags=["Health"])

    from app.api.v1 import ab_test_router, metrics_router

    # Metrics endpoint stays outside the versioned prefix
    app.include_router(metrics_router)
    app.include_router(ab_test_router, prefix=settings.API_V1_PREFIX)

    from app.middleware.logging import LoggingMiddleware
    from app.middleware.metrics import MetricsMiddleware

    if settings.ENABLE_METRICS:
        app.add_middleware(MetricsMiddleware)

    app.add_middleware(LoggingMiddleware)

    return app


# Create app instance
app = create_app()
