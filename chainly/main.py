"""FastAPI application entry point.

This module initializes the FastAPI application with all routes,
middleware, and lifecycle handlers.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from redis.asyncio import Redis

from chainly.api.deps import dispose_db, init_db
from chainly.api.routes import executions_router, oauth_router, webhooks_router, workflows_router
from chainly.celery_app import celery_app
from chainly.config import settings
from chainly.core.encryption import EncryptionKeyError, derive_key
from chainly.core.rate_limit import RateLimiter
from chainly.core.realtime import get_status_publisher, relay_status_events
from chainly.log import configure_logging
from chainly.nodes.registry import get_executor_registry
from chainly.services.execution_service import CeleryWorkflowQueue

configure_logging()

logger = structlog.get_logger()


def _log_relay_exit(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error(
            "status_relay_stopped",
            error_type=type(task.exception()).__name__,
            error=str(task.exception()),
        )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_starting",
        host=settings.host,
        port=settings.port,
        debug=settings.debug,
        log_level=settings.log_level,
    )

    # Validate critical configuration
    try:
        derive_key(settings.encryption_key.get_secret_value())
        logger.info(
            "encryption_key_validated",
            encryption_key=settings.secret_status("encryption_key"),
            google_client_id=settings.secret_status("google_client_id"),
        )
    except EncryptionKeyError as e:
        logger.error("encryption_key_invalid", error=str(e))
        raise

    # Fails startup when a node type has no executor
    registry = get_executor_registry()
    logger.info("executor_registry_loaded", node_types=len(registry))

    if settings.debug:
        await init_db()

    publisher = get_status_publisher()
    redis = Redis.from_url(settings.redis_url)

    app.state.rate_limiter = RateLimiter(
        limit=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
        max_keys=settings.rate_limit_max_keys,
    )
    app.state.status_publisher = publisher
    app.state.workflow_queue = CeleryWorkflowQueue(celery_app)
    relay = asyncio.create_task(relay_status_events(redis, publisher))
    relay.add_done_callback(_log_relay_exit)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    relay.cancel()
    await asyncio.gather(relay, return_exceptions=True)
    await redis.aclose()
    await dispose_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Chainly",
        description="Workflow automation engine with durable, observable executions",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register API routes
    app.include_router(
        workflows_router,
        prefix="/api/v1/workflows",
        tags=["workflows"],
    )
    app.include_router(
        executions_router,
        prefix="/api/v1/executions",
        tags=["executions"],
    )
    app.include_router(
        webhooks_router,
        prefix="/api/webhooks",
        tags=["webhooks"],
    )
    app.include_router(
        oauth_router,
        prefix="/api/oauth",
        tags=["oauth"],
    )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions.

        Never expose internal error details in production.
        """
        logger.exception(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )

        if settings.debug:
            detail = str(exc)
        else:
            detail = "An internal error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": detail, "error_type": "internal_error"},
        )

    # Health check endpoint
    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for load balancers and monitoring."""
        return {"status": "healthy", "version": "0.1.0"}

    # Instrument with OpenTelemetry
    FastAPIInstrumentor.instrument_app(app)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chainly.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
