"""Comms Engine: Main FastAPI Application.

Multi-tenant delivery of email, SMS, WhatsApp and in-app notifications,
with a durable email queue and timed form reminders.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import api_router
from .core import close_db, get_session_factory, get_settings, init_db
from .core.errors import (
    CommsError,
    NotConfiguredError,
    NotFoundError,
    ProviderError,
    StateConflictError,
    ValidationError,
)
from .core.logging import configure_logging
from .schemas import ErrorResponse
from .services.channels import build_channel_providers
from .services.priority_index import build_priority_index
from .services.queue_processor import QueueProcessor
from .services.realtime import ConnectionDirectory

logger = logging.getLogger(__name__)
settings = get_settings()

ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotConfiguredError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ProviderError: status.HTTP_502_BAD_GATEWAY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    StateConflictError: status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    configure_logging(settings.log_level)
    logger.info(f"Starting {settings.app_name} ({settings.environment})")

    # Startup - skip init_db in production (migrations own the schema)
    if settings.environment != "production":
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")

    providers = build_channel_providers(settings)
    index = build_priority_index(
        settings.redis_url,
        prefix=settings.priority_index_prefix,
        max_connections=settings.redis_max_connections,
    )
    session_factory = get_session_factory()
    processor = QueueProcessor(
        session_factory,
        index,
        providers.email,
        batch_size=settings.queue_batch_size,
        interval_seconds=settings.queue_interval_seconds,
    )

    app.state.channel_providers = providers
    app.state.priority_index = index
    app.state.connection_directory = ConnectionDirectory()
    app.state.session_factory = session_factory
    app.state.queue_processor = processor

    logger.info(f"Channel providers: {providers.status()}")
    if settings.queue_processor_enabled:
        await processor.start()
    yield
    # Shutdown
    await processor.stop()
    app.state.connection_directory.close()
    await index.close()
    await providers.close()
    await close_db()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="""
        ## Comms Engine API

        Outbound communications for every tenant.

        ### Key Features

        - **Email Queue**: Durable, prioritized, scheduled email delivery with retries.
        - **SMS & WhatsApp**: Direct sends with a full delivery audit trail.
        - **Notifications**: In-app inbox with live SSE / WebSocket push and per-user channel preferences.
        - **Reminders**: Timed reminder series for unfinished forms.

        ### Request Context

        Tenant-scoped endpoints require the `X-Tenant-ID` header; inbox
        endpoints also require `X-User-ID`.
        """,
        openapi_url=f"{settings.api_prefix}/openapi.json",
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH", "HEAD"],
        allow_headers=["*"],
        max_age=86400,
    )

    @app.exception_handler(CommsError)
    async def comms_exception_handler(request: Request, exc: CommsError):
        """Map domain errors to HTTP status codes."""
        status_code = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
            status.HTTP_400_BAD_REQUEST,
        )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(error=exc.code, message=str(exc)).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
        message = "An unexpected error occurred"
        if settings.debug or settings.environment != "production":
            message = f"{message}: {str(exc)[:200]}"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(error="internal_error", message=message).model_dump(),
        )

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Health check endpoint."""
        processor = getattr(request.app.state, "queue_processor", None)
        providers = getattr(request.app.state, "channel_providers", None)
        return {
            "status": "healthy",
            "version": settings.app_version,
            "queue_processor": processor.status() if processor else None,
            "providers": providers.status() if providers else None,
        }

    # Include API routes
    app.include_router(api_router, prefix=settings.api_prefix)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "comms_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
