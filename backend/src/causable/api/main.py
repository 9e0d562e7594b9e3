"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from causable.api.sse.broadcaster import EventBroadcaster
from causable.api.sse.change_source import (
    ChangeSource,
    DirectChangeSource,
    PostgresChangeSource,
    listen_dsn,
)
from causable.api.sse.registry import SessionRegistry
from causable.core.auth import ApiKeyAuth
from causable.core.config import Settings, settings
from causable.core.exceptions import CausableError
from causable.core.logging_config import configure_logging
from causable.core.middleware import RequestLoggingMiddleware
from causable.core.rate_limit import RateLimiter

logger = structlog.get_logger()


def build_change_source(broadcaster: EventBroadcaster, app_settings: Settings) -> ChangeSource:
    if app_settings.change_source == "postgres":
        return PostgresChangeSource(
            broadcaster,
            listen_dsn(app_settings.database_url),
            channel=app_settings.notify_channel,
            max_attempts=app_settings.listen_max_attempts,
            base_delay=app_settings.listen_retry_base_delay,
            max_delay=app_settings.listen_retry_max_delay,
        )
    return DirectChangeSource(broadcaster)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the change source before serving; close every stream on shutdown."""
    change_source: ChangeSource = app.state.change_source
    await change_source.start()
    logger.info(
        "app_started",
        change_source=change_source.status,
        stream_auth_required=app.state.settings.stream_auth_required,
    )
    yield
    closed = app.state.session_registry.close_all()
    await change_source.stop()
    app.state.broadcaster.close()
    logger.info("app_stopped", streams_closed=closed)


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app_settings = app_settings or settings
    configure_logging(json_logs=not app_settings.debug)

    app = FastAPI(
        title=app_settings.app_name,
        version="0.1.0",
        docs_url="/api/docs" if app_settings.debug else None,
        redoc_url="/api/redoc" if app_settings.debug else None,
        lifespan=lifespan,
    )

    # One broadcaster per process, injected into everything that needs it
    broadcaster = EventBroadcaster()
    app.state.settings = app_settings
    app.state.broadcaster = broadcaster
    app.state.change_source = build_change_source(broadcaster, app_settings)
    app.state.session_registry = SessionRegistry(
        broadcaster,
        keep_alive_interval=app_settings.stream_keep_alive_seconds,
        max_queue_size=app_settings.stream_queue_max_size,
    )
    app.state.auth = ApiKeyAuth(app_settings.api_key_set())
    app.state.rate_limiter = RateLimiter(
        window_seconds=app_settings.rate_limit_window_seconds,
        max_requests=app_settings.rate_limit_max_requests,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_allow_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Exception handlers --
    @app.exception_handler(CausableError)
    async def causable_error_handler(_request: Request, exc: CausableError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": exc.code,
                "message": exc.message,
                "detail": exc.detail,
            },
            headers=exc.headers,
        )

    # -- Routes --
    from causable.api.routes.health import router as health_router
    from causable.api.routes.spans import router as spans_router
    from causable.api.routes.stream import router as stream_router

    app.include_router(health_router)
    app.include_router(spans_router)
    app.include_router(stream_router)

    return app


app = create_app()
