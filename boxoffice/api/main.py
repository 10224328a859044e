"""
Main FastAPI application.

Box office payment API with:
- CORS configuration
- Domain error rendering
- Request ID tracking
- Structured logging
- Prometheus metrics
- The background scheduler (when enabled for this process)
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from boxoffice import __version__
from boxoffice.config import Settings, get_settings
from boxoffice.database.connection import close_db, init_db
from boxoffice.exceptions import BoxOfficeError
from boxoffice.monitoring.logging import setup_logging
from boxoffice.services import ServiceContainer, build_container

from .routes import admin_router, cash_session_router, monitoring_router, payment_router

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Application settings
        container: Pre-built services. When omitted the lifespan builds them
            over the global database engine, creates the tables and closes
            everything on shutdown.

    Returns:
        FastAPI: The application
    """
    settings = settings or (container.settings if container else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            run_scheduler=settings.run_scheduler,
        )

        owns_container = container is None
        if owns_container:
            try:
                await init_db()
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise
            app.state.container = build_container(settings)

        services: ServiceContainer = app.state.container
        if settings.run_scheduler:
            services.scheduler.start()

        yield

        logger.info("application_shutdown")
        await services.scheduler.stop()
        if owns_container:
            await services.dispatcher.close()
            try:
                await close_db()
                logger.info("database_connections_closed")
            except Exception as e:
                logger.error("database_shutdown_error", error=str(e))

    app = FastAPI(
        title="Box Office Payments",
        description=(
            "Checkout payment reconciliation for event ticketing: gateway webhooks, "
            "client verification, pending payment polling, abandoned cart reminders "
            "and counter cash drawers."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    if container is not None:
        app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Add a request ID to every request, with timing and logging context."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(BoxOfficeError)
    async def box_office_error_handler(request: Request, exc: BoxOfficeError) -> JSONResponse:
        """Render domain errors with their own status code."""
        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "request_domain_error",
            error_code=exc.error_code,
            error=exc.message,
            path=request.url.path,
            **exc.context,
        )
        content = exc.to_dict()
        content["request_id"] = getattr(request.state, "request_id", None)
        return JSONResponse(status_code=exc.http_status, content=content)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                },
                "request_id": getattr(request.state, "request_id", None),
            },
        )

    app.include_router(payment_router)
    app.include_router(admin_router)
    app.include_router(cash_session_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
