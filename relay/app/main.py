from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from relay.app.api.metrics import MetricsCollector, MetricsMiddleware, router as metrics_router
from relay.app.api.relay import router as relay_router
from relay.app.core.config import Settings, settings as default_settings
from relay.app.core.http_client import init_http_client
from relay.app.core.logging import get_logger, setup_logging
from relay.app.exceptions import AdmissionDeniedError, RelayException, ResponseAbortedError
from relay.app.middleware.cors import CORSHeaderMiddleware
from relay.app.services.admission import AdmissionController
from relay.app.services.cors import CORSInjector
from relay.app.services.policy import PolicyValidator
from relay.app.services.public_address import resolve_public_address
from relay.app.services.reaper import StateReaper
from relay.app.services.scheduler import DelayScheduler
from relay.app.services.stream_relay import StreamRelay


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        app_settings: Settings to use instead of the environment-loaded ones

    Returns:
        Configured FastAPI application instance
    """
    app_settings = app_settings or default_settings

    setup_logging(app_settings)
    logger = get_logger(__name__)

    scheduler = DelayScheduler()
    admission = AdmissionController(
        max_concurrent_per_ip=app_settings.max_simultaneous_requests_per_ip,
        delay_increment_ms=app_settings.increment_delay_ms,
        enabled=app_settings.enable_rate_limiting,
        scheduler=scheduler,
    )
    reaper = StateReaper(
        admission,
        interval=app_settings.reaper_interval_seconds,
        retention=app_settings.client_retention_seconds,
    )
    cors = CORSInjector()
    metrics = MetricsCollector()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[dict, None]:
        """Application lifespan context manager.

        Opens the shared upstream client and starts the state reaper on
        startup; stops the reaper and closes the client on shutdown.
        """
        async with init_http_client(app_settings) as http_client:
            public_address = await resolve_public_address(http_client, app_settings)
            app.state.public_address = public_address

            stream_relay = StreamRelay(
                http_client,
                max_body_bytes=app_settings.max_request_length,
                public_address=public_address,
            )

            await reaper.start()

            logger.info(
                "Application startup complete",
                extra={
                    "route_prefix": app_settings.route_prefix,
                    "rate_limiting": app_settings.enable_rate_limiting,
                    "public_address": public_address or None,
                },
            )

            try:
                yield {"http_client": http_client, "stream_relay": stream_relay}
            finally:
                await reaper.stop()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="CORS Relay",
        description="Public forwarding proxy that adds CORS headers, with per-client admission control",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = app_settings
    app.state.validator = PolicyValidator.from_settings(app_settings)
    app.state.scheduler = scheduler
    app.state.admission = admission
    app.state.reaper = reaper
    app.state.cors = cors
    app.state.metrics = metrics
    app.state.public_address = app_settings.public_address

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware, collector=metrics)
    app.add_middleware(CORSHeaderMiddleware, injector=cors)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Liveness plus a snapshot of admission state."""
        return {
            "status": "ok",
            "admission": admission.get_stats(),
            "reaper_running": reaper.running,
            "public_address": app.state.public_address or None,
        }

    # Service routes first: the catch-all below would match them otherwise
    app.include_router(metrics_router)
    app.include_router(relay_router, prefix=app_settings.router_prefix)

    @app.exception_handler(RelayException)
    async def relay_exception_handler(request: Request, exc: RelayException) -> JSONResponse:
        """Translate a RelayException into its terminal JSON response."""
        await metrics.record_rejection(exc.error_code)

        if isinstance(exc, AdmissionDeniedError):
            logger.warning(f"Admission denied for {exc.client_ip}")
        elif exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.error_code}")

        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error_code, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Full details are logged server-side; the client gets a generic body,
        with the exception message only in debug mode.
        """
        if isinstance(exc, ResponseAbortedError):
            # Headers are already sent, so this body is never delivered
            logger.warning(f"Response for {request.url.path} aborted: {exc}")
            return JSONResponse(
                status_code=500,
                content={"error": "response_aborted", "message": str(exc)},
            )

        logger.exception(
            "Unhandled exception",
            extra={
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
            },
        )

        if app_settings.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                },
            )

        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "Internal server error"},
        )

    return app


# Create the application instance
app = create_app()
