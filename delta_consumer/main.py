"""FastAPI application entry point."""

from __future__ import annotations

import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from delta_consumer.api.health import VERSION
from delta_consumer.api.health import router as health_router
from delta_consumer.api.jobs import router as jobs_router
from delta_consumer.config import Settings
from delta_consumer.exceptions import ProducerError, StoreError
from delta_consumer.services.consumer_service import Consumer

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.INFO if debug else logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    _configure_logging(settings.debug)
    settings.validate_runtime()
    logger.info("Starting %s (debug=%s)", settings.service_name, settings.debug)

    consumer: Consumer | None = getattr(app.state, "consumer", None)
    if consumer is None:
        try:
            consumer = Consumer.build(settings)
        except Exception as exc:
            logger.critical("Failed to initialize the consumer: %s", exc)
            raise
        app.state.consumer = consumer

    try:
        await consumer.recover()
    except StoreError as exc:
        logger.critical("Failed to fail hanging jobs at startup: %s. Is the store reachable?", exc)
        raise

    consumer.start()

    yield

    try:
        await consumer.stop()
    except Exception as exc:
        logger.error("Error during consumer shutdown: %s", exc, exc_info=True)

    logger.info("%s stopped", settings.service_name)


def create_app(settings: Settings | None = None, consumer: Consumer | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    A prebuilt ``consumer`` replaces the one the lifespan would build from
    ``settings``.
    """
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="Delta consumer",
        description="Consumes a producer's delta files into a triple store",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings
    if consumer is not None:
        app.state.consumer = consumer

    app.include_router(health_router)
    app.include_router(jobs_router)

    # ── Error responses ──────────────────────────────────────────────

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        problems = [
            {
                "field": str(err["loc"][-1]) if err.get("loc") else "unknown",
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, problems)
        return JSONResponse(status_code=422, content={"detail": problems})

    for exc_type, status_code, detail in _ERROR_RESPONSES:
        app.add_exception_handler(exc_type, _error_handler(status_code, detail))

    return app


# Exception type, HTTP status, response detail (None echoes the message)
_ERROR_RESPONSES: list[tuple[type[Exception], int, str | None]] = [
    (StoreError, 503, "Triple store temporarily unavailable"),
    (ProducerError, 502, "Producer unavailable"),
    (json.JSONDecodeError, 502, "Malformed data received"),
    (ValueError, 422, None),
]


def _error_handler(
    status_code: int, detail: str | None
) -> Callable[[Request, Exception], Awaitable[JSONResponse]]:
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "%s while serving %s %s: %s",
            type(exc).__name__,
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=status_code, content={"detail": detail or str(exc) or "Invalid value"}
        )

    return handler


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "delta_consumer.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
