"""
Relay - FastAPI Application

Startup builds the FetchPipeline from settings (pre-warming the pool when
PROXY_URL is set); shutdown disposes every pooled engine. uvicorn turns
SIGINT/SIGTERM into the lifespan shutdown.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse

from .api import router
from .core.config import settings
from .core.logger import setup_logging
from .services.relay import (
    AuthenticationError,
    FetchPipeline,
    RelayException,
    RelayInternalError,
    RelayValidationError,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()

    if settings.API_KEY is None:
        logger.warning("API_KEY is not set: x-api-key authentication is disabled")

    pipeline = FetchPipeline.from_settings(settings)
    app.state.pipeline = pipeline
    await pipeline.start()
    logger.info(f"{settings.APP_NAME} ready on {settings.HOST}:{settings.PORT} ({pipeline.mode} mode)")

    try:
        yield
    finally:
        await pipeline.shutdown()


# =============================================================================
# Exception handlers (plain-text bodies)
# =============================================================================


async def authentication_error_handler(request: Request, exc: AuthenticationError) -> PlainTextResponse:
    return PlainTextResponse("Unauthorized", status_code=403)


async def relay_validation_error_handler(request: Request, exc: RelayValidationError) -> PlainTextResponse:
    return PlainTextResponse(exc.message, status_code=400)


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> PlainTextResponse:
    errors = exc.errors()
    if not errors:
        return PlainTextResponse("Invalid request", status_code=400)

    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid value")
    return PlainTextResponse(f"Invalid request: {location}: {message}" if location else message, status_code=400)


async def relay_internal_error_handler(request: Request, exc: RelayInternalError) -> PlainTextResponse:
    return PlainTextResponse(exc.message, status_code=500)


async def relay_error_handler(request: Request, exc: RelayException) -> PlainTextResponse:
    logger.warning(f"Fetch failed: {exc}")
    return PlainTextResponse(str(exc), status_code=500)


def create_application() -> FastAPI:
    application = FastAPI(
        title=settings.APP_NAME,
        description=settings.APP_DESCRIPTION,
        version=settings.APP_VERSION or "0.1.0",
        lifespan=lifespan,
    )
    application.include_router(router)

    application.add_exception_handler(AuthenticationError, authentication_error_handler)
    application.add_exception_handler(RelayValidationError, relay_validation_error_handler)
    application.add_exception_handler(RequestValidationError, request_validation_error_handler)
    application.add_exception_handler(RelayInternalError, relay_internal_error_handler)
    application.add_exception_handler(RelayException, relay_error_handler)
    return application


app = create_application()


def run() -> None:
    """Console entry point (relay-server)."""
    uvicorn.run(
        "src.app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        loop="auto",
        log_level=settings.LOG_LEVEL.lower(),
    )
