"""EventRelay application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from eventrelay import __version__
from eventrelay.api.router import api_router
from eventrelay.config import Settings, get_settings
from eventrelay.crypto import EncryptionError
from eventrelay.db.session import close_engine
from eventrelay.metrics import MetricsMiddleware
from eventrelay.middleware import RequestLoggingMiddleware
from eventrelay.ratelimit import RateLimitExceeded
from eventrelay.webhook.url_validator import URLValidationError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info(
        f"EventRelay API {__version__} starting (instance: {settings.instance_id}, "
        f"max attempts: {settings.webhook_max_attempts})"
    )
    yield
    await close_engine()


async def url_validation_error_handler(request: Request, exc: URLValidationError) -> JSONResponse:
    """Unsafe or malformed subscription URLs are the caller's error."""
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Over-budget manual retries, with the window's remaining time."""
    result = exc.result
    logger.warning(f"Rate limited {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": "Too many retry requests"},
        headers={
            "Retry-After": str(result.retry_after),
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
        },
    )


async def encryption_error_handler(request: Request, exc: EncryptionError) -> JSONResponse:
    """The secret store is misconfigured; never echo key details to the client."""
    logger.error(f"Secret encryption failed on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Webhook secret store unavailable"},
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Optional settings override for testing. If not provided,
                  default settings will be loaded from environment.
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="EventRelay",
        description="Multi-tenant webhook outbox and background job service",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_exception_handler(URLValidationError, url_validation_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(EncryptionError, encryption_error_handler)

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    if settings.cors_origins:
        # Credentials are never combined with a wildcard origin
        allow_credentials = "*" not in settings.cors_origins
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=allow_credentials,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(api_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
