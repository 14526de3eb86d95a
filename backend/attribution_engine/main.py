"""FastAPI application entrypoint.

Configures logging, error tracking and CORS, includes the tracking router,
and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import tracking as tracking_router
from .telemetry import init_observability
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    app = FastAPI(
        title="Attribution Engine API",
        description="""
        Attributes storefront orders to ad campaigns, ad sets and ads.

        This API provides endpoints for:
        - Backfilling Purchase/Refund events from a store's order history
        - Collecting browser/server touch events
        - Windowed attribution and entity-mapping coverage reports
        - Per-store attribution settings and campaign taxonomy
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-* headers from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()
    status = init_observability()
    logger.info("[STARTUP] Observability: %s (environment=%s)", status, settings.ENVIRONMENT)

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    logger.info("[CORS] Allowed origins: %s", allowed_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(tracking_router.router)
    app.add_exception_handler(RequestValidationError, tracking_router.tracking_validation_handler)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
