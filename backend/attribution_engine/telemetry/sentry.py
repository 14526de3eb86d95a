"""
Sentry Error Tracking
=====================

Centralized error tracking using Sentry.

Related files:
- attribution_engine/main.py: Initializes Sentry on app startup
- attribution_engine/services/backfill_service.py: Reports absorbed upstream failures
- attribution_engine/workers/arq_worker.py: Reports failed scheduled backfills

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import os
import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)


def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable.

    Returns:
        DSN string if configured, None otherwise.
    """
    return os.environ.get("SENTRY_DSN") or None


def init_sentry() -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Should be called once during application startup.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.
    """
    dsn = get_sentry_dsn()
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(
                    transaction_style="endpoint",  # Use route paths as transaction names
                ),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,  # Emails are hashed before storage; never ship raw PII
            release=os.environ.get("RELEASE_VERSION"),
        )

        logger.debug("[SENTRY] Initialized for %s environment", environment)
        return True

    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled but should still
    be tracked, e.g. an order-feed page failure absorbed by a backfill.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event
    """
    if not sentry_sdk.is_initialized():
        logger.error("Exception (Sentry disabled): %s", exception)
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message to Sentry.

    Args:
        message: The message to capture
        level: Severity level (debug, info, warning, error, fatal)
        extra: Additional context to attach
    """
    if not sentry_sdk.is_initialized():
        logger.log(
            logging.getLevelName(level.upper()),
            "Message (Sentry disabled): %s", message,
        )
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture message: %s", e)
