"""
Telemetry Module
================

Observability for the attribution engine.

Components:
- sentry.py: Error tracking (absorbed order-feed failures, failed cron runs)

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from attribution_engine.telemetry import init_observability, capture_exception
"""

from attribution_engine.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization: {"sentry": True/False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
]
