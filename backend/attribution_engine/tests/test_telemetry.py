"""Tests for Sentry wiring when no DSN is configured."""

import logging

from attribution_engine.telemetry import capture_exception, capture_message, init_observability


def test_observability_disabled_without_dsn(monkeypatch):
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    assert init_observability() == {"sentry": False}


def test_capture_falls_back_to_logging(caplog):
    with caplog.at_level(logging.INFO, logger="attribution_engine.telemetry.sentry"):
        capture_exception(RuntimeError("page failed"), extra={"page": 2})
        capture_message("Scheduled backfill had failing stores", level="warning")

    messages = [record.getMessage() for record in caplog.records]
    assert "Exception (Sentry disabled): page failed" in messages
    assert "Message (Sentry disabled): Scheduled backfill had failing stores" in messages
