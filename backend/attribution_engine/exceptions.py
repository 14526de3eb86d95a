"""
Attribution Engine Exceptions
=============================

Custom exception types for backfill and reporting operations.

WHY THIS FILE EXISTS
--------------------
Backfills fail in a few distinct ways, and each one is handled differently:
- Bad input (storeId, window, days) surfaces immediately as HTTP 400
- A missing or unusable storefront credential surfaces as HTTP 401
- A page fetch failing mid-run is absorbed: the loop stops and the caller
  still gets a partial summary

Malformed marketing signals are NOT errors. Extraction degrades to None.

RELATED FILES
-------------
- attribution_engine/routers/tracking.py: Maps these to HTTP status codes
- attribution_engine/services/backfill_service.py: Raises and absorbs them
- attribution_engine/services/shopify_client.py: Raises ShopifyAPIError
"""

from typing import Optional


class AttributionEngineError(Exception):
    """
    Base exception for all attribution engine errors.

    WHAT:
        Parent class for every error this package raises on purpose.

    WHY:
        Routers can catch the whole family with one except clause while
        still mapping specific types to specific status codes.
    """

    status_code = 500

    def __init__(self, message: str, store_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.store_id = store_id

    def to_user_message(self) -> str:
        """Convert to a message suitable for an API `detail` field."""
        return self.message


class ValidationError(AttributionEngineError):
    """Missing or invalid caller input (storeId, window, days)."""

    status_code = 400


class AuthError(AttributionEngineError):
    """
    No valid upstream credential for the store.

    WHAT:
        Raised when the store has no Shopify connection, no shop domain,
        no stored token, or a token that cannot be decrypted.
    """

    status_code = 401


class UpstreamPaginationError(AttributionEngineError):
    """
    A page fetch failed mid-run.

    WHAT:
        Carries the cursor and page number at which the feed failed.

    WHY:
        The backfill driver catches this, stops paginating, and reports it in
        the summary. Already-committed upserts stay durable.
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        store_id: Optional[str] = None,
        since_id: Optional[int] = None,
        page: Optional[int] = None,
    ):
        super().__init__(message, store_id=store_id)
        self.since_id = since_id
        self.page = page

    def to_user_message(self) -> str:
        return f"Order feed failed on page {self.page} (since_id={self.since_id}): {self.message}"
