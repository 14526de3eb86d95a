"""Shopify REST Admin order feed client.

WHAT:
    Minimal wrapper around `GET /admin/api/{version}/orders.json` with:
    - Authentication handling
    - Retry on 429 (honouring Retry-After) and transient network errors
    - Cursor pagination via since_id

WHY:
    The backfill driver only needs one page at a time, in order, so this is a
    blocking client: each page's cursor depends on the previous page's last
    order id.

REFERENCES:
    - Shopify REST Order resource: https://shopify.dev/docs/api/admin-rest/latest/resources/order
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from attribution_engine.deps import get_settings

logger = logging.getLogger(__name__)

# Default API version
DEFAULT_API_VERSION = "2024-07"


class ShopifyAPIError(Exception):
    """Custom exception for Shopify API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


def _retry_after_seconds(raw: Optional[str], default: float = 2.0) -> float:
    """Retry-After in seconds; HTTP-date or garbage values use the default."""
    if raw is None:
        return default
    try:
        seconds = float(raw)
    except ValueError:
        return default
    return seconds if seconds >= 0 else default


def _json_object(response: httpx.Response) -> Dict[str, Any]:
    """Decode a JSON object body.

    Raises:
        ShopifyAPIError: Body is not JSON, or not a JSON object
    """
    try:
        data = response.json()
    except ValueError as e:
        raise ShopifyAPIError(
            f"Shopify returned a non-JSON body: {response.text[:200]}",
            status_code=response.status_code,
        ) from e
    if not isinstance(data, dict):
        raise ShopifyAPIError("Shopify returned an unexpected JSON payload", status_code=response.status_code)
    return data


class ShopifyOrderFeed:
    """Blocking order-feed client for one shop.

    Usage:
        feed = ShopifyOrderFeed(shop_domain="mystore.myshopify.com", access_token="shpat_xxx")
        orders = feed.list_orders(since_id=0, created_at_min=since, limit=250)
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the feed.

        Args:
            shop_domain: Shopify store domain (e.g., "mystore.myshopify.com")
            access_token: Shopify Admin API access token
            api_version: API version to use (default: 2024-07)
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Backoff sleeper (tests pass a no-op)
        """
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}"
        self._sleep = sleep
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
            },
        )

        logger.info("[SHOPIFY_CLIENT] Initialized for %s (API version: %s)", shop_domain, api_version)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ShopifyOrderFeed":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def get(self, path: str, params: Dict[str, Any], retries: int = 3) -> Dict[str, Any]:
        """GET a REST resource with retry logic.

        Raises:
            ShopifyAPIError: If the request fails after all retries, or on a
                non-retryable 4xx.
        """
        url = f"{self.base_url}{path}"
        last_error: Optional[Exception] = None

        for attempt in range(retries):
            try:
                response = self._client.get(url, params=params)

                # Handle rate limiting (429)
                if response.status_code == 429:
                    retry_after = _retry_after_seconds(response.headers.get("Retry-After"))
                    logger.warning(
                        "[SHOPIFY_CLIENT] Rate limited, waiting %ss (attempt %d/%d)",
                        retry_after, attempt + 1, retries,
                    )
                    last_error = ShopifyAPIError("Rate limited", status_code=429)
                    self._sleep(retry_after)
                    continue

                if 400 <= response.status_code < 500:
                    raise ShopifyAPIError(
                        f"Shopify returned {response.status_code}: {response.text[:200]}",
                        status_code=response.status_code,
                    )

                response.raise_for_status()
                return _json_object(response)

            except httpx.HTTPStatusError as e:
                last_error = e
                logger.warning(
                    "[SHOPIFY_CLIENT] HTTP error %s (attempt %d/%d)",
                    e.response.status_code, attempt + 1, retries,
                )
                if attempt < retries - 1:
                    self._sleep(1 * (attempt + 1))

            except httpx.RequestError as e:
                last_error = e
                logger.warning("[SHOPIFY_CLIENT] Request error: %s (attempt %d/%d)", e, attempt + 1, retries)
                if attempt < retries - 1:
                    self._sleep(1 * (attempt + 1))

        raise ShopifyAPIError(f"Failed after {retries} attempts: {last_error}")

    def list_orders(self, since_id: int, created_at_min: datetime, limit: int = 250) -> List[Dict[str, Any]]:
        """One page of orders with id > since_id, created at/after created_at_min.

        Args:
            since_id: Cursor (highest order id already seen, 0 to start)
            created_at_min: Naive-UTC lower bound on order creation
            limit: Page size (Shopify max 250)

        Returns:
            List of raw order dicts (refunds, note_attributes, URLs included)
        """
        data = self.get(
            "/orders.json",
            {
                "status": "any",
                "limit": str(limit),
                "since_id": str(since_id),
                "created_at_min": created_at_min.isoformat() + "Z",
            },
        )
        orders = data.get("orders") or []
        if not isinstance(orders, list):
            raise ShopifyAPIError("Shopify returned a malformed orders page", status_code=200)
        logger.debug("[SHOPIFY_CLIENT] %s: %d orders after since_id=%s", self.shop_domain, len(orders), since_id)
        return orders


def build_order_feed(shop_domain: str, access_token: str) -> ShopifyOrderFeed:
    """Order feed configured from application settings."""
    settings = get_settings()
    return ShopifyOrderFeed(
        shop_domain=shop_domain,
        access_token=access_token,
        api_version=settings.SHOPIFY_API_VERSION,
        timeout=settings.SHOPIFY_TIMEOUT_SECONDS,
    )
