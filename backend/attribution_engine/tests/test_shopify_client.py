"""Tests for the Shopify order feed client (httpx.MockTransport, no network)."""

from datetime import datetime

import httpx
import pytest

from attribution_engine.services.shopify_client import ShopifyAPIError, ShopifyOrderFeed


def _feed(handler, sleeps=None):
    return ShopifyOrderFeed(
        shop_domain="demo.myshopify.com",
        access_token="shpat_test",
        api_version="2024-07",
        transport=httpx.MockTransport(handler),
        sleep=(sleeps.append if sleeps is not None else (lambda _: None)),
    )


def test_list_orders_sends_cursor_and_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"orders": [{"id": 5}, {"id": 7}]})

    with _feed(handler) as feed:
        orders = feed.list_orders(since_id=3, created_at_min=datetime(2025, 1, 8), limit=2)

    assert [o["id"] for o in orders] == [5, 7]
    request = seen[0]
    assert request.url.path == "/admin/api/2024-07/orders.json"
    assert request.url.params["since_id"] == "3"
    assert request.url.params["limit"] == "2"
    assert request.url.params["status"] == "any"
    assert request.url.params["created_at_min"] == "2025-01-08T00:00:00Z"
    assert request.headers["X-Shopify-Access-Token"] == "shpat_test"


def test_rate_limit_honours_retry_after():
    responses = iter([
        httpx.Response(429, headers={"Retry-After": "1.5"}),
        httpx.Response(200, json={"orders": []}),
    ])
    sleeps = []

    feed = _feed(lambda request: next(responses), sleeps)
    assert feed.list_orders(since_id=0, created_at_min=datetime(2025, 1, 1)) == []
    assert sleeps == [1.5]


def test_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, text="Invalid API key")

    with pytest.raises(ShopifyAPIError) as exc_info:
        _feed(handler).list_orders(since_id=0, created_at_min=datetime(2025, 1, 1))

    assert exc_info.value.status_code == 401
    assert len(calls) == 1


def test_server_errors_retry_then_fail():
    calls = []
    sleeps = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    with pytest.raises(ShopifyAPIError, match="Failed after 3 attempts"):
        _feed(handler, sleeps).list_orders(since_id=0, created_at_min=datetime(2025, 1, 1))

    assert len(calls) == 3
    assert sleeps == [1, 2]


def test_network_error_is_retried():
    attempts = {"n": 0}

    def handler(request):
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise httpx.ConnectError("boom", request=request)
        return httpx.Response(200, json={"orders": [{"id": 1}]})

    orders = _feed(handler).list_orders(since_id=0, created_at_min=datetime(2025, 1, 1))
    assert orders == [{"id": 1}]


def test_unparseable_retry_after_uses_default_wait():
    responses = iter([
        httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}),
        httpx.Response(200, json={"orders": []}),
    ])
    sleeps = []

    feed = _feed(lambda request: next(responses), sleeps)
    assert feed.list_orders(since_id=0, created_at_min=datetime(2025, 1, 1)) == []
    assert sleeps == [2.0]


@pytest.mark.parametrize("response", [
    httpx.Response(200, text="<html>maintenance</html>"),
    httpx.Response(200, json=["not", "an", "object"]),
    httpx.Response(200, json={"orders": {"id": 1}}),
])
def test_malformed_body_raises_api_error(response):
    with pytest.raises(ShopifyAPIError):
        _feed(lambda request: response).list_orders(since_id=0, created_at_min=datetime(2025, 1, 1))
