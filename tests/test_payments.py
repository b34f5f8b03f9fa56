import json

import httpx
import pytest

from errors import UpstreamFailure
from payments import PaymentClient


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_create_order_returns_checkout_url() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "checkoutUrl": "https://pay.example.com/c/1"})

    async with _client(handler) as http:
        client = PaymentClient(http, api_base="https://api.example.com/", currency="INR")
        url = await client.create_order(1500.0, "Ticket Upgrade - VIP", "abc123", {"new_category": "VIP"})

    assert url == "https://pay.example.com/c/1"
    assert str(seen[0].url) == "https://api.example.com/payment/create-order"
    body = json.loads(seen[0].content)
    assert body == {
        "amount": 1500.0,
        "currency": "INR",
        "description": "Ticket Upgrade - VIP",
        "reference_id": "abc123",
        "metadata": {"new_category": "VIP"},
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body, expected",
    [
        ({"success": True, "checkout_url": "https://pay.example.com/c/2"}, "https://pay.example.com/c/2"),
        ({"success": True, "raw": {"checkout_url": "https://pay.example.com/c/3"}}, "https://pay.example.com/c/3"),
    ],
)
async def test_checkout_url_fallbacks(body, expected) -> None:
    async with _client(lambda request: httpx.Response(200, json=body)) as http:
        assert await PaymentClient(http, api_base="https://api.example.com").create_order(1, "d", "r") == expected


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"success": False, "error": "gateway down"}),
        httpx.Response(200, json={"success": False}),
        httpx.Response(200, json={"success": True}),
        httpx.Response(200, text="<html>bad gateway</html>"),
        httpx.Response(200, json=["unexpected"]),
    ],
)
async def test_rejected_orders_raise_upstream_failure(response) -> None:
    async with _client(lambda request: response) as http:
        with pytest.raises(UpstreamFailure) as excinfo:
            await PaymentClient(http, api_base="https://api.example.com").create_order(1, "d", "r")

    assert excinfo.value.status_code == 502


@pytest.mark.asyncio
async def test_transport_error_raises_upstream_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as http:
        with pytest.raises(UpstreamFailure) as excinfo:
            await PaymentClient(http, api_base="https://api.example.com").create_order(1, "d", "r")

    assert excinfo.value.to_dict() == {"success": False, "error": "Failed to create payment order"}
