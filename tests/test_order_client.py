import json
from decimal import Decimal

import httpx
import pytest

from core.settings import OrderServiceSettings
from domain.common.exceptions import BusinessException
from infrastructure.external.api_clients.order_client import OrderServiceClient


def _client(handler) -> OrderServiceClient:
    config = OrderServiceSettings(base_url="http://orders.test", max_retries=1, api_key="k-1")
    return OrderServiceClient(config, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_get_order_reads_enveloped_camel_case_payload():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={
            "code": 0,
            "message": "success",
            "data": {"orderStatus": "created", "paymentStatus": "pending", "totalAmount": "50.00", "userId": 7},
        })

    async with _client(handler) as client:
        order = await client.get_order(12)

    assert order.exists
    assert order.is_payable
    assert order.amount == Decimal("50.00")
    assert order.user_id == 7
    assert seen[0].url.path == "/api/v1/orders/12"
    assert seen[0].headers["X-Api-Key"] == "k-1"


@pytest.mark.asyncio
async def test_paid_order_is_not_payable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"order_status": "created", "payment_status": "paid", "amount": 10})

    async with _client(handler) as client:
        order = await client.get_order(13)

    assert order.exists
    assert not order.is_payable


@pytest.mark.asyncio
async def test_missing_order():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "not found"})

    async with _client(handler) as client:
        order = await client.get_order(14)

    assert not order.exists
    assert not order.is_payable


@pytest.mark.asyncio
async def test_unavailable_order_service_is_retried_then_raised():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503, json={"message": "maintenance"})

    async with _client(handler) as client:
        with pytest.raises(BusinessException) as exc_info:
            await client.get_order(15)

    assert exc_info.value.error_type == "OrderServiceUnavailable"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_notify_paid_posts_payment_number():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"code": 0, "data": None})

    async with _client(handler) as client:
        await client.notify_paid(16, "PAY20241016")

    assert seen[0].method == "POST"
    assert seen[0].url.path == "/api/v1/orders/16/paid"
    assert json.loads(seen[0].content) == {"payment_number": "PAY20241016"}
