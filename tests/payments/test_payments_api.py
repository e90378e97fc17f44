from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import jwt
import pytest
import pytest_asyncio

from conftest import notification
from core.config import settings
from infrastructure.composition import set_container
from main import app


def _token(user_id: int = 7, *, admin: bool = False) -> dict[str, str]:
    claims = {"sub": str(user_id), "exp": datetime.now(timezone.utc) + timedelta(minutes=5)}
    if admin:
        claims["roles"] = [settings.ADMIN_ROLE]
    token = jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(container):
    set_container(container)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    set_container(None)


@pytest.mark.asyncio
async def test_requires_bearer_token(client):
    resp = await client.post("/api/v1/payments/create", json={"order_id": 1, "payment_method": "balance", "amount": "1.00"})
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"

    expired = jwt.encode(
        {"sub": "7", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM,
    )
    resp = await client.get("/api/v1/payments/history", headers={"Authorization": f"Bearer {expired}"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_balance_payment_flow(client, recharge):
    await recharge(7, "100.00")
    resp = await client.post(
        "/api/v1/payments/create",
        json={"order_id": 1, "payment_method": "balance", "amount": "50.00"},
        headers=_token(),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["code"] == 0
    payment = body["data"]["payment"]
    assert payment["status"] == "paid"
    assert "X-Request-ID" in resp.headers

    resp = await client.get(f"/api/v1/payments/{payment['id']}/status", headers=_token())
    assert resp.status_code == 200
    assert resp.json()["data"]["payment_number"] == payment["payment_number"]

    # 其他用户不可见
    resp = await client.get(f"/api/v1/payments/{payment['id']}/status", headers=_token(8))
    assert resp.status_code == 404

    resp = await client.post(
        f"/api/v1/payments/{payment['id']}/refund",
        json={"amount": "20.00", "reason": "少送一份"},
        headers=_token(),
    )
    assert resp.status_code == 200
    assert Decimal(resp.json()["data"]["refund_amount"]) == Decimal("20.00")

    resp = await client.get(f"/api/v1/payments/{payment['id']}/refund-status", headers=_token())
    assert resp.json()["data"]["refund_state"] == "partial"


@pytest.mark.asyncio
async def test_insufficient_balance_is_payment_required(client, recharge):
    await recharge(7, "10.00")
    resp = await client.post(
        "/api/v1/payments/create",
        json={"order_id": 2, "payment_method": "balance", "amount": "50.00"},
        headers=_token(),
    )
    assert resp.status_code == 402
    assert resp.json()["error"]["type"] == "InsufficientBalance"


@pytest.mark.asyncio
async def test_invalid_scene_for_method_is_rejected(client):
    resp = await client.post(
        "/api/v1/payments/create",
        json={"order_id": 3, "payment_method": "alipay", "amount": "5.00", "scene": "jsapi"},
        headers=_token(),
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_list_methods(client):
    resp = await client.get("/api/v1/payments/methods/list")
    assert resp.status_code == 200
    codes = {m["code"] for m in resp.json()["data"]}
    assert codes == {"wechat", "alipay", "balance"}


@pytest.mark.asyncio
async def test_wechat_pay_then_notify(client, wechat_gateway, orders):
    resp = await client.post(
        "/api/v1/payments/wechatpay",
        json={"order_id": 4, "amount": "20.00"},
        headers=_token(),
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    number = data["payment"]["payment_number"]
    assert data["qr_code"] == f"wechat://qr/{number}"

    body = notification(gateway_reference=number, transaction_id="4200000004", outcome="success", amount=Decimal("20.00"))
    resp = await client.post("/api/v1/payments/wechatpay/notify", content=body)
    assert resp.status_code == 200
    assert resp.json()["code"] == "SUCCESS"
    assert orders.paid == [(4, number)]

    resp = await client.get(f"/api/v1/payments/{data['payment']['id']}/status", headers=_token())
    assert resp.json()["data"]["status"] == "paid"


@pytest.mark.asyncio
async def test_wechat_notify_with_bad_signature_asks_for_retry(client):
    body = notification(gateway_reference="PAYX", outcome="success").replace(
        b'"signature_valid":true', b'"signature_valid":false'
    )
    resp = await client.post("/api/v1/payments/wechatpay/notify", content=body)
    assert resp.status_code == 400
    assert resp.json()["code"] == "FAIL"


@pytest.mark.asyncio
async def test_alipay_notify_replies_plain_text(client):
    resp = await client.post(
        "/api/v1/payments/alipay",
        json={"order_id": 5, "amount": "12.00"},
        headers=_token(),
    )
    number = resp.json()["data"]["payment"]["payment_number"]

    body = notification(gateway_reference=number, transaction_id="2024101622005", outcome="success", amount=Decimal("12.00"))
    resp = await client.post("/api/v1/payments/alipay/notify", content=body)
    assert resp.status_code == 200
    assert resp.text == "success"


@pytest.mark.asyncio
async def test_cancel_pending_payment(client, wechat_gateway):
    resp = await client.post("/api/v1/payments/wechatpay", json={"order_id": 6, "amount": "8.00"}, headers=_token())
    payment = resp.json()["data"]["payment"]

    resp = await client.put(f"/api/v1/payments/{payment['id']}/cancel", headers=_token())
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "cancelled"
    assert wechat_gateway.closed == [payment["payment_number"]]


@pytest.mark.asyncio
async def test_history_is_paginated(client, recharge):
    await recharge(7, "100.00")
    for order_id in (7, 8):
        await client.post(
            "/api/v1/payments/create",
            json={"order_id": order_id, "payment_method": "balance", "amount": "10.00"},
            headers=_token(),
        )
    resp = await client.get("/api/v1/payments/history", params={"page": 1, "size": 1}, headers=_token())
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["total"] == 2
    assert len(data["items"]) == 1

    resp = await client.get("/api/v1/payments/bills", headers=_token())
    assert Decimal(resp.json()["data"]["total_paid"]) == Decimal("20.00")


@pytest.mark.asyncio
async def test_reconciliation_requires_admin(client):
    resp = await client.get("/api/v1/payments/reconciliation", headers=_token())
    assert resp.status_code == 403

    resp = await client.get("/api/v1/payments/reconciliation", headers=_token(1, admin=True))
    assert resp.status_code == 200
    report = resp.json()["data"]
    assert report["checked"] == 0
    assert report["mismatches"] == []
