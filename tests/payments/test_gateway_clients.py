import json
from decimal import Decimal
from urllib.parse import urlencode

import pytest

from application.dtos.payments import GatewayInitiateRequest, GatewayRefundRequest
from core.settings import AlipaySettings, PaymentRetry, PaymentTimeouts, WechatSettings
from domain.payment.exceptions import GatewayRejectedException, GatewayUnavailableException
from infrastructure.external.payments import alipay_client
from infrastructure.external.payments.alipay_client import AlipayGateway
from infrastructure.external.payments.wechatpay_client import WechatPayGateway


WECHAT_HEADERS = {
    "Wechatpay-Signature": "sig",
    "Wechatpay-Timestamp": "1700000000",
    "Wechatpay-Nonce": "nonce",
    "Wechatpay-Serial": "SERIAL",
}


class _FakeWX:
    def __init__(self, callback_result=None, responses=None):
        self.callback_result = callback_result
        self.responses = responses or {}
        self.calls = []

    def callback(self, headers, body):
        if isinstance(self.callback_result, Exception):
            raise self.callback_result
        return self.callback_result

    def _respond(self, name, kwargs):
        self.calls.append((name, kwargs))
        code, data = self.responses[name]
        return code, json.dumps(data)

    def pay(self, **kwargs):
        return self._respond("pay", kwargs)

    def query(self, **kwargs):
        return self._respond("query", kwargs)

    def refund(self, **kwargs):
        return self._respond("refund", kwargs)

    def close(self, **kwargs):
        return self._respond("close", kwargs)

    def sign(self, parts):
        return "signed:" + "\n".join(parts)


def _wechat(fake: _FakeWX) -> WechatPayGateway:
    return WechatPayGateway(
        WechatSettings(appid="wx123", notify_url="https://pay.example.com/notify"),
        timeouts=PaymentTimeouts(total=2.0),
        retry=PaymentRetry(max=1, base_backoff=0.01),
        client=fake,
    )


# ============= WeChat Pay =============

@pytest.mark.asyncio
async def test_wechat_parse_payment_notification():
    gw = _wechat(_FakeWX(callback_result={
        "id": "EV-1",
        "event_type": "TRANSACTION.SUCCESS",
        "resource": {
            "out_trade_no": "PAY1",
            "transaction_id": "4200000001",
            "trade_state": "SUCCESS",
            "amount": {"total": 2000, "currency": "CNY"},
        },
    }))
    # 头部大小写不敏感
    headers = {k.lower(): v for k, v in WECHAT_HEADERS.items()}
    evt = await gw.parse_notification(headers, b"{}")
    assert evt.signature_valid
    assert evt.kind == "payment"
    assert evt.gateway_reference == "PAY1"
    assert evt.outcome == "success"
    assert evt.amount == Decimal("20.00")


@pytest.mark.asyncio
async def test_wechat_parse_refund_notification():
    gw = _wechat(_FakeWX(callback_result={
        "event_type": "REFUND.SUCCESS",
        "resource": {
            "out_trade_no": "PAY1",
            "out_refund_no": "RF1",
            "refund_status": "SUCCESS",
            "amount": {"total": 2000, "refund": 500},
        },
    }))
    evt = await gw.parse_notification(WECHAT_HEADERS, b"{}")
    assert evt.kind == "refund"
    assert evt.refund_id == "RF1"
    assert evt.refund_amount == Decimal("5.00")
    assert evt.outcome == "success"


@pytest.mark.asyncio
async def test_wechat_parse_rejects_forged_or_incomplete_callbacks():
    gw = _wechat(_FakeWX(callback_result=ValueError("bad signature")))
    assert not (await gw.parse_notification(WECHAT_HEADERS, b"{}")).signature_valid

    gw = _wechat(_FakeWX(callback_result={"event_type": "TRANSACTION.SUCCESS", "resource": {}}))
    missing = {k: v for k, v in WECHAT_HEADERS.items() if k != "Wechatpay-Signature"}
    assert not (await gw.parse_notification(missing, b"{}")).signature_valid


@pytest.mark.asyncio
async def test_wechat_jsapi_initiate_returns_pay_params():
    fake = _FakeWX(responses={"pay": (200, {"prepay_id": "wx201410272009395522657a690389285100"})})
    gw = _wechat(fake)
    result = await gw.initiate(GatewayInitiateRequest(
        payment_number="PAY1",
        amount=Decimal("20.00"),
        subject="订单支付-1",
        scene="jsapi",
        openid="oUpF8uMuAJO_M2pxb1Q9zNjWeS6o",
    ))
    assert result.gateway_reference == "PAY1"
    assert result.pay_params["package"] == f"prepay_id={result.prepay_id}"
    assert result.pay_params["paySign"].startswith("signed:wx123")
    name, kwargs = fake.calls[0]
    assert kwargs["amount"] == {"total": 2000, "currency": "CNY"}
    assert kwargs["payer"] == {"openid": "oUpF8uMuAJO_M2pxb1Q9zNjWeS6o"}


@pytest.mark.asyncio
async def test_wechat_jsapi_requires_openid():
    gw = _wechat(_FakeWX())
    with pytest.raises(GatewayRejectedException):
        await gw.initiate(GatewayInitiateRequest(
            payment_number="PAY1", amount=Decimal("1.00"), subject="s", scene="jsapi"
        ))


@pytest.mark.asyncio
async def test_wechat_query_status_maps_states():
    fake = _FakeWX(responses={"query": (200, {
        "trade_state": "SUCCESS",
        "transaction_id": "4200000001",
        "amount": {"total": 2000},
    })})
    result = await _wechat(fake).query_status("PAY1")
    assert result.status == "paid"
    assert result.amount == Decimal("20.00")

    missing = await _wechat(_FakeWX(responses={"query": (404, {"code": "ORDER_NOT_EXIST"})})).query_status("PAY2")
    assert missing.status == "not_found"


@pytest.mark.asyncio
async def test_wechat_query_retries_then_reports_unavailable():
    fake = _FakeWX(responses={"query": (500, {"code": "SYSTEM_ERROR", "message": "busy"})})
    with pytest.raises(GatewayUnavailableException):
        await _wechat(fake).query_status("PAY1")
    assert len(fake.calls) == 2


@pytest.mark.asyncio
async def test_wechat_refund_rejection_is_a_failed_result():
    fake = _FakeWX(responses={"refund": (400, {"code": "NOT_ENOUGH", "message": "余额不足"})})
    result = await _wechat(fake).refund(GatewayRefundRequest(
        gateway_reference="PAY1",
        refund_id="RF1",
        refund_amount=Decimal("5.00"),
        total_amount=Decimal("20.00"),
        transaction_id="4200000001",
    ))
    assert result.status == "failed"
    assert result.gateway_code == "NOT_ENOUGH"
    assert fake.calls[0][1]["transaction_id"] == "4200000001"


# ============= Alipay =============

def _alipay() -> AlipayGateway:
    return AlipayGateway(
        AlipaySettings(app_id="2021000000000000", alipay_public_key_path="test-alipay-public-key"),
        client=object(),
    )


def _form(**params) -> bytes:
    base = {"app_id": "2021000000000000", "sign": "c2lnbmF0dXJl", "sign_type": "RSA2"}
    return urlencode({**base, **params}).encode()


@pytest.mark.asyncio
async def test_alipay_parse_payment_notification(monkeypatch):
    seen = {}

    def _verify(public_key, content, sign):
        seen["content"] = content.decode()
        seen["sign"] = sign
        return True

    monkeypatch.setattr(alipay_client, "verify_with_rsa", _verify)
    body = _form(
        out_trade_no="PAY1",
        trade_no="2024101622001",
        trade_status="TRADE_SUCCESS",
        total_amount="20.00",
    )
    evt = await _alipay().parse_notification({}, body)

    assert evt.signature_valid
    assert evt.outcome == "success"
    assert evt.transaction_id == "2024101622001"
    assert evt.amount == Decimal("20.00")
    # sign/sign_type 不参与验签，其余参数按 key 排序
    assert "sign=" not in seen["content"]
    assert "sign_type" not in seen["content"]
    assert seen["content"].startswith("app_id=2021000000000000&out_trade_no=PAY1")
    assert seen["sign"] == "c2lnbmF0dXJl"


@pytest.mark.asyncio
async def test_alipay_parse_refund_notification(monkeypatch):
    monkeypatch.setattr(alipay_client, "verify_with_rsa", lambda key, content, sign: True)
    body = _form(
        out_trade_no="PAY1",
        trade_no="2024101622001",
        trade_status="TRADE_CLOSED",
        out_biz_no="RF1",
        refund_fee="20.00",
    )
    evt = await _alipay().parse_notification({}, body)
    assert evt.kind == "refund"
    assert evt.refund_id == "RF1"
    assert evt.refund_amount is None


@pytest.mark.asyncio
async def test_alipay_parse_rejects_bad_signature(monkeypatch):
    monkeypatch.setattr(alipay_client, "verify_with_rsa", lambda key, content, sign: False)
    evt = await _alipay().parse_notification({}, _form(out_trade_no="PAY1", trade_status="TRADE_SUCCESS"))
    assert not evt.signature_valid

    unsigned = urlencode({"out_trade_no": "PAY1", "trade_status": "TRADE_SUCCESS"}).encode()
    assert not (await _alipay().parse_notification({}, unsigned)).signature_valid


@pytest.mark.asyncio
async def test_alipay_parse_rejects_foreign_app(monkeypatch):
    monkeypatch.setattr(alipay_client, "verify_with_rsa", lambda key, content, sign: True)
    body = _form(app_id="2021999999999999", out_trade_no="PAY1", trade_status="TRADE_SUCCESS")
    assert not (await _alipay().parse_notification({}, body)).signature_valid
