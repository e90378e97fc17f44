"""
WeChat Pay v3 adapter using the community `wechatpayv3` SDK.

Features used:
- Request signing with merchant private key (v3)
- Platform certificate verification and callback resource decryption (AES-256-GCM)
- NATIVE/H5/JSAPI flows, order query/close, refund apply/query

The SDK returns ``(http_status, response_text)`` tuples for API calls.
"""
from __future__ import annotations

import json
import secrets
import time
from pathlib import Path
from typing import Any, Mapping, Optional

from wechatpayv3 import WeChatPay, WeChatPayType

from application.dtos.payments import (
    GatewayInitiateRequest,
    GatewayInitiateResult,
    GatewayNotification,
    GatewayQueryResult,
    GatewayRefundRequest,
    GatewayRefundResult,
)
from core.logging_config import get_logger
from core.settings import PaymentRetry, PaymentTimeouts, WechatSettings
from domain.common.money import from_minor_units, to_minor_units
from domain.payment.exceptions import GatewayRejectedException, GatewayUnavailableException
from infrastructure.external.payments.base import BaseGatewayClient


logger = get_logger(__name__)

_CALLBACK_HEADERS = ("Wechatpay-Signature", "Wechatpay-Timestamp", "Wechatpay-Nonce", "Wechatpay-Serial")
_PAY_TYPE_BY_SCENE = {
    "qr_code": WeChatPayType.NATIVE,
    "h5": WeChatPayType.H5,
    "jsapi": WeChatPayType.JSAPI,
}


def _loads(text: Any) -> dict:
    if isinstance(text, dict):
        return text
    if not text:
        return {}
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        return {"message": str(text)}
    return data if isinstance(data, dict) else {"message": str(data)}


class WechatPayGateway(BaseGatewayClient):
    method = "wechat"

    def __init__(
        self,
        config: WechatSettings,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        retry: Optional[PaymentRetry] = None,
        client: Any = None,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry)
        self._config = config
        if client is None:
            if not (config.mch_id and config.mch_cert_serial_no and config.private_key_path and config.api_v3_key):
                raise RuntimeError("WECHAT configuration incomplete")
            key_path = Path(config.private_key_path)
            private_key = key_path.read_text(encoding="utf-8") if key_path.exists() else config.private_key_path
            client = WeChatPay(
                wechatpay_type=WeChatPayType.NATIVE,
                mchid=config.mch_id,
                private_key=private_key,
                cert_serial_no=config.mch_cert_serial_no,
                apiv3_key=config.api_v3_key,
                appid=config.appid,
                notify_url=config.notify_url,
                cert_dir=config.platform_cert_dir,
                timeout=(self._timeouts.connect, self._timeouts.read),
            )
        self._wx = client

    def _check(self, operation: str, code: int, text: Any) -> dict:
        """Map the SDK's (status, body) pair to data or a gateway exception."""
        data = _loads(text)
        if 200 <= int(code) < 300:
            return data
        gateway_code = data.get("code")
        message = data.get("message") or f"wechat {operation} failed with HTTP {code}"
        if int(code) >= 500 or int(code) == 429 or gateway_code == "SYSTEM_ERROR":
            logger.warning("wechat_gateway_unavailable", operation=operation, status_code=code, gateway_code=gateway_code)
            raise GatewayUnavailableException(
                message, gateway=self.method, details={"operation": operation, "gateway_code": gateway_code}
            )
        logger.warning("wechat_request_rejected", operation=operation, status_code=code, gateway_code=gateway_code)
        raise GatewayRejectedException(
            message, gateway=self.method, gateway_code=gateway_code, details={"operation": operation}
        )

    def _jsapi_params(self, prepay_id: str) -> dict[str, str]:
        timestamp = str(int(time.time()))
        nonce = secrets.token_hex(16)
        package = f"prepay_id={prepay_id}"
        return {
            "appId": self._config.appid or "",
            "timeStamp": timestamp,
            "nonceStr": nonce,
            "package": package,
            "signType": "RSA",
            "paySign": self._wx.sign([self._config.appid or "", timestamp, nonce, package]),
        }

    async def initiate(self, req: GatewayInitiateRequest) -> GatewayInitiateResult:
        scene = (req.scene or "qr_code").lower()
        pay_type = _PAY_TYPE_BY_SCENE.get(scene)
        if pay_type is None:
            raise GatewayRejectedException(f"Unsupported scene: {scene}", gateway=self.method)

        kwargs: dict[str, Any] = {
            "description": req.subject,
            "out_trade_no": req.payment_number,
            "amount": {"total": to_minor_units(req.amount), "currency": req.currency},
            "pay_type": pay_type,
        }
        if self._config.notify_url:
            kwargs["notify_url"] = self._config.notify_url
        if scene == "jsapi":
            if not req.openid:
                raise GatewayRejectedException("openid required for jsapi", gateway=self.method)
            kwargs["payer"] = {"openid": req.openid}
        elif scene == "h5":
            kwargs["scene_info"] = {
                "payer_client_ip": req.client_ip or "127.0.0.1",
                "h5_info": {"type": "Wap"},
            }

        code, text = await self._call("initiate", lambda: self._wx.pay(**kwargs))
        data = self._check("initiate", code, text)
        self._log("gateway_initiated", payment_number=req.payment_number, scene=scene)

        result = GatewayInitiateResult(gateway_reference=req.payment_number)
        if scene == "qr_code":
            result.qr_code = data.get("code_url")
        elif scene == "h5":
            result.payment_url = data.get("h5_url")
        else:
            result.prepay_id = data.get("prepay_id")
            if result.prepay_id:
                result.pay_params = self._jsapi_params(result.prepay_id)
        return result

    async def parse_notification(self, headers: Mapping[str, str], body: bytes) -> GatewayNotification:
        lowered = {str(k).lower(): v for k, v in headers.items()}
        sdk_headers = {name: lowered.get(name.lower()) for name in _CALLBACK_HEADERS}
        if not all(sdk_headers.values()):
            logger.warning("wechat_notify_missing_headers")
            return GatewayNotification.invalid()
        try:
            payload = body.decode("utf-8")
            data = self._wx.callback(sdk_headers, payload)
        except Exception as exc:
            # 验签或解密失败均视为无效通知
            logger.warning("wechat_notify_verify_failed", error=str(exc))
            return GatewayNotification.invalid()
        if not data or not isinstance(data.get("resource"), dict):
            return GatewayNotification.invalid()

        event_type = str(data.get("event_type") or "")
        resource = data["resource"]
        amount_info = resource.get("amount") or {}

        if event_type.startswith("REFUND."):
            refund_status = str(resource.get("refund_status") or event_type.split(".", 1)[1])
            internal = self._map_refund_status(refund_status)
            outcome = {"succeeded": "success", "failed": "failure"}.get(internal or "", "pending")
            refund_minor = amount_info.get("refund")
            return GatewayNotification(
                signature_valid=True,
                kind="refund",
                gateway_reference=resource.get("out_trade_no"),
                transaction_id=resource.get("transaction_id"),
                outcome=outcome,
                refund_id=resource.get("out_refund_no"),
                refund_amount=from_minor_units(refund_minor) if refund_minor is not None else None,
                raw_status=refund_status,
            )

        trade_state = str(resource.get("trade_state") or "")
        internal = self._map_status(trade_state)
        outcome = {"paid": "success", "failed": "failure", "closed": "failure"}.get(internal or "", "pending")
        total = amount_info.get("total")
        return GatewayNotification(
            signature_valid=True,
            kind="payment",
            gateway_reference=resource.get("out_trade_no"),
            transaction_id=resource.get("transaction_id"),
            outcome=outcome,
            amount=from_minor_units(total) if total is not None else None,
            raw_status=trade_state,
        )

    async def query_status(self, gateway_reference: str) -> GatewayQueryResult:
        async def _query() -> Optional[dict]:
            code, text = await self._call("query_status", lambda: self._wx.query(out_trade_no=gateway_reference))
            if int(code) == 404:
                return None
            return self._check("query_status", code, text)

        data = await self._retry(_query)
        if data is None:
            return GatewayQueryResult(status="not_found")
        trade_state = str(data.get("trade_state") or "")
        total = (data.get("amount") or {}).get("total")
        return GatewayQueryResult(
            status=self._map_status(trade_state) or "pending",
            transaction_id=data.get("transaction_id"),
            amount=from_minor_units(total) if total is not None else None,
            raw_status=trade_state,
        )

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        kwargs: dict[str, Any] = {
            "out_refund_no": req.refund_id,
            "amount": {
                "refund": to_minor_units(req.refund_amount),
                "total": to_minor_units(req.total_amount),
                "currency": req.currency,
            },
            "reason": req.reason,
        }
        if req.transaction_id:
            kwargs["transaction_id"] = req.transaction_id
        else:
            kwargs["out_trade_no"] = req.gateway_reference

        code, text = await self._call("refund", lambda: self._wx.refund(**kwargs))
        data = _loads(text)
        if not 200 <= int(code) < 300 and int(code) < 500 and int(code) != 429:
            logger.warning("wechat_refund_rejected", refund_id=req.refund_id, status_code=code, gateway_code=data.get("code"))
            return GatewayRefundResult(
                refund_id=req.refund_id,
                status="failed",
                gateway_code=data.get("code"),
                message=data.get("message"),
            )
        data = self._check("refund", code, text)
        refund_status = str(data.get("status") or "PROCESSING")
        status = self._map_refund_status(refund_status) or "pending"
        self._log("gateway_refund_submitted", refund_id=req.refund_id, status=status)
        refund_minor = (data.get("amount") or {}).get("refund")
        return GatewayRefundResult(
            refund_id=req.refund_id,
            status=status,
            amount=from_minor_units(refund_minor) if refund_minor is not None else req.refund_amount,
        )

    async def query_refund(self, gateway_reference: str, refund_id: str) -> GatewayRefundResult:
        async def _query() -> Optional[dict]:
            code, text = await self._call("query_refund", lambda: self._wx.query_refund(out_refund_no=refund_id))
            if int(code) == 404:
                return None
            return self._check("query_refund", code, text)

        data = await self._retry(_query)
        if data is None:
            return GatewayRefundResult(refund_id=refund_id, status="not_found")
        refund_status = str(data.get("status") or "")
        refund_minor = (data.get("amount") or {}).get("refund")
        return GatewayRefundResult(
            refund_id=refund_id,
            status=self._map_refund_status(refund_status) or "pending",
            amount=from_minor_units(refund_minor) if refund_minor is not None else None,
        )

    async def close(self, gateway_reference: str) -> None:
        code, text = await self._call("close", lambda: self._wx.close(out_trade_no=gateway_reference))
        self._check("close", code, text)
        self._log("gateway_closed", payment_number=gateway_reference)
