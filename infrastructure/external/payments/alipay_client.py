"""
Alipay adapter using the official alipay-sdk-python-all.

Implements precreate (QR), page pay (PC), WAP pay, query, refund, refund query,
close, and notify signature verification. The out_trade_no sent to Alipay is
the local payment number, which is also the gateway reference.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

from alipay.aop.api.AlipayClientConfig import AlipayClientConfig
from alipay.aop.api.DefaultAlipayClient import DefaultAlipayClient
from alipay.aop.api.domain.AlipayTradeCloseModel import AlipayTradeCloseModel
from alipay.aop.api.domain.AlipayTradeFastpayRefundQueryModel import AlipayTradeFastpayRefundQueryModel
from alipay.aop.api.domain.AlipayTradePagePayModel import AlipayTradePagePayModel
from alipay.aop.api.domain.AlipayTradePrecreateModel import AlipayTradePrecreateModel
from alipay.aop.api.domain.AlipayTradeQueryModel import AlipayTradeQueryModel
from alipay.aop.api.domain.AlipayTradeRefundModel import AlipayTradeRefundModel
from alipay.aop.api.domain.AlipayTradeWapPayModel import AlipayTradeWapPayModel
from alipay.aop.api.exception.Exception import RequestException, ResponseException
from alipay.aop.api.request.AlipayTradeCloseRequest import AlipayTradeCloseRequest
from alipay.aop.api.request.AlipayTradeFastpayRefundQueryRequest import AlipayTradeFastpayRefundQueryRequest
from alipay.aop.api.request.AlipayTradePagePayRequest import AlipayTradePagePayRequest
from alipay.aop.api.request.AlipayTradePrecreateRequest import AlipayTradePrecreateRequest
from alipay.aop.api.request.AlipayTradeQueryRequest import AlipayTradeQueryRequest
from alipay.aop.api.request.AlipayTradeRefundRequest import AlipayTradeRefundRequest
from alipay.aop.api.request.AlipayTradeWapPayRequest import AlipayTradeWapPayRequest
from alipay.aop.api.response.AlipayTradeCloseResponse import AlipayTradeCloseResponse
from alipay.aop.api.response.AlipayTradeFastpayRefundQueryResponse import AlipayTradeFastpayRefundQueryResponse
from alipay.aop.api.response.AlipayTradePrecreateResponse import AlipayTradePrecreateResponse
from alipay.aop.api.response.AlipayTradeQueryResponse import AlipayTradeQueryResponse
from alipay.aop.api.response.AlipayTradeRefundResponse import AlipayTradeRefundResponse
from alipay.aop.api.util.SignatureUtils import verify_with_rsa

from application.dtos.payments import (
    GatewayInitiateRequest,
    GatewayInitiateResult,
    GatewayNotification,
    GatewayQueryResult,
    GatewayRefundRequest,
    GatewayRefundResult,
)
from core.logging_config import get_logger
from core.settings import AlipaySettings, PaymentRetry, PaymentTimeouts
from domain.common.money import to_money
from domain.payment.exceptions import GatewayRejectedException, GatewayUnavailableException
from infrastructure.external.payments.base import BaseGatewayClient


logger = get_logger(__name__)

SUCCESS_CODE = "10000"
# 支付宝侧临时故障，可重试
_UNAVAILABLE_SUB_CODES = {"ACQ.SYSTEM_ERROR", "aop.ACQ.SYSTEM_ERROR"}
_TRADE_NOT_EXIST = "ACQ.TRADE_NOT_EXIST"


def _read_key(path_or_key: str) -> str:
    p = Path(path_or_key)
    return p.read_text(encoding="utf-8") if p.exists() else path_or_key


def _ok(response) -> bool:
    return getattr(response, "code", None) == SUCCESS_CODE


def _parse_money(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return to_money(value)
    except (ValueError, InvalidOperation):
        return None


class AlipayGateway(BaseGatewayClient):
    method = "alipay"

    def __init__(
        self,
        config: AlipaySettings,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        retry: Optional[PaymentRetry] = None,
        client: Any = None,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry)
        self._config = config
        if client is None:
            if not (config.app_id and config.private_key_path and config.alipay_public_key_path):
                raise RuntimeError("ALIPAY configuration incomplete")
            client = self._build_client(config)
        self._client = client
        self._public_key = _read_key(config.alipay_public_key_path) if config.alipay_public_key_path else None

    @staticmethod
    def _build_client(config: AlipaySettings) -> DefaultAlipayClient:
        alipay_client_config = AlipayClientConfig()
        alipay_client_config.server_url = config.gateway
        alipay_client_config.app_id = config.app_id
        alipay_client_config.app_private_key = _read_key(config.private_key_path)
        alipay_client_config.alipay_public_key = _read_key(config.alipay_public_key_path)
        alipay_client_config.sign_type = config.sign_type
        return DefaultAlipayClient(alipay_client_config=alipay_client_config)

    @staticmethod
    def _to_yuan(amount: Decimal) -> str:
        # Alipay uses yuan units as string, with 2 decimals
        return f"{amount:.2f}"

    def _translate_error(self, operation: str, exc: Exception) -> Optional[Exception]:
        if isinstance(exc, (RequestException, ResponseException)):
            logger.warning("alipay_transport_error", operation=operation, error=str(exc))
            return GatewayUnavailableException(
                f"alipay {operation} failed: {exc}",
                gateway=self.method,
                details={"operation": operation},
            )
        return super()._translate_error(operation, exc)

    async def _execute(self, operation: str, request, response_cls):
        content = await self._call(operation, self._client.execute, request)
        response = response_cls()
        response.parse_response_content(content)
        return response

    def _raise_for(self, operation: str, response) -> None:
        if _ok(response):
            return
        sub_code = getattr(response, "sub_code", None)
        message = getattr(response, "sub_msg", None) or getattr(response, "msg", None) or "alipay error"
        if response.code == "20000" or sub_code in _UNAVAILABLE_SUB_CODES:
            raise GatewayUnavailableException(
                message, gateway=self.method, details={"operation": operation, "gateway_code": sub_code}
            )
        logger.warning("alipay_request_rejected", operation=operation, code=response.code, sub_code=sub_code)
        raise GatewayRejectedException(
            message, gateway=self.method, gateway_code=sub_code, details={"operation": operation}
        )

    async def initiate(self, req: GatewayInitiateRequest) -> GatewayInitiateResult:
        scene = (req.scene or "qr_code").lower()
        if scene == "qr_code":
            model = AlipayTradePrecreateModel()
            model.out_trade_no = req.payment_number
            model.total_amount = self._to_yuan(req.amount)
            model.subject = req.subject
            request = AlipayTradePrecreateRequest(biz_model=model)
            if self._config.notify_url:
                request.notify_url = self._config.notify_url
            response = await self._execute("initiate", request, AlipayTradePrecreateResponse)
            self._raise_for("initiate", response)
            self._log("gateway_initiated", payment_number=req.payment_number, scene=scene)
            return GatewayInitiateResult(gateway_reference=req.payment_number, qr_code=response.qr_code)

        if scene in ("pc_web", "wap"):
            if scene == "pc_web":
                model = AlipayTradePagePayModel()
                model.product_code = "FAST_INSTANT_TRADE_PAY"
                request_cls = AlipayTradePagePayRequest
            else:
                model = AlipayTradeWapPayModel()
                model.product_code = "QUICK_WAP_WAY"
                request_cls = AlipayTradeWapPayRequest
            model.out_trade_no = req.payment_number
            model.total_amount = self._to_yuan(req.amount)
            model.subject = req.subject
            request = request_cls(biz_model=model)
            if self._config.notify_url:
                request.notify_url = self._config.notify_url
            return_url = req.return_url or self._config.return_url
            if return_url:
                request.return_url = return_url
            # GET 模式下 page_execute 返回可直接跳转的URL
            url = await self._call("initiate", self._client.page_execute, request, "GET")
            self._log("gateway_initiated", payment_number=req.payment_number, scene=scene)
            return GatewayInitiateResult(gateway_reference=req.payment_number, payment_url=url)

        raise GatewayRejectedException(f"Unsupported scene: {scene}", gateway=self.method)

    async def parse_notification(self, headers: Mapping[str, str], body: bytes) -> GatewayNotification:
        # Alipay sends form-encoded payloads
        try:
            params = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError:
            logger.warning("alipay_notify_undecodable")
            return GatewayNotification.invalid()
        sign = params.pop("sign", None)
        params.pop("sign_type", None)
        if not sign or not self._public_key:
            logger.warning("alipay_notify_unsigned", has_sign=bool(sign))
            return GatewayNotification.invalid()
        if self._config.app_id and params.get("app_id") and params["app_id"] != self._config.app_id:
            logger.warning("alipay_notify_app_mismatch", app_id=params.get("app_id"))
            return GatewayNotification.invalid()

        # Build unsigned content: sort by key and join as k=v with &
        unsigned_content = "&".join(f"{k}={v}" for k, v in sorted(params.items()) if v != "")
        try:
            verified = verify_with_rsa(self._public_key, unsigned_content.encode("utf-8"), sign)
        except Exception as exc:
            # rsa raises VerificationError for a bad signature
            logger.warning("alipay_notify_verify_failed", error=str(exc))
            verified = False
        if not verified:
            return GatewayNotification.invalid()

        payment_number = params.get("out_trade_no")
        trade_status = params.get("trade_status", "")
        if params.get("out_biz_no") and params.get("refund_fee"):
            # refund_fee 为累计退款金额，本次退款金额以本地登记为准
            return GatewayNotification(
                signature_valid=True,
                kind="refund",
                gateway_reference=payment_number,
                transaction_id=params.get("trade_no"),
                outcome="success",
                refund_id=params["out_biz_no"],
                raw_status=trade_status,
            )

        internal = self._map_status(trade_status)
        outcome = {"paid": "success", "closed": "failure", "failed": "failure"}.get(internal or "", "pending")
        return GatewayNotification(
            signature_valid=True,
            kind="payment",
            gateway_reference=payment_number,
            transaction_id=params.get("trade_no"),
            outcome=outcome,
            amount=_parse_money(params.get("total_amount")),
            raw_status=trade_status,
        )

    async def query_status(self, gateway_reference: str) -> GatewayQueryResult:
        model = AlipayTradeQueryModel()
        model.out_trade_no = gateway_reference
        request = AlipayTradeQueryRequest(biz_model=model)

        async def _query():
            return await self._execute("query_status", request, AlipayTradeQueryResponse)

        response = await self._retry(_query)
        if not _ok(response) and getattr(response, "sub_code", None) == _TRADE_NOT_EXIST:
            return GatewayQueryResult(status="not_found")
        self._raise_for("query_status", response)
        trade_status = str(response.trade_status or "")
        return GatewayQueryResult(
            status=self._map_status(trade_status) or "pending",
            transaction_id=response.trade_no,
            amount=_parse_money(response.total_amount),
            raw_status=trade_status,
        )

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        model = AlipayTradeRefundModel()
        model.out_trade_no = req.gateway_reference
        model.refund_amount = self._to_yuan(req.refund_amount)
        model.refund_reason = req.reason or ""
        # 部分退款需要 out_request_no 保证幂等
        model.out_request_no = req.refund_id
        request = AlipayTradeRefundRequest(biz_model=model)
        response = await self._execute("refund", request, AlipayTradeRefundResponse)
        if not _ok(response):
            sub_code = getattr(response, "sub_code", None)
            if response.code == "20000" or sub_code in _UNAVAILABLE_SUB_CODES:
                self._raise_for("refund", response)
            logger.warning("alipay_refund_rejected", refund_id=req.refund_id, sub_code=sub_code)
            return GatewayRefundResult(
                refund_id=req.refund_id,
                status="failed",
                gateway_code=sub_code,
                message=getattr(response, "sub_msg", None) or response.msg,
            )
        # fund_change=Y 表示本次请求发生了资金变化
        status = "succeeded" if getattr(response, "fund_change", None) == "Y" else "pending"
        self._log("gateway_refund_submitted", refund_id=req.refund_id, status=status)
        return GatewayRefundResult(refund_id=req.refund_id, status=status, amount=req.refund_amount)

    async def query_refund(self, gateway_reference: str, refund_id: str) -> GatewayRefundResult:
        model = AlipayTradeFastpayRefundQueryModel()
        model.out_trade_no = gateway_reference
        model.out_request_no = refund_id
        request = AlipayTradeFastpayRefundQueryRequest(biz_model=model)

        async def _query():
            return await self._execute("query_refund", request, AlipayTradeFastpayRefundQueryResponse)

        response = await self._retry(_query)
        self._raise_for("query_refund", response)
        refund_status = getattr(response, "refund_status", None)
        amount = _parse_money(getattr(response, "refund_amount", None))
        # 返回了退款数据且 refund_status 为空或 REFUND_SUCCESS 均表示退款成功
        if refund_status == "REFUND_SUCCESS" or (not refund_status and amount is not None):
            return GatewayRefundResult(refund_id=refund_id, status="succeeded", amount=amount)
        return GatewayRefundResult(refund_id=refund_id, status="not_found")

    async def close(self, gateway_reference: str) -> None:
        model = AlipayTradeCloseModel()
        model.out_trade_no = gateway_reference
        request = AlipayTradeCloseRequest(biz_model=model)
        response = await self._execute("close", request, AlipayTradeCloseResponse)
        if not _ok(response) and getattr(response, "sub_code", None) == _TRADE_NOT_EXIST:
            # 用户未扫码时支付宝侧尚无交易
            return
        self._raise_for("close", response)
        self._log("gateway_closed", payment_number=gateway_reference)