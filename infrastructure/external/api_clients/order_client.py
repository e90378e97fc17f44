"""
订单服务 HTTP 客户端 - 实现 OrderPort

订单服务返回统一响应 {code, message, data}，也兼容直接返回订单对象。
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from application.ports.order_service import OrderSnapshot
from core.logging_config import get_logger
from core.settings import OrderServiceSettings
from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode
from .base import APIError, BaseAPIClient, NotFoundError


logger = get_logger(__name__)

# 订单处于 created 且支付状态为 pending 时才允许支付
PAYABLE_ORDER_STATUS = "created"
PAYABLE_PAYMENT_STATUS = "pending"


def _pick(data: dict, *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class OrderServiceClient(BaseAPIClient):
    def __init__(self, config: OrderServiceSettings, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        headers = {"X-Api-Key": config.api_key} if config.api_key else None
        super().__init__(
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
            headers=headers,
            transport=transport,
        )

    @staticmethod
    def _unavailable(operation: str, exc: APIError) -> BusinessException:
        return BusinessException(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message=f"订单服务不可用: {exc.message}",
            error_type="OrderServiceUnavailable",
            details={"operation": operation, "status_code": exc.status_code},
        )

    @staticmethod
    def to_snapshot(order_id: int, payload: Any) -> OrderSnapshot:
        """把订单服务的 JSON 转换为 OrderSnapshot"""
        data = payload.get("data", payload) if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            return OrderSnapshot.missing(order_id)
        order_status = _pick(data, "order_status", "orderStatus", "status")
        payment_status = _pick(data, "payment_status", "paymentStatus")
        user_id = _pick(data, "user_id", "userId")
        return OrderSnapshot(
            order_id=order_id,
            exists=True,
            is_payable=order_status == PAYABLE_ORDER_STATUS and payment_status == PAYABLE_PAYMENT_STATUS,
            amount=_to_decimal(_pick(data, "total_amount", "totalAmount", "amount")),
            user_id=int(user_id) if user_id is not None else None,
            status=order_status,
        )

    async def get_order(self, order_id: int) -> OrderSnapshot:
        try:
            response = await self.get(f"/api/v1/orders/{order_id}")
        except NotFoundError:
            return OrderSnapshot.missing(order_id)
        except APIError as exc:
            logger.warning("order_lookup_failed", order_id=order_id, error=exc.message)
            raise self._unavailable("get_order", exc) from exc
        return self.to_snapshot(order_id, response.json())

    async def notify_paid(self, order_id: int, payment_number: str) -> None:
        try:
            await self.post(
                f"/api/v1/orders/{order_id}/paid",
                json_data={"payment_number": payment_number},
            )
        except APIError as exc:
            raise self._unavailable("notify_paid", exc) from exc
        logger.info("order_notified_paid", order_id=order_id, payment_number=payment_number)
