"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from application.ports.payment_gateway import GatewayClient
from core.settings import PaymentSettings
from domain.payment.entity import PaymentMethod

from .alipay_client import AlipayGateway
from .wechatpay_client import WechatPayGateway


def build_gateways(settings: PaymentSettings) -> dict[PaymentMethod, GatewayClient]:
    """Instantiate a client for every enabled gateway method."""
    gateways: dict[PaymentMethod, GatewayClient] = {}
    if settings.alipay.enabled:
        gateways[PaymentMethod.ALIPAY] = AlipayGateway(
            settings.alipay, timeouts=settings.timeouts, retry=settings.retry
        )
    if settings.wechat.enabled:
        gateways[PaymentMethod.WECHAT] = WechatPayGateway(
            settings.wechat, timeouts=settings.timeouts, retry=settings.retry
        )
    return gateways


__all__ = ["AlipayGateway", "WechatPayGateway", "build_gateways"]
