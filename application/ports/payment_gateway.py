"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements the WeChat Pay
and Alipay adapters. Error contract for every call:

- GatewayUnavailableException: timeout or transport failure, outcome unknown
- GatewayRejectedException: the gateway refused the request (configuration or business rule)
"""
from __future__ import annotations

from typing import Mapping, Protocol, runtime_checkable

from application.dtos.payments import (
    GatewayInitiateRequest,
    GatewayInitiateResult,
    GatewayNotification,
    GatewayQueryResult,
    GatewayRefundRequest,
    GatewayRefundResult,
)


@runtime_checkable
class GatewayClient(Protocol):
    """Gateway protocol for third-party payment providers."""

    method: str

    async def initiate(self, req: GatewayInitiateRequest) -> GatewayInitiateResult: ...

    async def parse_notification(self, headers: Mapping[str, str], body: bytes) -> GatewayNotification:
        """Verify and decode a callback; never raises for malformed or forged input."""
        ...

    async def query_status(self, gateway_reference: str) -> GatewayQueryResult: ...

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult: ...

    async def query_refund(self, gateway_reference: str, refund_id: str) -> GatewayRefundResult: ...

    async def close(self, gateway_reference: str) -> None: ...
