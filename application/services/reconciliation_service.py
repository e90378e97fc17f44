"""
Reconciliation report: local aggregates per (day, method) cross-checked
against gateway truth. Read-only; discrepancies are reported, never corrected.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Mapping, Optional

import anyio

from application.dtos.payments import (
    GatewayQueryResult,
    IncidentView,
    ReconciliationBucket,
    ReconciliationMismatch,
    ReconciliationReport,
)
from application.ports.payment_gateway import GatewayClient
from application.services.payment_service import GATEWAY_ERRORS, UnitOfWorkFactory
from core.logging_config import get_logger
from core.settings import PaymentSettings
from domain.common.exceptions import DomainValidationException
from domain.common.money import ZERO
from domain.payment.entity import Payment, PaymentMethod, PaymentStatus


logger = get_logger(__name__)

# deep 模式下额外核对的本地状态
DEEP_STATUSES = frozenset({
    PaymentStatus.PAID,
    PaymentStatus.REFUNDED,
    PaymentStatus.CANCELLED,
    PaymentStatus.FAILED,
})


def _classify(payment: Payment, result: GatewayQueryResult) -> Optional[tuple[str, Optional[str]]]:
    """返回 (mismatch kind, detail)，一致时返回 None"""
    status = payment.status
    remote = result.status
    if status == PaymentStatus.PENDING:
        if remote == "paid":
            return "pending_but_paid", None
        return None
    if status == PaymentStatus.PAID:
        if remote == "not_found":
            return "paid_but_missing", None
        if remote != "paid":
            return "paid_but_unpaid", None
        if result.amount is not None and result.amount != payment.amount:
            return "amount_mismatch", None
        return None
    if status == PaymentStatus.REFUNDED:
        # 全额退款后支付宝交易为 TRADE_CLOSED，微信为 REFUND
        if remote == "not_found":
            return "paid_but_missing", None
        if remote not in ("paid", "closed"):
            return "paid_but_unpaid", None
        return None
    if remote == "paid":
        return "closed_but_paid", f"local status {status.value}"
    return None


class ReconciliationService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        gateways: Mapping[PaymentMethod, GatewayClient],
        settings: PaymentSettings,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = dict(gateways)
        self._settings = settings

    async def get_reconciliation(
        self,
        start: datetime,
        end: datetime,
        payment_method: Optional[PaymentMethod] = None,
        *,
        deep: bool = False,
    ) -> ReconciliationReport:
        if start >= end:
            raise DomainValidationException("开始时间必须早于结束时间", field="start")

        async with self._uow_factory(readonly=True) as uow:
            payments = await uow.payment_repository.list_created_between(
                start, end, payment_method=payment_method
            )
            incidents = await uow.payment_repository.list_incidents(start, end)

        buckets = self._aggregate(payments)
        mismatches: list[ReconciliationMismatch] = []
        checked = 0
        for payment in payments:
            gateway = self._gateways.get(payment.payment_method)
            if gateway is None:
                continue
            if payment.status != PaymentStatus.PENDING and not (deep and payment.status in DEEP_STATUSES):
                continue
            checked += 1
            mismatch = await self._check(gateway, payment)
            if mismatch is not None:
                mismatches.append(mismatch)

        if payment_method is not None:
            numbers = {p.payment_number for p in payments}
            incidents = [i for i in incidents if i.payment_number in numbers]

        logger.info(
            "reconciliation_generated",
            start=start.isoformat(),
            end=end.isoformat(),
            payment_method=payment_method.value if payment_method else None,
            payments=len(payments),
            checked=checked,
            mismatches=len(mismatches),
            incidents=len(incidents),
        )
        return ReconciliationReport(
            start=start,
            end=end,
            payment_method=payment_method,
            deep=deep,
            checked=checked,
            buckets=buckets,
            mismatches=mismatches,
            incidents=[IncidentView.from_entity(i) for i in incidents],
            generated_at=datetime.now(timezone.utc),
        )

    async def _check(self, gateway: GatewayClient, payment: Payment) -> Optional[ReconciliationMismatch]:
        def mismatch(kind: str, result: Optional[GatewayQueryResult] = None, detail: Optional[str] = None):
            return ReconciliationMismatch(
                payment_id=payment.id,
                payment_number=payment.payment_number,
                payment_method=payment.payment_method,
                kind=kind,
                local_status=payment.status,
                gateway_status=(result.raw_status or result.status) if result else None,
                local_amount=payment.amount,
                gateway_amount=result.amount if result else None,
                detail=detail,
            )

        try:
            with anyio.fail_after(self._settings.timeouts.query):
                result = await gateway.query_status(payment.gateway_reference or payment.payment_number)
        except TimeoutError:
            return mismatch("gateway_unknown", detail="gateway query timed out")
        except GATEWAY_ERRORS as exc:
            return mismatch("gateway_unknown", detail=exc.message)

        classified = _classify(payment, result)
        if classified is None:
            return None
        kind, detail = classified
        logger.warning(
            "reconciliation_mismatch",
            payment_id=payment.id,
            payment_number=payment.payment_number,
            kind=kind,
            local_status=payment.status.value,
            gateway_status=result.status,
        )
        return mismatch(kind, result, detail)

    @staticmethod
    def _aggregate(payments: list[Payment]) -> list[ReconciliationBucket]:
        counts: dict[tuple[date, PaymentMethod], dict[str, int]] = defaultdict(lambda: defaultdict(int))
        amounts: dict[tuple[date, PaymentMethod], dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
        refunded: dict[tuple[date, PaymentMethod], Decimal] = defaultdict(lambda: ZERO)
        for payment in payments:
            created = payment.created_at or datetime.now(timezone.utc)
            key = (created.date(), payment.payment_method)
            counts[key][payment.status.value] += 1
            amounts[key][payment.status.value] += payment.amount
            refunded[key] += payment.refund_amount

        return [
            ReconciliationBucket(
                day=day,
                payment_method=method,
                count_by_status=dict(counts[(day, method)]),
                amount_by_status=dict(amounts[(day, method)]),
                refunded_amount=refunded[(day, method)],
            )
            for day, method in sorted(counts, key=lambda k: (k[0], k[1].value))
        ]
