from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from application.dtos.payments import GatewayQueryResult
from conftest import notification
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import PaymentMethod, PaymentStatus


def _window():
    now = datetime.now(timezone.utc)
    return now - timedelta(hours=1), now + timedelta(hours=1)


async def _pay_wechat(service, order_id, amount="20.00", transaction_id=None):
    created = await service.create_payment(order_id, PaymentMethod.WECHAT, Decimal(amount), 7)
    if transaction_id:
        await service.handle_notify(
            PaymentMethod.WECHAT,
            {},
            notification(
                gateway_reference=created.payment.payment_number,
                transaction_id=transaction_id,
                outcome="success",
                amount=Decimal(amount),
            ),
        )
    return created.payment


@pytest.mark.asyncio
async def test_pending_payment_paid_at_gateway_is_reported(container, service, wechat_gateway):
    pending = await _pay_wechat(service, 31)
    await _pay_wechat(service, 32, amount="15.00", transaction_id="4200000032")
    wechat_gateway.query_result = GatewayQueryResult(
        status="paid", transaction_id="4200000031", amount=Decimal("20.00"), raw_status="SUCCESS"
    )

    start, end = _window()
    report = await container.reconciliation_service().get_reconciliation(start, end)

    assert report.checked == 1
    assert len(report.mismatches) == 1
    mismatch = report.mismatches[0]
    assert mismatch.kind == "pending_but_paid"
    assert mismatch.payment_id == pending.id
    assert mismatch.gateway_status == "SUCCESS"

    assert len(report.buckets) == 1
    bucket = report.buckets[0]
    assert bucket.payment_method == PaymentMethod.WECHAT
    assert bucket.count_by_status == {"pending": 1, "paid": 1}
    assert bucket.amount_by_status["paid"] == Decimal("15.00")

    # 对账只读，本地状态不被修正
    view = await service.get_payment_status(pending.id)
    assert view.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_deep_check_reports_paid_but_missing(container, service, wechat_gateway):
    paid = await _pay_wechat(service, 33, transaction_id="4200000033")
    wechat_gateway.query_result = GatewayQueryResult(status="not_found")

    start, end = _window()
    shallow = await container.reconciliation_service().get_reconciliation(start, end)
    deep = await container.reconciliation_service().get_reconciliation(start, end, deep=True)

    assert shallow.checked == 0
    assert shallow.mismatches == []
    assert [m.kind for m in deep.mismatches] == ["paid_but_missing"]
    assert deep.mismatches[0].payment_number == paid.payment_number


@pytest.mark.asyncio
async def test_deep_check_reports_amount_mismatch(container, service, wechat_gateway):
    await _pay_wechat(service, 34, transaction_id="4200000034")
    wechat_gateway.query_result = GatewayQueryResult(
        status="paid", transaction_id="4200000034", amount=Decimal("19.00"), raw_status="SUCCESS"
    )

    start, end = _window()
    report = await container.reconciliation_service().get_reconciliation(start, end, deep=True)

    assert [m.kind for m in report.mismatches] == ["amount_mismatch"]
    assert report.mismatches[0].gateway_amount == Decimal("19.00")


@pytest.mark.asyncio
async def test_gateway_failure_is_reported_as_unknown(container, service, wechat_gateway, gateway_down):
    await _pay_wechat(service, 35)
    wechat_gateway.query_error = gateway_down

    start, end = _window()
    report = await container.reconciliation_service().get_reconciliation(start, end)

    assert [m.kind for m in report.mismatches] == ["gateway_unknown"]
    assert report.mismatches[0].detail == "gateway down"


@pytest.mark.asyncio
async def test_report_includes_incidents_and_skips_balance(container, service, recharge):
    await recharge(7, "100.00")
    await service.create_payment(36, PaymentMethod.BALANCE, Decimal("25.00"), 7)
    paid = await _pay_wechat(service, 37, transaction_id="4200000037")
    await service.handle_notify(
        PaymentMethod.WECHAT,
        {},
        notification(
            gateway_reference=paid.payment_number,
            transaction_id="4200000999",
            outcome="success",
            amount=Decimal("20.00"),
        ),
    )

    start, end = _window()
    report = await container.reconciliation_service().get_reconciliation(start, end, PaymentMethod.BALANCE)
    assert report.checked == 0
    assert report.incidents == []
    assert report.buckets[0].payment_method == PaymentMethod.BALANCE

    full = await container.reconciliation_service().get_reconciliation(start, end)
    assert [i.kind for i in full.incidents] == ["conflicting_confirmation"]
    assert full.incidents[0].payment_number == paid.payment_number


@pytest.mark.asyncio
async def test_window_must_be_ordered(container):
    now = datetime.now(timezone.utc)
    with pytest.raises(DomainValidationException):
        await container.reconciliation_service().get_reconciliation(now, now - timedelta(days=1))
