import pytest
from celery.exceptions import Retry

from domain.common.exceptions import LockTimeoutException
from domain.payment.exceptions import GatewayRejectedException, GatewayUnavailableException
from infrastructure.tasks.tasks import payments as payment_tasks


def _failing_run(exc):
    def _run(work):
        raise exc

    return _run


@pytest.fixture
def retries(monkeypatch):
    seen = []

    def _retry(*args, exc=None, **kwargs):
        seen.append(exc)
        return Retry(exc=exc)

    monkeypatch.setattr(payment_tasks.query_payment_status, "retry", _retry)
    monkeypatch.setattr(payment_tasks.query_refund_status, "retry", _retry)
    return seen


@pytest.mark.parametrize(
    "exc",
    [GatewayUnavailableException("gateway down", gateway="wechat"), LockTimeoutException("payment:5", 5.0)],
)
def test_status_poll_retries_transient_errors(monkeypatch, retries, exc):
    monkeypatch.setattr(payment_tasks, "_run", _failing_run(exc))

    with pytest.raises(Retry):
        payment_tasks.query_payment_status(5)
    with pytest.raises(Retry):
        payment_tasks.query_refund_status(5)

    assert retries == [exc, exc]


def test_status_poll_does_not_retry_business_errors(monkeypatch, retries):
    rejected = GatewayRejectedException("refund rejected", gateway="alipay")
    monkeypatch.setattr(payment_tasks, "_run", _failing_run(rejected))

    with pytest.raises(GatewayRejectedException):
        payment_tasks.query_refund_status(5)
    assert retries == []
