"""Payment compensation tasks: stale pending reconciliation and status polling."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from celery import shared_task

from core.logging_config import get_logger
from domain.common.exceptions import LockTimeoutException
from domain.payment.exceptions import GatewayUnavailableException
from infrastructure.composition import PaymentContainer
from infrastructure.database import dispose_engine
from ..utils.base_task import BaseTask

logger = get_logger(__name__)

T = TypeVar("T")


def _run(work: Callable[[PaymentContainer], Awaitable[T]]) -> T:
    """Run one async unit of work on a fresh event loop with its own engine and clients."""

    async def _main() -> T:
        container = PaymentContainer()
        try:
            return await work(container)
        finally:
            await container.close()
            await dispose_engine()

    return asyncio.run(_main())


# Gateway outages and lock timeouts are retried; business errors fail the task.
TRANSIENT_ERRORS = (GatewayUnavailableException, LockTimeoutException)


@shared_task(name="payments.reconcile_stale_pending", bind=True, base=BaseTask)
def reconcile_stale_pending(self, limit: int | None = None) -> dict[str, int]:
    """Query the gateway for pending payments older than the staleness threshold."""
    return _run(lambda c: c.payment_service().reconcile_stale_pending(limit))


@shared_task(
    name="payments.query_status",
    bind=True,
    base=BaseTask,
    max_retries=3,
    default_retry_delay=30,
)
def query_payment_status(self, payment_id: int) -> dict[str, Any]:
    """Poll one payment on demand, e.g. after a client reports it has paid."""
    try:
        view = _run(lambda c: c.payment_service().get_payment_status(payment_id))
    except TRANSIENT_ERRORS as exc:
        logger.warning("payment_status_poll_failed", payment_id=payment_id, error=exc.message)
        raise self.retry(exc=exc)
    logger.info("payment_status_polled", payment_id=payment_id, status=view.status.value)
    return {"payment_id": payment_id, "status": view.status.value}


@shared_task(
    name="payments.query_refund_status",
    bind=True,
    base=BaseTask,
    max_retries=3,
    default_retry_delay=30,
)
def query_refund_status(self, payment_id: int) -> dict[str, Any]:
    """Poll a refund still pending at the gateway."""
    try:
        view = _run(lambda c: c.payment_service().get_refund_status(payment_id))
    except TRANSIENT_ERRORS as exc:
        logger.warning("refund_status_poll_failed", payment_id=payment_id, error=exc.message)
        raise self.retry(exc=exc)
    logger.info("refund_status_polled", payment_id=payment_id, refund_state=view.refund_state)
    return {"payment_id": payment_id, "refund_state": view.refund_state}
