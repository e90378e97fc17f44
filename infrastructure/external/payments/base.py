"""
Base gateway client implementing shared concerns: worker threads, timeouts,
retry, logging and status mapping.

Both vendor SDKs are synchronous. Every SDK call runs in a worker thread and is
bounded by the configured total timeout; a call that overruns is abandoned and
reported as GatewayUnavailableException.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, TypeVar

import anyio
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.logging_config import get_logger
from core.settings import PaymentRetry, PaymentTimeouts
from domain.payment.exceptions import GatewayUnavailableException
from shared.codes.payment_codes import GATEWAY_REFUND_STATUS_TO_INTERNAL, GATEWAY_STATUS_TO_INTERNAL


logger = get_logger(__name__)

T = TypeVar("T")


class BaseGatewayClient:
    method: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        retry: Optional[PaymentRetry] = None,
    ) -> None:
        self._timeouts = timeouts or PaymentTimeouts()
        self._retry_cfg = retry or PaymentRetry()

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking SDK call in a worker thread under the total timeout."""
        try:
            with anyio.fail_after(self._timeouts.total):
                return await anyio.to_thread.run_sync(fn, *args, abandon_on_cancel=True)
        except TimeoutError as exc:
            logger.warning("gateway_call_timeout", gateway=self.method, operation=operation, timeout=self._timeouts.total)
            raise GatewayUnavailableException(
                f"{self.method} {operation} timed out",
                gateway=self.method,
                details={"operation": operation},
            ) from exc
        except GatewayUnavailableException:
            raise
        except Exception as exc:
            translated = self._translate_error(operation, exc)
            if translated is None:
                raise
            raise translated from exc

    def _translate_error(self, operation: str, exc: Exception) -> Optional[Exception]:
        """Map SDK/transport errors; None re-raises the original exception."""
        if isinstance(exc, (OSError, ConnectionError)):
            logger.warning("gateway_transport_error", gateway=self.method, operation=operation, error=str(exc))
            return GatewayUnavailableException(
                f"{self.method} {operation} failed: {exc}",
                gateway=self.method,
                details={"operation": operation},
            )
        return None

    async def _retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Retry read-only calls on GatewayUnavailableException."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg.max) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg.base_backoff, min=0.1, max=2.0),
            retry=retry_if_exception_type(GatewayUnavailableException),
            reraise=True,
        ):
            with attempt:
                return await fn()

    # Helpers
    def _map_status(self, gateway_status: str) -> Optional[str]:
        return GATEWAY_STATUS_TO_INTERNAL.get(self.method, {}).get(gateway_status)

    def _map_refund_status(self, gateway_status: str) -> Optional[str]:
        return GATEWAY_REFUND_STATUS_TO_INTERNAL.get(self.method, {}).get(gateway_status)

    def _log(self, event: str, **kwargs) -> None:
        logger.info(event, gateway=self.method, **kwargs)
