"""
REST API客户端基类

提供通用的HTTP请求功能，包括：
- 自动重试（超时、网络错误、429/5xx）
- 错误响应映射为 APIError 子类
- 结构化请求日志
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.logging_config import get_logger


logger = get_logger(__name__)


@dataclass
class APIResponse:
    """API响应封装"""
    status_code: int
    headers: Dict[str, str]
    data: Any
    raw_content: bytes
    elapsed_ms: float
    request_id: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400

    def json(self) -> Any:
        if self.data is not None:
            return self.data
        return json.loads(self.raw_content)


class APIError(Exception):
    """API错误基类"""
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[APIResponse] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.message)


class NotFoundError(APIError):
    """资源未找到"""


class AuthenticationError(APIError):
    """认证失败"""


class RetryableAPIError(APIError):
    """可重试的错误（429/5xx）"""


RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning("api_request_retry", attempt=state.attempt_number, error=str(exc) if exc else None)


class BaseAPIClient:
    """
    REST API客户端基类

    子类通过 get/post 等方法调用具体接口，错误以 APIError 抛出
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if headers:
            self.default_headers.update(headers)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _raise_for_error(self, response: APIResponse) -> None:
        message = f"API request failed with status {response.status_code}"
        if isinstance(response.data, dict):
            message = response.data.get("message") or response.data.get("detail") or message
        if response.status_code == 404:
            raise NotFoundError(message, response.status_code, response)
        if response.status_code in (401, 403):
            raise AuthenticationError(message, response.status_code, response)
        raise APIError(message, response.status_code, response)

    async def _send_once(self, method: str, endpoint: str, **kwargs) -> APIResponse:
        started = time.perf_counter()
        response = await self._get_client().request(method, "/" + endpoint.lstrip("/"), **kwargs)
        elapsed = (time.perf_counter() - started) * 1000

        data = None
        if "application/json" in response.headers.get("content-type", ""):
            try:
                data = response.json()
            except json.JSONDecodeError:
                data = None

        api_response = APIResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            data=data,
            raw_content=response.content,
            elapsed_ms=elapsed,
            request_id=response.headers.get("x-request-id"),
        )
        logger.debug(
            "api_response",
            method=method,
            endpoint=endpoint,
            status_code=api_response.status_code,
            elapsed_ms=round(elapsed, 2),
        )
        if api_response.status_code in RETRY_STATUS_CODES:
            raise RetryableAPIError(
                f"Transient API error with status {api_response.status_code}",
                api_response.status_code,
                api_response,
            )
        if api_response.is_error:
            self._raise_for_error(api_response)
        return api_response

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any] | BaseModel] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> APIResponse:
        if isinstance(json_data, BaseModel):
            json_data = json_data.model_dump(mode="json", exclude_unset=True)
        request_headers = {**self.default_headers, **(headers or {})}

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, min=self.retry_delay, max=self.retry_delay * 8),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, RetryableAPIError)),
            before_sleep=_log_retry,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send_once(
                        method, endpoint, params=params, json=json_data, headers=request_headers
                    )
        except httpx.TimeoutException as exc:
            raise APIError(f"Request timeout after {self.timeout}s") from exc
        except httpx.NetworkError as exc:
            raise APIError(f"Network error: {exc}") from exc
        except RetryableAPIError as exc:
            raise APIError(exc.message, exc.status_code, exc.response) from exc
        raise APIError("Request was not attempted")

    async def get(self, endpoint: str, **kwargs) -> APIResponse:
        return await self._request("GET", endpoint, **kwargs)

    async def post(self, endpoint: str, **kwargs) -> APIResponse:
        return await self._request("POST", endpoint, **kwargs)
