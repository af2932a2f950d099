"""
REST API客户端基类

账簿等外部 REST 服务的公共能力：
- tenacity 重试（仅限超时、网络错误与 429/5xx）
- 非幂等请求（POST/PATCH）只在请求确定未送达或被 429 拒绝时重试
- 非 2xx 响应转换为 APIError
- 认证头管理，401 后调用 refresh_auth() 并重放一次
"""
import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.logging_config import get_logger

logger = get_logger(__name__)

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
IDEMPOTENT_METHODS = {"GET", "HEAD", "OPTIONS", "PUT", "DELETE"}

# 这些异常发生时请求一定没有到达服务端
UNSENT_EXCEPTIONS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


@dataclass
class APIResponse:
    """API响应封装"""
    status_code: int
    data: Any
    elapsed_ms: float
    request_id: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400


class APIError(Exception):
    """外部 API 调用失败（重试耗尽或不可重试的响应）"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.request_id = request_id
        super().__init__(message)

    def __str__(self):
        parts = [self.message]
        if self.status_code:
            parts.append(f"Status: {self.status_code}")
        if self.request_id:
            parts.append(f"Request ID: {self.request_id}")
        return " | ".join(parts)


class RetryableAPIError(APIError):
    """可重试的响应（429/5xx），只在重试循环内部使用"""

    def __init__(self, response: APIResponse, message: str):
        super().__init__(message, status_code=response.status_code, request_id=response.request_id)
        self.response = response


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, RetryableAPIError) and exc.status_code == 429


class BaseAPIClient:
    """
    REST API客户端基类

    子类实现具体接口；需要令牌刷新的子类覆盖 refresh_auth()。
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: Union[float, httpx.Timeout] = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: API基础URL
            timeout: 请求超时时间（秒）或 httpx.Timeout
            max_retries: 首次请求之外的最大重试次数
            retry_delay: 指数退避基数（秒）
            headers: 默认请求头
            transport: 自定义传输层（测试时注入 MockTransport）
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport

        self.default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if headers:
            self.default_headers.update(headers)

        self._client: Optional[httpx.AsyncClient] = None

    def set_auth_token(self, token: str, header_name: str = "Authorization", prefix: str = "Bearer"):
        self.default_headers[header_name] = f"{prefix} {token}" if prefix else token

    @property
    def client(self) -> httpx.AsyncClient:
        """懒创建 HTTP 客户端"""
        if self._client is None:
            timeout = self.timeout if isinstance(self.timeout, httpx.Timeout) else httpx.Timeout(self.timeout)
            self._client = httpx.AsyncClient(timeout=timeout, transport=self._transport)
        return self._client

    async def aclose(self):
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def refresh_auth(self) -> bool:
        """令牌失效后刷新；返回 True 表示已刷新、可以重放请求"""
        return False

    @staticmethod
    def _error_message(response: APIResponse) -> str:
        if isinstance(response.data, dict):
            for key in ("message", "error", "detail"):
                if response.data.get(key):
                    return str(response.data[key])
        return f"API request failed with status {response.status_code}"

    async def _send_once(self, method: str, url: str, **kwargs) -> APIResponse:
        start = time.perf_counter()
        response = await self.client.request(method=method, url=url, headers=dict(self.default_headers), **kwargs)
        elapsed = (time.perf_counter() - start) * 1000

        data = None
        if "application/json" in response.headers.get("content-type", ""):
            try:
                data = response.json()
            except json.JSONDecodeError:
                data = None

        api_response = APIResponse(
            status_code=response.status_code,
            data=data,
            elapsed_ms=elapsed,
            request_id=response.headers.get("x-request-id"),
        )
        logger.debug(
            "api_response",
            method=method,
            url=url,
            status_code=api_response.status_code,
            elapsed_ms=round(elapsed, 2),
        )

        if api_response.status_code in RETRY_STATUS_CODES:
            if api_response.status_code == 429:
                try:
                    retry_after = float(response.headers.get("retry-after") or 0)
                except ValueError:
                    retry_after = 0
                if retry_after > 0:
                    await asyncio.sleep(min(retry_after, 5.0))
            raise RetryableAPIError(api_response, f"Transient API error with status {api_response.status_code}")
        return api_response

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        idempotent: Optional[bool] = None,
        _auth_retry: bool = True,
    ) -> APIResponse:
        """
        发送HTTP请求

        idempotent 默认按 HTTP 方法推断。非幂等请求在读超时或 5xx 后不重试：
        服务端可能已经落库，重放会产生重复记录。

        Raises:
            APIError: 重试耗尽或不可重试的错误
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        if idempotent is None:
            idempotent = method.upper() in IDEMPOTENT_METHODS
        if idempotent:
            retry_on = retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, RetryableAPIError))
        else:
            retry_on = retry_if_exception_type(UNSENT_EXCEPTIONS) | retry_if_exception(_is_rate_limited)
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, min=self.retry_delay, max=self.retry_delay * 8),
            retry=retry_on,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning("api_request_retry", method=method, url=url, attempt=attempt.retry_state.attempt_number)
                    response = await self._send_once(method, url, params=params, json=json_data)
        except httpx.TimeoutException as exc:
            raise APIError(f"Request timeout calling {url}") from exc
        except httpx.NetworkError as exc:
            raise APIError(f"Network error: {exc}") from exc
        except RetryableAPIError as exc:
            raise APIError(self._error_message(exc.response), exc.status_code, exc.request_id) from exc

        if response.status_code == 401 and _auth_retry and await self.refresh_auth():
            logger.info("api_auth_refreshed", url=url)
            return await self._request(
                method, endpoint, params=params, json_data=json_data, idempotent=idempotent, _auth_retry=False
            )
        if response.is_error:
            raise APIError(self._error_message(response), response.status_code, response.request_id)
        return response
