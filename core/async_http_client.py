#!/usr/bin/env python3
"""
安全异步 HTTP 客户端 - 防止SSRF与资源耗尽
所有外部请求的统一出口: URL白名单、按主机限流、超时、
流式响应大小上限和指数退避重试
"""

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import urljoin

import aiohttp

from core.config import HttpClientConfig
from core.exceptions import (
    RateLimited,
    RequestTimeout,
    ResponseFormatError,
    ResponseTooLarge,
    TransportError,
    is_retriable,
)
from core.rate_limiter import RateLimiter, http_rate_limiter
from core.security.event_log import SecurityEventLog, security_event_log
from core.security.input_validator import InputValidator, default_validator
from utils.decorators import retry_async

logger = logging.getLogger(__name__)

# 调用方不得设置的请求头（小写）
FORBIDDEN_HEADERS = frozenset({"authorization", "cookie", "x-forwarded-for", "x-real-ip"})

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

_READ_CHUNK = 64 * 1024


@dataclass
class HttpResponse:
    """HTTP 响应数据类，body 已完整读取且不超过上限"""
    status: int
    headers: Dict[str, str]
    body: bytes
    url: str
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class SecureHttpClient:
    """
    安全 HTTP 客户端

    特性:
    - 仅允许 HTTPS 和白名单主机，重定向逐跳重新验证
    - 按主机名滑动窗口限流
    - 每次尝试独立超时
    - Content-Length 预检 + 流式字节计数
    - 传输错误指数退避重试，终止性错误立即抛出
    """

    def __init__(
        self,
        config: HttpClientConfig = None,
        validator: InputValidator = None,
        rate_limiter: RateLimiter = None,
        session: Optional[aiohttp.ClientSession] = None,
        event_log: SecurityEventLog = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """
        初始化 HTTP 客户端

        Args:
            config: 客户端配置
            validator: URL 验证器
            rate_limiter: 限流器，默认按 config.rate_limit 新建
            session: 外部注入的会话（由调用方负责关闭）
            event_log: 安全事件日志
            sleep: 重试等待函数
        """
        self.config = config or HttpClientConfig()
        self.validator = validator if validator is not None else default_validator
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter(self.config.rate_limit)
        self.event_log = event_log if event_log is not None else security_event_log
        self._sleep = sleep

        self._session = session
        self._owns_session = session is None

        # 统计信息
        self.stats = {
            "total_requests": 0,
            "success_requests": 0,
            "failed_requests": 0,
            "retries": 0,
            "total_time": 0.0
        }

    async def __aenter__(self):
        """上下文管理器入口"""
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """上下文管理器出口"""
        await self.close()
        return False

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or (self._owns_session and self._session.closed):
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_ms / 1000),
                connector=aiohttp.TCPConnector(limit=10),
            )
            self._owns_session = True
        return self._session

    async def close(self):
        """关闭自有会话"""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None

    def _build_headers(self, headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        merged = {
            "User-Agent": self.config.user_agent,
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Cache-Control": "no-cache",
            "Connection": "close",
        }
        for name, value in (headers or {}).items():
            # 覆盖默认头时忽略大小写
            for existing in [k for k in merged if k.lower() == name.lower()]:
                del merged[existing]
            merged[name] = value
        return {k: v for k, v in merged.items() if k.lower() not in FORBIDDEN_HEADERS}

    # ========== 请求 ==========

    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Union[bytes, str]] = None
    ) -> HttpResponse:
        """
        发送安全请求

        Args:
            url: 目标 URL（必须通过白名单验证）
            method: HTTP 方法
            headers: 额外请求头，敏感头会被移除
            body: 请求体

        Returns:
            2xx/3xx 响应

        Raises:
            PolicyViolation: URL 不合规
            RateLimited: 超出主机限流
            RequestTimeout: 单次尝试超时
            ResponseTooLarge: 响应超过上限
            TransportError: 网络错误或 HTTP 错误状态（重试耗尽后）
        """
        parsed = self.validator.validate_url(url, self.config.allowed_hosts)

        host = parsed.hostname
        if not self.rate_limiter.is_allowed(host):
            wait_ms = self.rate_limiter.get_time_until_reset(host)
            self.event_log.log_event("rate_limit", {"host": host, "retry_after_ms": wait_ms})
            raise RateLimited(
                f"Rate limit exceeded. Try again in {math.ceil(wait_ms / 1000)} seconds",
                retry_after_ms=wait_ms
            )

        request_headers = self._build_headers(headers)
        attempts = 0

        async def attempt() -> HttpResponse:
            nonlocal attempts
            attempts += 1
            if attempts > 1:
                self.stats["retries"] += 1
            return await self._attempt_with_timeout(method.upper(), parsed.geturl(), request_headers, body)

        start_time = time.monotonic()
        self.stats["total_requests"] += 1
        try:
            response = await retry_async(
                attempt,
                max_attempts=self.config.max_retries,
                delay=self.config.retry_base_delay_ms / 1000,
                backoff=2.0,
                retry_if=is_retriable,
                sleep=self._sleep,
                name=f"{method.upper()} {host}",
            )
        except Exception:
            self.stats["failed_requests"] += 1
            raise

        elapsed = time.monotonic() - start_time
        response.elapsed = elapsed
        self.stats["success_requests"] += 1
        self.stats["total_time"] += elapsed
        return response

    async def _attempt_with_timeout(self, method: str, url: str, headers: Dict[str, str],
                                    body: Optional[Union[bytes, str]]) -> HttpResponse:
        timeout_ms = self.config.timeout_ms
        try:
            return await asyncio.wait_for(self._attempt(method, url, headers, body), timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"Request timed out after {timeout_ms}ms", limit=timeout_ms, cause=e)
        except aiohttp.ClientError as e:
            raise TransportError(f"Request failed: {type(e).__name__}", cause=e)

    async def _attempt(self, method: str, url: str, headers: Dict[str, str],
                       body: Optional[Union[bytes, str]]) -> HttpResponse:
        session = await self._get_session()
        current_url = url

        for _ in range(self.config.max_redirects + 1):
            async with session.request(method, current_url, headers=headers, data=body,
                                       allow_redirects=False) as resp:
                location = resp.headers.get("Location")
                if resp.status in REDIRECT_STATUSES and location:
                    # 重定向目标同样需要通过白名单
                    next_url = urljoin(current_url, location)
                    self.validator.validate_url(next_url, self.config.allowed_hosts)
                    logger.debug(f"跟随重定向: {resp.status} -> {next_url}")
                    if resp.status == 303 or (resp.status in (301, 302) and method == "POST"):
                        method, body = "GET", None
                    current_url = next_url
                    continue

                self._check_content_length(resp)

                if resp.status >= 400:
                    error_text = await self._safe_read_error(resp)
                    raise TransportError(
                        f"HTTP {resp.status}",
                        status_code=resp.status,
                        retriable=resp.status >= 500 or resp.status in (408, 429),
                        details={"body": error_text}
                    )

                content = await self._read_body(resp)
                return HttpResponse(
                    status=resp.status,
                    headers=dict(resp.headers),
                    body=content,
                    url=current_url,
                )

        raise TransportError(f"Too many redirects (max {self.config.max_redirects})", retriable=False)

    def _check_content_length(self, resp):
        limit = self.config.max_response_bytes
        raw = resp.headers.get("Content-Length")
        if raw is None:
            return
        try:
            length = int(raw)
        except ValueError:
            return
        if length > limit:
            raise ResponseTooLarge(f"Response too large: {length} bytes (max {limit})",
                                   limit=limit, observed=length)

    async def _read_body(self, resp) -> bytes:
        """流式读取响应体，超过上限立即中止"""
        limit = self.config.max_response_bytes
        total = 0
        chunks = []
        async for chunk in resp.content.iter_chunked(_READ_CHUNK):
            total += len(chunk)
            if total > limit:
                raise ResponseTooLarge(f"Response body too large (max {limit} bytes)",
                                       limit=limit, observed=total)
            chunks.append(chunk)
        return b"".join(chunks)

    async def _safe_read_error(self, resp) -> str:
        """读取错误响应的前若干字符"""
        max_chars = self.config.max_error_body_chars
        try:
            raw = await resp.content.read(max_chars * 4)
        except aiohttp.ClientError:
            return "Unable to read response"
        text = raw.decode("utf-8", errors="replace")
        return text[:max_chars] + "..." if len(text) > max_chars else text

    async def get_json(self, url: str) -> Any:
        """
        获取 JSON 数据

        Returns:
            解析后的对象或数组

        Raises:
            ResponseFormatError: 不是合法的 JSON 或不是对象/数组
        """
        response = await self.request(url, headers={"Accept": "application/json"})
        if not response.ok:
            raise TransportError(f"Failed to fetch JSON: HTTP {response.status}",
                                 status_code=response.status, retriable=False)

        try:
            data = json.loads(response.body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ResponseFormatError("Invalid JSON response format", cause=e)

        if not isinstance(data, (dict, list)):
            raise ResponseFormatError("Invalid JSON response structure")
        return data

    def get_stats(self) -> Dict[str, Any]:
        """获取统计信息"""
        total = self.stats["total_requests"]
        return {
            **self.stats,
            "average_time": self.stats["total_time"] / self.stats["success_requests"]
            if self.stats["success_requests"] else 0,
            "success_rate": self.stats["success_requests"] / total if total else 0
        }


# 默认客户端实例
secure_http_client = SecureHttpClient(rate_limiter=http_rate_limiter)
