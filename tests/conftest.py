"""
测试公共夹具

FakeSession 模拟 aiohttp.ClientSession 的 request() 接口，按 URL 依次返回
预先登记的响应，不访问网络。
"""

import asyncio
import dataclasses
import json
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Union

import pytest

from core.async_http_client import SecureHttpClient
from core.config import HttpClientConfig, RateLimitConfig
from core.security.event_log import SecurityEventLog
from core.security.input_validator import InputValidator


class FakeContent:
    """模拟 aiohttp.StreamReader"""

    def __init__(self, body: bytes, response: "FakeResponse"):
        self._body = body
        self._pos = 0
        self._response = response

    async def iter_chunked(self, size: int):
        while self._pos < len(self._body):
            if self._response.chunk_delay:
                await asyncio.sleep(self._response.chunk_delay)
            chunk = self._body[self._pos:self._pos + size]
            self._pos += len(chunk)
            self._response.bytes_read += len(chunk)
            yield chunk

    async def read(self, n: int = -1) -> bytes:
        end = len(self._body) if n < 0 else self._pos + n
        chunk = self._body[self._pos:end]
        self._pos += len(chunk)
        self._response.bytes_read += len(chunk)
        return chunk


class FakeResponse:
    """预置响应"""

    def __init__(self, status: int = 200, body: Union[bytes, str, Dict, List, None] = b"",
                 headers: Optional[Dict[str, str]] = None, delay: float = 0.0,
                 chunk_delay: float = 0.0, raises: Optional[BaseException] = None):
        if isinstance(body, (dict, list)):
            body = json.dumps(body).encode("utf-8")
        elif isinstance(body, str):
            body = body.encode("utf-8")
        self.status = status
        self.body = body or b""
        self.headers = dict(headers or {})
        self.delay = delay
        self.chunk_delay = chunk_delay
        self.raises = raises
        self.bytes_read = 0
        self.released = False

    @property
    def content(self) -> FakeContent:
        # 同一个预置响应可能被多次返回，每次从头读取
        return FakeContent(self.body, self)


class _RequestContext:
    def __init__(self, response: FakeResponse):
        self._response = response

    async def __aenter__(self) -> FakeResponse:
        if self._response.delay:
            await asyncio.sleep(self._response.delay)
        if self._response.raises is not None:
            raise self._response.raises
        return self._response

    async def __aexit__(self, exc_type, exc, tb):
        self._response.released = True
        return False


class FakeSession:
    """按 URL 返回预置响应的会话"""

    def __init__(self):
        self.routes: Dict[str, List[FakeResponse]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def add(self, url: str, *responses: FakeResponse) -> "FakeSession":
        self.routes.setdefault(url, []).extend(responses)
        return self

    def add_json(self, url: str, payload: Any, status: int = 200) -> "FakeSession":
        return self.add(url, FakeResponse(status=status, body=payload))

    def request(self, method: str, url: str, headers=None, data=None, allow_redirects=True):
        self.calls.append({"method": method, "url": url, "headers": dict(headers or {}),
                           "data": data, "allow_redirects": allow_redirects})
        queue = self.routes.get(url)
        if not queue:
            return _RequestContext(FakeResponse(status=404, body=b"not found"))
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        return _RequestContext(response)

    async def close(self):
        self.closed = True


class SleepRecorder:
    """记录重试等待时间而不真正等待"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """创建临时目录"""
    with tempfile.TemporaryDirectory(prefix="deset_test_") as tmp:
        yield Path(tmp).resolve()


@pytest.fixture
def event_log() -> SecurityEventLog:
    """独立的安全事件日志"""
    return SecurityEventLog()


@pytest.fixture
def validator(event_log: SecurityEventLog) -> InputValidator:
    """使用独立事件日志的验证器"""
    return InputValidator(event_log=event_log)


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def http_client(fake_session, validator, event_log, sleep_recorder):
    """连接到 FakeSession 的 HTTP 客户端（不限流，允许下载统计主机）"""
    config = dataclasses.replace(
        HttpClientConfig(),
        allowed_hosts=HttpClientConfig().allowed_hosts | {"api.npmjs.org"},
        rate_limit=RateLimitConfig(max_requests=1000, window_ms=60_000),
    )
    return SecureHttpClient(config, validator=validator, session=fake_session,
                            event_log=event_log, sleep=sleep_recorder)
