#!/usr/bin/env python3
"""
速率限制器 - 按标识符计数的滑动窗口限流
"""

import logging
import math
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from core.config import RateLimitConfig

logger = logging.getLogger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """
    滑动窗口速率限制器

    特性:
    - 每个标识符（主机名、客户端ID等）独立配额
    - 每次检查时惰性清理所有标识符的过期时间戳
    - is_allowed 是同步方法，在事件循环中不会被其他协程打断

    使用示例:
        limiter = RateLimiter(RateLimitConfig(max_requests=3, window_ms=1000))
        if not limiter.is_allowed("registry.npmjs.org"):
            wait_ms = limiter.get_time_until_reset("registry.npmjs.org")
    """

    def __init__(self, config: RateLimitConfig = None, clock: Optional[Callable[[], float]] = None):
        """
        初始化速率限制器

        Args:
            config: 限流配置
            clock: 返回毫秒时间的时钟，默认为单调时钟
        """
        self.config = config or RateLimitConfig()
        self._clock = clock or _monotonic_ms

        # 标识符 -> 按时间排序的请求时间戳
        self._windows: Dict[str, Deque[float]] = {}

        # 统计信息
        self.stats = {
            "allowed": 0,
            "throttled": 0,
        }

    @property
    def max_requests(self) -> int:
        return self.config.max_requests

    @property
    def window_ms(self) -> int:
        return self.config.window_ms

    def _prune(self, now: float):
        """清理所有标识符中早于窗口起点的时间戳"""
        window_start = now - self.config.window_ms
        for identifier in list(self._windows):
            window = self._windows[identifier]
            while window and window[0] <= window_start:
                window.popleft()
            if not window:
                del self._windows[identifier]

    def is_allowed(self, identifier: str = "global") -> bool:
        """
        检查并登记一次请求

        Args:
            identifier: 限流标识符

        Returns:
            允许时返回 True 并记录本次请求；超限时返回 False 且不修改状态
        """
        now = self._clock()
        self._prune(now)

        window = self._windows.get(identifier)
        if window is not None and len(window) >= self.config.max_requests:
            self.stats["throttled"] += 1
            logger.debug(f"速率限制: {identifier} 已达到 {self.config.max_requests} 次/{self.config.window_ms}ms")
            return False

        if window is None:
            window = self._windows[identifier] = deque()
        window.append(now)
        self.stats["allowed"] += 1
        return True

    def get_time_until_reset(self, identifier: str = "global") -> int:
        """距离最早一次请求移出窗口的毫秒数，无记录时为 0"""
        window = self._windows.get(identifier)
        if not window:
            return 0
        remaining = window[0] + self.config.window_ms - self._clock()
        return max(0, math.ceil(remaining))

    def get_count(self, identifier: str = "global") -> int:
        """窗口内已登记的请求数"""
        self._prune(self._clock())
        window = self._windows.get(identifier)
        return len(window) if window else 0

    def reset(self, identifier: Optional[str] = None):
        """清空指定标识符（或全部）的窗口"""
        if identifier is None:
            self._windows.clear()
        else:
            self._windows.pop(identifier, None)

    def get_stats(self) -> dict:
        """获取统计信息"""
        return {
            **self.stats,
            "tracked_identifiers": len(self._windows),
            "config": {
                "max_requests": self.config.max_requests,
                "window_ms": self.config.window_ms,
            }
        }


# 默认实例: HTTP 客户端 10次/分钟，通用 3次/秒
http_rate_limiter = RateLimiter(RateLimitConfig(max_requests=10, window_ms=60_000))
general_rate_limiter = RateLimiter(RateLimitConfig(max_requests=3, window_ms=1_000))
