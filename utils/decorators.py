#!/usr/bin/env python3
"""
装饰器库 - 提供日志、性能监控、重试等通用装饰器
消除重复的横切关注点代码
"""

import time
import functools
import logging
from typing import Awaitable, Callable, Any, Optional, TypeVar
import asyncio

from core.exceptions import is_retriable, redact

logger = logging.getLogger(__name__)

T = TypeVar('T')


def log_execution(func: Callable) -> Callable:
    """
    日志装饰器 - 记录函数执行

    使用:
        @log_execution
        def my_function():
            pass
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        func_name = func.__name__
        logger.debug(f"开始执行: {func_name}")
        try:
            result = func(*args, **kwargs)
            logger.debug(f"执行成功: {func_name}")
            return result
        except Exception as e:
            logger.error(f"执行失败: {func_name} - {type(e).__name__}: {redact(str(e))}")
            raise
    return wrapper


def async_log_execution(func: Callable) -> Callable:
    """异步日志装饰器"""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        func_name = func.__name__
        logger.debug(f"开始执行: {func_name}")
        try:
            result = await func(*args, **kwargs)
            logger.debug(f"执行成功: {func_name}")
            return result
        except Exception as e:
            logger.error(f"执行失败: {func_name} - {type(e).__name__}: {redact(str(e))}")
            raise
    return wrapper


def async_measure_time(func: Callable) -> Callable:
    """异步性能监控装饰器"""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start = time.monotonic()
        try:
            return await func(*args, **kwargs)
        finally:
            elapsed = time.monotonic() - start
            logger.info(f"{func.__name__} 执行时间: {elapsed:.2f}秒")
    return wrapper


async def retry_async(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    retry_if: Callable[[BaseException], bool] = is_retriable,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    name: Optional[str] = None
) -> T:
    """
    按指数退避重试一个无参协程函数

    第 n 次失败后等待 delay * backoff^(n-1) 秒；retry_if 返回 False 的异常
    立即抛出，最后一次失败后不再等待。重试严格串行。

    Args:
        func: 每次调用返回一个新的协程
        max_attempts: 最大尝试次数（含首次）
        delay: 初始延迟时间(秒)
        backoff: 延迟倍增因子
        retry_if: 判断异常是否可重试
        sleep: 等待函数
        name: 日志中使用的名称

    Returns:
        首次成功的结果
    """
    name = name or getattr(func, "__name__", "operation")
    current_delay = delay
    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except Exception as e:
            if not retry_if(e):
                raise
            if attempt >= max_attempts:
                logger.error(f"{name} 重试失败 ({max_attempts}次): {type(e).__name__}")
                raise
            logger.warning(f"{name} 失败 (尝试 {attempt}/{max_attempts})，{current_delay:.2f}秒后重试: {type(e).__name__}")
            await sleep(current_delay)
            current_delay *= backoff
    raise ValueError("max_attempts must be >= 1")


def async_retry(max_attempts: int = 3, delay: float = 1.0, backoff: float = 2.0,
                retry_if: Callable[[BaseException], bool] = is_retriable):
    """
    异步重试装饰器

    使用:
        @async_retry(max_attempts=3, delay=0.5)
        async def fetch():
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_async(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                delay=delay,
                backoff=backoff,
                retry_if=retry_if,
                name=func.__name__,
            )
        return wrapper
    return decorator
