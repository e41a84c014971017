"""
安全错误处理 - 防止信息泄露的错误出口

所有面向用户的错误都经过这里: 按类别给出固定的提示语，
附带关联ID，完整堆栈和上下文只在调试模式下写日志。
"""

import asyncio
import functools
import hashlib
import logging
import time
from typing import Any, Callable, Dict, Optional

from core.exceptions import (
    GatewayError,
    PolicyViolation,
    RateLimited,
    ValidationError,
    generate_error_id,
    redact,
)

logger = logging.getLogger(__name__)


# 策略规则 -> 用户提示与是否应终止
_RULE_MESSAGES = {
    "command_injection": ("Invalid command detected. Operation blocked for security.", True),
    "path_traversal": ("Invalid file path detected. Operation blocked for security.", True),
    "malicious_input": ("Suspicious input detected. Operation blocked for security.", True),
}


def sanitize_for_logging(value: Any) -> str:
    """屏蔽凭证类子串并截断到200字符"""
    return redact(value)


def generate_secure_hash(value: str) -> str:
    """生成用于错误追踪的短哈希"""
    digest = hashlib.sha256(f"{value}{time.time_ns()}".encode("utf-8")).hexdigest()
    return digest[:8]


def handle_secure_error(error: BaseException, context: Optional[Dict[str, Any]] = None,
                        debug: Optional[bool] = None) -> Dict[str, Any]:
    """
    安全的错误处理，不泄露内部信息

    Args:
        error: 捕获到的异常
        context: 调用上下文（仅调试模式写入日志）
        debug: 是否调试模式，None 时按运行环境判断

    Returns:
        {user_message, error_id, handled, should_exit}
    """
    if debug is None:
        from core.config import is_debug_mode
        debug = is_debug_mode()

    error_id = getattr(error, "error_id", None) or generate_error_id()
    should_exit = False

    if debug:
        logger.debug(
            f"错误详情 [{error_id}]: {type(error).__name__}: {redact(str(error), 500)} "
            f"context={redact(repr(context or {}), 500)}",
            exc_info=error,
        )

    if isinstance(error, RateLimited):
        user_message = "Too many requests. Please wait before trying again."
    elif isinstance(error, ValidationError):
        field = error.field or "input"
        user_message = f"Invalid input for {field}. Please check the format and try again."
    elif isinstance(error, PolicyViolation) and error.rule in _RULE_MESSAGES:
        user_message, should_exit = _RULE_MESSAGES[error.rule]
    elif isinstance(error, GatewayError):
        user_message = "Security validation failed. Please check your input."
    else:
        user_message = "An unexpected error occurred. Please try again."

    logger.error(f"{user_message} (error id: {error_id})")

    return {
        "user_message": user_message,
        "error_id": error_id,
        "handled": True,
        "should_exit": should_exit,
    }


def with_secure_error_handling(func: Callable = None, *, context: Optional[Dict[str, Any]] = None):
    """
    安全错误处理装饰器，异常时返回 handle_secure_error 的结果

    使用:
        @with_secure_error_handling
        async def check(name):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        ctx = dict(context or {}, function=fn.__name__)

        @functools.wraps(fn)
        def sync_wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                return handle_secure_error(e, ctx)

        @functools.wraps(fn)
        async def async_wrapper(*args, **kwargs):
            try:
                return await fn(*args, **kwargs)
            except Exception as e:
                return handle_secure_error(e, ctx)

        if asyncio.iscoroutinefunction(fn):
            return async_wrapper
        return sync_wrapper

    if func is not None:
        return decorator(func)
    return decorator


class create_security_error:
    """标准安全错误工厂"""

    @staticmethod
    def command_injection(command: Any) -> PolicyViolation:
        return PolicyViolation("Command injection attempt detected", rule="command_injection",
                               details={"command": redact(command)})

    @staticmethod
    def path_traversal(path: Any) -> PolicyViolation:
        return PolicyViolation("Path traversal attempt detected", rule="path_traversal",
                               details={"path": redact(path)})

    @staticmethod
    def malicious_input(value: Any, input_type: str) -> PolicyViolation:
        return PolicyViolation("Malicious input pattern detected", rule="malicious_input",
                               details={"input_type": input_type, "pattern": redact(value)})

    @staticmethod
    def rate_limit(identifier: Any, retry_after_ms: Optional[int] = None) -> RateLimited:
        return RateLimited("Rate limit exceeded", retry_after_ms=retry_after_ms,
                           details={"identifier": redact(identifier)})

    @staticmethod
    def invalid_package_name(name: Any) -> ValidationError:
        return ValidationError("Invalid package name format", field="packageName", value=name)

    @staticmethod
    def invalid_file_path(path: Any) -> ValidationError:
        return ValidationError("Invalid file path format", field="filePath", value=path)
