"""
deset-guard 统一异常体系

本模块定义了安全网关中所有错误场景对应的异常类型，
所有穿越公共边界的异常都会经过脱敏处理。

异常层次结构:
GatewayError (基类)
├── ConfigError (配置错误)
├── ValidationError (输入验证失败)
├── PolicyViolation (白名单/域名/命令策略拒绝)
├── ResourceLimitExceeded (资源上限)
│   ├── ExecutionTimeout
│   ├── OutputLimitExceeded
│   ├── RequestTimeout
│   └── ResponseTooLarge
├── RateLimited (被限流)
├── TransportError (网络传输错误，可重试)
├── ResponseFormatError (响应格式错误)
├── RegistryDataError (包仓库数据缺失)
├── IntegrityError (篡改/哈希不匹配/解密失败)
└── ProcessError (子进程异常退出)
    └── SpawnError

传播规则:
    ValidationError、PolicyViolation、ResourceLimitExceeded、RateLimited
    属于终止性错误，永不自动重试；TransportError 按 retriable 标记重试。

使用示例:
    from core.exceptions import PolicyViolation, wrap_exception

    raise PolicyViolation("Command not allowed", rule="command_whitelist")

    try:
        ...
    except GatewayError as e:
        return e.to_dict()
"""

from __future__ import annotations

import functools
import logging
import re
import secrets
import traceback
from typing import Any, Callable, Dict, Optional, Type, TypeVar, Union

T = TypeVar('T')

MAX_MESSAGE_LENGTH = 500
MAX_LOGGED_VALUE_LENGTH = 200

# 凭证类子串: password=xxx token: xxx api_key=xxx secret=xxx
_CREDENTIAL_PATTERNS = (
    (re.compile(r'password[=:]\s*[^\s&]+', re.IGNORECASE), 'password=***'),
    (re.compile(r'token[=:]\s*[^\s&]+', re.IGNORECASE), 'token=***'),
    (re.compile(r'api[_-]?key[=:]\s*[^\s&]+', re.IGNORECASE), 'api_key=***'),
    (re.compile(r'secret[=:]\s*[^\s&]+', re.IGNORECASE), 'secret=***'),
)


def redact(value: Any, max_length: int = MAX_LOGGED_VALUE_LENGTH) -> str:
    """
    脱敏处理: 屏蔽凭证类子串并截断长度

    参数:
        value: 待处理的值，非字符串返回占位符
        max_length: 最大保留长度

    返回:
        可安全写入日志的字符串
    """
    if not isinstance(value, str):
        return '[non-string value]'
    for pattern, replacement in _CREDENTIAL_PATTERNS:
        value = pattern.sub(replacement, value)
    return value[:max_length]


def generate_error_id() -> str:
    """生成随机关联ID，用于追踪错误"""
    return secrets.token_hex(8)


# ============================================================================
# 基础异常类
# ============================================================================

class GatewayError(Exception):
    """
    安全网关基础异常类

    所有自定义异常的父类，消息在构造时即完成脱敏，
    并附带随机关联ID。完整的详情与堆栈仅在调试模式下序列化。

    属性:
        message: 脱敏后的错误消息
        code: 错误代码，默认为异常类名
        details: 额外的错误详情字典（仅调试模式输出）
        cause: 原始异常（支持异常链）
        error_id: 随机关联ID
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None
    ):
        message = redact(str(message), MAX_MESSAGE_LENGTH)
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self.error_id = generate_error_id()

        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"error_id={self.error_id!r})"
        )

    def to_dict(self, debug: Optional[bool] = None) -> Dict[str, Any]:
        """
        将异常转换为字典格式，便于JSON序列化

        参数:
            debug: 是否输出完整详情，None 时按运行环境判断

        返回:
            包含错误信息的字典
        """
        if debug is None:
            from core.config import is_debug_mode
            debug = is_debug_mode()

        result = {
            'error': self.code,
            'message': self.message,
            'error_id': self.error_id,
            'type': self.__class__.__name__,
        }
        if debug:
            result['details'] = self.details
            if self.cause:
                result['cause'] = {
                    'type': type(self.cause).__name__,
                    'message': redact(str(self.cause), MAX_MESSAGE_LENGTH)
                }
            result['traceback'] = self.get_traceback()
        return result

    def get_traceback(self) -> str:
        """获取完整的异常堆栈追踪"""
        return ''.join(traceback.format_exception(type(self), self, self.__traceback__))


class ConfigError(GatewayError):
    """
    配置错误

    当配置文件缺失、格式错误、参数无效时抛出。
    """
    pass


# ============================================================================
# 输入与策略
# ============================================================================

class ValidationError(GatewayError):
    """
    输入验证错误

    输入格式错误或包含危险内容。只保存脱敏后的输入值，
    消息只说明违反的规则类别，不回显原始输入。

    属性:
        field: 被验证的字段名
        sanitized_value: 脱敏后的输入
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.sanitized_value = redact(value)
        if field:
            self.details['field'] = field
        self.details['value'] = self.sanitized_value


class PolicyViolation(GatewayError):
    """
    策略违规

    命令不在白名单、域名不在白名单、危险子命令、路径越界等。

    属性:
        rule: 违反的规则类别
    """

    def __init__(self, message: str, rule: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.rule = rule
        if rule:
            self.details['rule'] = rule


# ============================================================================
# 资源限制
# ============================================================================

class ResourceLimitExceeded(GatewayError):
    """
    资源上限

    输出大小、响应大小、执行时间超过配置的上限。

    属性:
        limit: 配置的上限
        observed: 实际观测值（可能为 None）
    """

    def __init__(
        self,
        message: str,
        limit: Optional[float] = None,
        observed: Optional[float] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.limit = limit
        self.observed = observed
        if limit is not None:
            self.details['limit'] = limit
        if observed is not None:
            self.details['observed'] = observed


class ExecutionTimeout(ResourceLimitExceeded):
    """子进程执行超时（limit 单位: 毫秒）"""
    pass


class OutputLimitExceeded(ResourceLimitExceeded):
    """子进程输出超过上限（limit 单位: 字节）"""
    pass


class RequestTimeout(ResourceLimitExceeded):
    """HTTP 请求超时或被中止（limit 单位: 毫秒）"""
    pass


class ResponseTooLarge(ResourceLimitExceeded):
    """HTTP 响应体超过上限（limit 单位: 字节）"""
    pass


class RateLimited(GatewayError):
    """
    被限流

    属性:
        retry_after_ms: 建议的重试等待时间（毫秒）
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after_ms: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.retry_after_ms = retry_after_ms
        if retry_after_ms is not None:
            self.details['retry_after_ms'] = retry_after_ms


# ============================================================================
# 网络
# ============================================================================

class TransportError(GatewayError):
    """
    网络传输错误

    连接失败、服务端错误等。默认可重试；4xx 客户端错误不重试。

    属性:
        status_code: HTTP状态码（可选）
        retriable: 是否允许重试
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retriable: bool = True,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.retriable = retriable
        if status_code is not None:
            self.details['status_code'] = status_code


class ResponseFormatError(GatewayError):
    """响应体不是合法的 JSON 或结构不符合预期"""
    pass


class RegistryDataError(GatewayError):
    """包仓库元数据缺失或不完整"""
    pass


class IntegrityError(GatewayError):
    """
    完整性错误

    解密失败、密文被篡改、哈希不匹配、不支持的算法标识。
    """
    pass


# ============================================================================
# 子进程
# ============================================================================

class ProcessError(GatewayError):
    """
    子进程异常

    进程被信号终止（非超时）时抛出。

    属性:
        signal: 终止进程的信号编号
    """

    def __init__(self, message: str, signal: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.signal = signal
        if signal is not None:
            self.details['signal'] = signal


class SpawnError(ProcessError):
    """子进程启动失败，cause 为底层原因"""
    pass


# ============================================================================
# 辅助函数
# ============================================================================

TERMINAL_ERRORS = (ValidationError, PolicyViolation, ResourceLimitExceeded, RateLimited,
                   IntegrityError, ConfigError)


def is_retriable(exc: BaseException) -> bool:
    """
    判断异常是否允许重试

    终止性错误永不重试；TransportError 按其 retriable 标记；
    其他未知异常视为可重试。
    """
    if isinstance(exc, TERMINAL_ERRORS):
        return False
    if isinstance(exc, TransportError):
        return exc.retriable
    if isinstance(exc, (ResponseFormatError, RegistryDataError)):
        return False
    return True


def wrap_exception(
    exc: BaseException,
    wrapper_class: Type[GatewayError] = GatewayError,
    message: Optional[str] = None
) -> GatewayError:
    """
    将标准异常包装为网关异常

    如果传入的异常已经是 GatewayError 类型，直接返回。

    参数:
        exc: 原始异常
        wrapper_class: 包装使用的异常类
        message: 自定义错误消息，为None时使用原始异常的消息

    返回:
        GatewayError 类型的异常
    """
    if isinstance(exc, GatewayError):
        return exc

    error_message = message or str(exc) or type(exc).__name__
    return wrapper_class(
        error_message,
        cause=exc,
        details={'original_type': type(exc).__name__}
    )


def _default_error_mapping() -> Dict[Type[BaseException], Type[GatewayError]]:
    import asyncio
    import aiohttp

    return {
        asyncio.TimeoutError: RequestTimeout,
        aiohttp.ClientError: TransportError,
        PermissionError: PolicyViolation,
        FileNotFoundError: ConfigError,
        ValueError: ValidationError,
        OSError: TransportError,
    }


def handle_exceptions(
    logger: Optional[logging.Logger] = None,
    default_return: Any = None,
    reraise: bool = False,
    error_mapping: Optional[Dict[Type[BaseException], Type[GatewayError]]] = None
) -> Callable:
    """
    统一异常处理装饰器

    自动捕获函数中的异常，根据配置进行日志记录、异常转换或返回默认值。
    支持同步和异步函数。

    参数:
        logger: 日志记录器
        default_return: 异常发生时的默认返回值
        reraise: 是否重新抛出（转换后的）异常
        error_mapping: 异常类型映射字典，如 {socket.timeout: RequestTimeout}

    示例:
        >>> @handle_exceptions(logger=logger, reraise=True)
        ... async def fetch(url):
        ...     ...
    """
    import asyncio

    mapping = _default_error_mapping()
    if error_mapping:
        mapping.update(error_mapping)

    def _convert(e: Exception) -> GatewayError:
        for exc_type, target_exc in mapping.items():
            if isinstance(e, exc_type):
                return wrap_exception(e, target_exc)
        return wrap_exception(e)

    def _handle(e: Exception) -> Any:
        if isinstance(e, GatewayError):
            if reraise:
                raise e
            if logger:
                logger.warning(f"{e.code} [{e.error_id}]: {e.message}")
            return default_return

        new_exc = _convert(e)
        if logger:
            logger.warning(f"{new_exc.code} [{new_exc.error_id}]: {new_exc.message}")
        if reraise:
            raise new_exc from e
        return default_return

    def decorator(func: Callable[..., T]) -> Callable[..., Union[T, Any]]:
        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Union[T, Any]:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                return _handle(e)

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Union[T, Any]:
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                return _handle(e)

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


__all__ = [
    # 基类
    'GatewayError',
    'ConfigError',

    # 输入与策略
    'ValidationError',
    'PolicyViolation',

    # 资源限制
    'ResourceLimitExceeded',
    'ExecutionTimeout',
    'OutputLimitExceeded',
    'RequestTimeout',
    'ResponseTooLarge',
    'RateLimited',

    # 网络
    'TransportError',
    'ResponseFormatError',
    'RegistryDataError',
    'IntegrityError',

    # 子进程
    'ProcessError',
    'SpawnError',

    # 辅助函数
    'TERMINAL_ERRORS',
    'redact',
    'generate_error_id',
    'is_retriable',
    'wrap_exception',
    'handle_exceptions',
]
