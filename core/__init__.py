"""
deset-guard - Core Module

安全网关核心模块: 所有不可信输入在到达子进程或网络调用之前
都必须经过这里的验证、执行和请求组件。
"""

from core.config import GatewayConfig, setup_logging
from core.exceptions import GatewayError
from core.rate_limiter import RateLimiter, http_rate_limiter, general_rate_limiter

# 依赖 utils 的组件（core.security、core.async_http_client、core.registry_client、
# core.package_integrity）使用时单独导入

__version__ = "1.0.0"

__all__ = [
    "GatewayConfig",
    "setup_logging",
    "GatewayError",
    "RateLimiter",
    "http_rate_limiter",
    "general_rate_limiter",
]
