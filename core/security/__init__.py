#!/usr/bin/env python3
"""
安全加固模块初始化文件
"""

from .event_log import (
    SecurityEvent,
    SecurityEventLog,
    Severity,
    security_event_log
)

from .input_validator import (
    InputValidator,
    SanitizedString,
    default_validator,
    sanitize_package_name,
    sanitize_file_path,
    sanitize_command_args,
    validate_url
)

from .safe_executor import (
    SecureExecutor,
    ExecutionOptions,
    ExecutionResult,
    BatchOutcome,
    exec_with_retry,
    exec_batch,
    get_safe_executor
)

from .config_crypto import (
    ConfigCrypto,
    ConfigIntegrityChecker,
    EncryptedBlob,
    IntegrityResult,
    secure_config
)

from .error_handler import (
    create_security_error,
    generate_secure_hash,
    handle_secure_error,
    sanitize_for_logging,
    with_secure_error_handling
)

__all__ = [
    # 安全事件
    "SecurityEvent",
    "SecurityEventLog",
    "Severity",
    "security_event_log",

    # 输入验证
    "InputValidator",
    "SanitizedString",
    "default_validator",
    "sanitize_package_name",
    "sanitize_file_path",
    "sanitize_command_args",
    "validate_url",

    # 命令执行
    "SecureExecutor",
    "ExecutionOptions",
    "ExecutionResult",
    "BatchOutcome",
    "exec_with_retry",
    "exec_batch",
    "get_safe_executor",

    # 配置加密
    "ConfigCrypto",
    "ConfigIntegrityChecker",
    "EncryptedBlob",
    "IntegrityResult",
    "secure_config",

    # 错误处理
    "create_security_error",
    "generate_secure_hash",
    "handle_secure_error",
    "sanitize_for_logging",
    "with_secure_error_handling",
]
