#!/usr/bin/env python3
"""
输入验证框架 - 所有不可信字符串进入子进程或网络调用前的统一关口
防止命令注入、路径遍历、SSRF等安全问题

四类输入:
    包名       sanitize_package_name
    文件路径   sanitize_file_path
    命令参数   sanitize_command_args
    URL        validate_url

验证器只做门禁不做转换: 通过时原样返回（包名/参数去除首尾空白），
失败时抛出的异常只说明违反的规则类别，不回显原始输入。
"""

import ipaddress
import logging
import os
import re
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional, Union
from urllib.parse import ParseResult, urlparse

from core.config import ValidatorConfig
from core.exceptions import PolicyViolation, ValidationError
from core.security.event_log import SecurityEventLog, security_event_log

logger = logging.getLogger(__name__)


class SanitizedString(str):
    """
    已通过某一类检查的字符串

    属性:
        kind: 检查类别 package_name / file_path / command_arg
    """

    def __new__(cls, value: str, kind: str):
        obj = super().__new__(cls, value)
        obj.kind = kind
        return obj


class InputValidator:
    """输入验证器"""

    # npm 包名格式（可选 @scope/ 前缀）
    PACKAGE_NAME_PATTERN = re.compile(r'^(?:@[a-z0-9-*~][a-z0-9-*._~]*/)?[a-z0-9-~][a-z0-9-._~]*$')

    # 敏感路径，匹配基础目录之内的相对路径（以分隔符开头）
    FORBIDDEN_PATH_PATTERNS = (
        re.compile(r'node_modules', re.IGNORECASE),
        re.compile(r'/\.git(/|$)', re.IGNORECASE),
        re.compile(r'/\.github/(?!workflows(/|$))', re.IGNORECASE),
        re.compile(r'\.env$', re.IGNORECASE),
        re.compile(r'\.ssh', re.IGNORECASE),
        re.compile(r'\.aws', re.IGNORECASE),
        re.compile(r'\.docker', re.IGNORECASE),
        re.compile(r'/etc/', re.IGNORECASE),
        re.compile(r'/usr/bin', re.IGNORECASE),
        re.compile(r'/var/log', re.IGNORECASE),
        re.compile(r'/tmp/', re.IGNORECASE),
    )

    # 嵌入的多级回溯
    TRAVERSAL_PATTERN = re.compile(r'\.\.[/\\]\.\.')

    def __init__(self, config: ValidatorConfig = None, event_log: SecurityEventLog = None):
        """
        初始化验证器

        Args:
            config: 验证器配置（黑白名单）
            event_log: 安全事件日志
        """
        self.config = config or ValidatorConfig()
        self.event_log = event_log if event_log is not None else security_event_log
        self._shell_word_patterns = [
            re.compile(rf'\b{re.escape(word)}\b', re.IGNORECASE)
            for word in self.config.shell_word_patterns
        ]

    def _reject(self, event_type: str, message: str, rule: str, input_type: str) -> PolicyViolation:
        self.event_log.log_event(event_type, {"input_type": input_type, "rule": rule})
        return PolicyViolation(message, rule=rule, details={"input_type": input_type})

    # ========== 包名 ==========

    def sanitize_package_name(self, raw: str) -> SanitizedString:
        """
        验证包名

        Args:
            raw: 用户输入的包名

        Returns:
            去除首尾空白后的包名

        Raises:
            ValidationError: 类型、长度或格式错误
            PolicyViolation: 包含危险子串
        """
        if not isinstance(raw, str):
            raise ValidationError("Package name must be a string", field="packageName", value=raw)

        trimmed = raw.strip()
        if not trimmed:
            raise ValidationError("Package name cannot be empty", field="packageName")
        if len(trimmed) > self.config.max_package_name_length:
            raise ValidationError(
                f"Package name too long (max {self.config.max_package_name_length} characters)",
                field="packageName", value=trimmed
            )

        lowered = trimmed.lower()
        for pattern in self.config.package_deny_patterns:
            if pattern in lowered:
                raise self._reject("malicious_input", "Dangerous pattern detected in package name",
                                   "malicious_input", "packageName")

        for regex in self._shell_word_patterns:
            if regex.search(trimmed):
                raise self._reject("malicious_input", "Shell command detected in package name",
                                   "malicious_input", "packageName")

        if not self.PACKAGE_NAME_PATTERN.match(trimmed):
            raise ValidationError("Invalid package name format", field="packageName", value=trimmed)

        for prefix in self.config.sensitive_prefixes:
            if lowered.startswith(prefix):
                raise ValidationError("Package name uses a reserved prefix", field="packageName", value=trimmed)

        return SanitizedString(trimmed, "package_name")

    # ========== 文件路径 ==========

    def sanitize_file_path(self, raw: str, base_dir: Optional[str] = None) -> SanitizedString:
        """
        验证文件路径（防止路径遍历）

        Args:
            raw: 用户输入的路径，相对路径基于 base_dir 解析
            base_dir: 基础目录（路径必须在此目录内），默认当前目录

        Returns:
            规范化后的绝对路径

        Raises:
            ValidationError: 类型、长度或扩展名错误
            PolicyViolation: 越出基础目录或访问敏感路径
        """
        if not isinstance(raw, str):
            raise ValidationError("File path must be a string", field="filePath", value=raw)

        trimmed = raw.strip()
        if not trimmed:
            raise ValidationError("File path cannot be empty", field="filePath")
        if len(trimmed) > self.config.max_path_length:
            raise ValidationError(
                f"File path too long (max {self.config.max_path_length} characters)",
                field="filePath", value=trimmed
            )
        if '\x00' in trimmed:
            raise ValidationError("File path contains a null byte", field="filePath")

        if self.TRAVERSAL_PATTERN.search(trimmed):
            raise self._reject("path_traversal", "Path traversal sequence detected",
                               "path_traversal", "filePath")

        base_obj = Path(base_dir if base_dir is not None else os.getcwd()).resolve()
        path_obj = (base_obj / trimmed).resolve()

        try:
            relative = path_obj.relative_to(base_obj)
        except ValueError:
            raise self._reject("path_traversal", "File path outside allowed directory",
                               "path_traversal", "filePath")

        relative_str = "/" + relative.as_posix() if relative.parts else "/"
        for pattern in self.FORBIDDEN_PATH_PATTERNS:
            if pattern.search(relative_str):
                raise self._reject("path_traversal", "Access to forbidden path",
                                   "forbidden_path", "filePath")

        ext = path_obj.suffix.lower()
        if ext and ext not in self.config.allowed_extensions:
            raise ValidationError("File extension not allowed", field="filePath", value=ext)

        return SanitizedString(str(path_obj), "file_path")

    # ========== 命令参数 ==========

    def sanitize_command_args(self, args: Union[str, Iterable[str]]) -> List[SanitizedString]:
        """
        验证命令参数（防止命令注入）

        Args:
            args: 单个参数或参数列表

        Returns:
            去除首尾空白后的参数列表

        Raises:
            ValidationError: 参数类型或长度错误
            PolicyViolation: 包含shell元字符或危险命令
        """
        items = [args] if isinstance(args, str) else list(args)

        sanitized = []
        for arg in items:
            if not isinstance(arg, str):
                raise ValidationError("Command argument must be a string", field="commandArg", value=arg)

            trimmed = arg.strip()
            if len(trimmed) > self.config.max_arg_length:
                raise ValidationError("Command argument too long", field="commandArg", value=trimmed)

            lowered = trimmed.lower()
            for pattern in self.config.arg_deny_patterns:
                if pattern in lowered:
                    raise self._reject("command_injection", "Dangerous pattern detected in command argument",
                                       "command_injection", "commandArg")

            sanitized.append(SanitizedString(trimmed, "command_arg"))

        return sanitized

    # ========== URL ==========

    def validate_url(self, raw: str, allowed_hosts: Optional[FrozenSet[str]] = None) -> ParseResult:
        """
        验证外部请求URL（防止SSRF）

        Args:
            raw: URL字符串
            allowed_hosts: 允许的主机名，默认使用配置中的白名单

        Returns:
            解析后的URL

        Raises:
            ValidationError: 无法解析
            PolicyViolation: 非HTTPS、主机不在白名单、私有/回环地址
        """
        if not isinstance(raw, str):
            raise ValidationError("URL must be a string", field="url", value=raw)

        try:
            parsed = urlparse(raw.strip())
            hostname = parsed.hostname
        except ValueError:
            raise ValidationError("Invalid URL format", field="url", value=raw)

        if not parsed.scheme or not hostname:
            raise ValidationError("Invalid URL format", field="url", value=raw)

        if parsed.scheme.lower() != "https":
            raise self._reject("ssrf_blocked", "Only HTTPS URLs are allowed", "url_scheme", "url")

        hosts = self.config.allowed_hosts if allowed_hosts is None else allowed_hosts
        if hostname not in hosts:
            raise self._reject("ssrf_blocked", "Domain not in whitelist", "domain_whitelist", "url")

        try:
            address = ipaddress.ip_address(hostname)
        except ValueError:
            address = None

        if address is not None and (address.is_private or address.is_loopback or address.is_link_local):
            raise self._reject("ssrf_blocked", "Access to private IP ranges not allowed", "private_address", "url")

        return parsed


# 默认验证器实例
default_validator = InputValidator()


# ========== 便捷函数 ==========

def sanitize_package_name(raw: str) -> SanitizedString:
    """使用默认验证器验证包名"""
    return default_validator.sanitize_package_name(raw)


def sanitize_file_path(raw: str, base_dir: Optional[str] = None) -> SanitizedString:
    """使用默认验证器验证文件路径"""
    return default_validator.sanitize_file_path(raw, base_dir)


def sanitize_command_args(args: Union[str, Iterable[str]]) -> List[SanitizedString]:
    """使用默认验证器验证命令参数"""
    return default_validator.sanitize_command_args(args)


def validate_url(raw: str, allowed_hosts: Optional[FrozenSet[str]] = None) -> ParseResult:
    """使用默认验证器验证URL"""
    return default_validator.validate_url(raw, allowed_hosts)
