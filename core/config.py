"""
统一配置 - 安全网关各组件的类型化配置

每个组件只接收一个不可变的配置数据类，默认值在此集中定义一次。
测试或调用方需要不同的白名单时，使用 dataclasses.replace 生成新实例，
不修改任何共享状态。

使用示例:
    from core.config import GatewayConfig, HttpClientConfig

    config = GatewayConfig.from_env()
    http_config = dataclasses.replace(
        config.http,
        allowed_hosts=config.http.allowed_hosts | {"api.npmjs.org"},
    )
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, List, Optional, Tuple

from core.exceptions import ConfigError

logger = logging.getLogger(__name__)


# ============================================================================
# 默认值
# ============================================================================

REGISTRY_HOST = "registry.npmjs.org"

DEFAULT_ALLOWED_HOSTS: FrozenSet[str] = frozenset({
    REGISTRY_HOST,
    "api.github.com",
    "raw.githubusercontent.com",
})

# 包名中的危险子串（小写匹配）
PACKAGE_NAME_DENY_PATTERNS: Tuple[str, ...] = (
    "|", ";", "&", "&&", "||", "$", "`", "$(", "${", "(", ")", "{",
    "../", "..\\", "/./", "\\.\\", "//", "\\\\",
    "file://", "http://", "https://", "ftp://", "data:",
    "curl", "wget", "bash", "powershell", "base64", "whoami",
    "rm ", "del ", "format",
)

# 需要单词边界的 shell 调用词
SHELL_WORD_PATTERNS: Tuple[str, ...] = ("sh", "cmd")

SENSITIVE_NAME_PREFIXES: Tuple[str, ...] = (
    "node_modules", ".git", ".env", "etc/", "usr/", "var/", "tmp/",
)

ALLOWED_FILE_EXTENSIONS: FrozenSet[str] = frozenset({
    ".js", ".json", ".md", ".txt", ".yml", ".yaml", ".ts", ".jsx", ".tsx",
    ".css", ".html", ".xml", ".gitignore", ".eslintrc", ".prettierrc",
})

COMMAND_ARG_DENY_PATTERNS: Tuple[str, ...] = (
    ";", "|", "&", "&&", "||", "`", "$(", "${", ">", ">>", "<", "<<",
    "\n", "\r", "\t", "\\",
    "rm ", "del ", "format ", "mkfs", "dd ", "wget ", "curl ",
    "nc ", "netcat", "telnet", "ssh", "ftp",
    "..", "~", "/etc/", "/tmp/",
    "eval", "exec", "system",
)

DEFAULT_ALLOWED_COMMANDS: FrozenSet[str] = frozenset({"npm", "node", "git", "yarn", "pnpm"})

BLOCKED_GIT_ARGS: Tuple[str, ...] = (
    "push", "pull", "clone", "remote", "submodule", "config", "hook",
    "filter-branch", "rebase", "reset", "--hard",
)

# 可改写 git 配置或指定外部程序的选项，带 = 或粘连值的形式同样拒绝
BLOCKED_GIT_OPTIONS: Tuple[str, ...] = (
    "-c", "-C", "--config-env", "--exec-path", "--exec",
    "--upload-pack", "--receive-pack", "--git-dir", "--work-tree",
)

NPM_SAFETY_FLAGS: Tuple[str, ...] = ("--no-fund", "--no-audit", "--prefer-offline", "--progress=false")
NODE_SAFETY_FLAGS: Tuple[str, ...] = ("--no-warnings", "--max-old-space-size=512")
STRIPPED_ENV_VARS: Tuple[str, ...] = ("LD_PRELOAD", "LD_LIBRARY_PATH")

SENSITIVE_CONFIG_FIELDS: Tuple[str, ...] = ("tokens", "apiKeys", "secrets", "passwords")

_TRUTHY = {"1", "true", "yes", "on"}


# ============================================================================
# 组件配置
# ============================================================================

@dataclass(frozen=True)
class ValidatorConfig:
    """输入验证器配置"""
    max_package_name_length: int = 214
    package_deny_patterns: Tuple[str, ...] = PACKAGE_NAME_DENY_PATTERNS
    shell_word_patterns: Tuple[str, ...] = SHELL_WORD_PATTERNS
    sensitive_prefixes: Tuple[str, ...] = SENSITIVE_NAME_PREFIXES
    max_path_length: int = 260
    allowed_extensions: FrozenSet[str] = ALLOWED_FILE_EXTENSIONS
    max_arg_length: int = 1000
    arg_deny_patterns: Tuple[str, ...] = COMMAND_ARG_DENY_PATTERNS
    allowed_hosts: FrozenSet[str] = DEFAULT_ALLOWED_HOSTS


@dataclass(frozen=True)
class RateLimitConfig:
    """滑动窗口限流配置"""
    max_requests: int = 10
    window_ms: int = 60_000

    def __post_init__(self):
        if self.max_requests < 1:
            raise ConfigError("max_requests must be >= 1", details={"max_requests": self.max_requests})
        if self.window_ms <= 0:
            raise ConfigError("window_ms must be > 0", details={"window_ms": self.window_ms})


@dataclass(frozen=True)
class ExecutorConfig:
    """子进程执行器配置"""
    allowed_commands: FrozenSet[str] = DEFAULT_ALLOWED_COMMANDS
    default_timeout_ms: int = 30_000
    kill_grace_ms: int = 5_000
    max_output_bytes: int = 1024 * 1024
    blocked_git_args: Tuple[str, ...] = BLOCKED_GIT_ARGS
    blocked_git_options: Tuple[str, ...] = BLOCKED_GIT_OPTIONS
    npm_safety_flags: Tuple[str, ...] = NPM_SAFETY_FLAGS
    node_safety_flags: Tuple[str, ...] = NODE_SAFETY_FLAGS
    stripped_env_vars: Tuple[str, ...] = STRIPPED_ENV_VARS


@dataclass(frozen=True)
class HttpClientConfig:
    """HTTP 客户端配置"""
    timeout_ms: int = 10_000
    max_retries: int = 3
    retry_base_delay_ms: int = 1_000
    max_response_bytes: int = 5 * 1024 * 1024
    max_redirects: int = 3
    max_error_body_chars: int = 1_000
    user_agent: str = "deset-guard/1.0.0"
    allowed_hosts: FrozenSet[str] = DEFAULT_ALLOWED_HOSTS
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)


@dataclass(frozen=True)
class CryptoConfig:
    """配置加密配置"""
    key_path: str = ".deset.key"
    sensitive_fields: Tuple[str, ...] = SENSITIVE_CONFIG_FIELDS
    key_length: int = 32
    iv_length: int = 12


@dataclass(frozen=True)
class GatewayConfig:
    """网关总配置"""
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    http: HttpClientConfig = field(default_factory=HttpClientConfig)
    crypto: CryptoConfig = field(default_factory=CryptoConfig)
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "GatewayConfig":
        """
        从环境变量构建配置

        支持:
            DESET_DEBUG, DESET_KEY_PATH, DESET_ALLOWED_HOSTS,
            DESET_HTTP_TIMEOUT_MS, DESET_EXEC_TIMEOUT_MS

        Raises:
            ConfigError: 数值格式错误
        """
        env = os.environ if environ is None else environ
        config = cls(debug=is_debug_mode(env))

        extra_hosts = _parse_hosts(env.get("DESET_ALLOWED_HOSTS", ""))
        if extra_hosts:
            hosts = config.http.allowed_hosts | extra_hosts
            config = replace(
                config,
                validator=replace(config.validator, allowed_hosts=hosts),
                http=replace(config.http, allowed_hosts=hosts),
            )

        http_timeout = _parse_positive_int(env, "DESET_HTTP_TIMEOUT_MS")
        if http_timeout is not None:
            config = replace(config, http=replace(config.http, timeout_ms=http_timeout))

        exec_timeout = _parse_positive_int(env, "DESET_EXEC_TIMEOUT_MS")
        if exec_timeout is not None:
            config = replace(config, executor=replace(config.executor, default_timeout_ms=exec_timeout))

        key_path = env.get("DESET_KEY_PATH")
        if key_path:
            config = replace(config, crypto=replace(config.crypto, key_path=key_path))

        return config


def _parse_hosts(raw: str) -> FrozenSet[str]:
    return frozenset(h.strip().lower() for h in raw.split(",") if h.strip())


def _parse_positive_int(env, name: str) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer", details={"variable": name}, cause=e)
    if value <= 0:
        raise ConfigError(f"{name} must be positive", details={"variable": name})
    return value


# ============================================================================
# 运行环境
# ============================================================================

def is_debug_mode(environ: Optional[Dict[str, str]] = None) -> bool:
    """是否处于调试模式（仅调试模式下输出完整错误详情）"""
    env = os.environ if environ is None else environ
    for name in ("DESET_DEBUG", "DEBUG"):
        if env.get(name, "").strip().lower() in _TRUTHY:
            return True
    return env.get("NODE_ENV", "") == "development"


def get_secure_environment(environ: Optional[Dict[str, str]] = None) -> Dict[str, object]:
    """获取当前运行环境描述"""
    env = os.environ if environ is None else environ
    node_env = env.get("NODE_ENV", "development")
    return {
        "node_env": node_env,
        "is_production": node_env == "production",
        "is_development": node_env == "development",
        "is_test": node_env == "test",
    }


def validate_environment(environ: Optional[Dict[str, str]] = None) -> List[Dict[str, str]]:
    """检查生产环境中的危险环境变量"""
    env = os.environ if environ is None else environ
    issues = []
    if get_secure_environment(env)["is_production"]:
        for name in ("NODE_TLS_REJECT_UNAUTHORIZED", "DEBUG", "NODE_DEBUG"):
            if env.get(name):
                issues.append({
                    "type": "warning",
                    "message": f"Dangerous environment variable {name} is set in production",
                    "fix": f"Unset {name} in production environment",
                })
    return issues


def sanitize_environment(environ: Optional[Dict[str, str]] = None) -> None:
    """生产环境下移除调试变量并强制 TLS 校验"""
    env = os.environ if environ is None else environ
    if not get_secure_environment(env)["is_production"]:
        return

    env.pop("DEBUG", None)
    env.pop("NODE_DEBUG", None)
    if env.get("NODE_TLS_REJECT_UNAUTHORIZED", "0") == "0":
        env["NODE_TLS_REJECT_UNAUTHORIZED"] = "1"
    logger.info("已清理生产环境变量")


def setup_logging(level: int = logging.INFO, debug: Optional[bool] = None) -> None:
    """为宿主程序配置状态行日志输出"""
    if debug is None:
        debug = is_debug_mode()
    logging.basicConfig(
        level=logging.DEBUG if debug else level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        stream=sys.stderr
    )
