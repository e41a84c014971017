#!/usr/bin/env python3
"""
安全命令执行器 - 防止命令注入
提供白名单子进程执行、超时升级终止和输出上限

执行流程:
    命令白名单检查 -> 参数验证 -> 启动进程（不经过shell）
    -> 增量读取输出 -> 超时: SIGTERM, 宽限期后 SIGKILL
    -> 输出超限: 终止进程树并抛出 OutputLimitExceeded
"""

import asyncio
import logging
import os
import shutil
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from core.config import ExecutorConfig
from core.exceptions import (
    ExecutionTimeout,
    OutputLimitExceeded,
    PolicyViolation,
    ProcessError,
    ResourceLimitExceeded,
    SpawnError,
    ValidationError,
    is_retriable,
)
from core.security.event_log import SecurityEventLog, security_event_log
from core.security.input_validator import InputValidator, default_validator
from utils.decorators import retry_async

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024


@dataclass(frozen=True)
class ExecutionOptions:
    """执行选项，timeout_ms 为 None 时使用配置的默认值"""
    timeout_ms: Optional[int] = None
    cwd: Optional[str] = None


@dataclass
class ExecutionResult:
    """执行结果"""
    stdout: str
    stderr: str
    exit_code: int


@dataclass
class BatchOutcome:
    """批量执行中单项的结果（成功或失败）"""
    success: bool
    result: Any = None
    error: Optional[BaseException] = None


class _OutputBuffer:
    """stdout/stderr 共享的字节计数"""

    def __init__(self, limit: int):
        self.limit = limit
        self.total = 0
        self.stdout = bytearray()
        self.stderr = bytearray()
        self.overflow = asyncio.Event()


class SecureExecutor:
    """安全命令执行器"""

    def __init__(self, config: ExecutorConfig = None, validator: InputValidator = None,
                 event_log: SecurityEventLog = None):
        """
        初始化安全执行器

        Args:
            config: 执行器配置（命令白名单、超时、输出上限）
            validator: 参数验证器
            event_log: 安全事件日志
        """
        self.config = config or ExecutorConfig()
        self.validator = validator if validator is not None else default_validator
        self.event_log = event_log if event_log is not None else security_event_log

        self.stats = {
            "executions": 0,
            "failures": 0,
            "timeouts": 0,
            "output_limited": 0,
        }

    # ========== 执行 ==========

    async def execute(self, command: str, args: Sequence[str] = (),
                      options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        """
        安全执行命令

        Args:
            command: 命令名（必须在白名单中）
            args: 参数列表，启动前逐个验证
            options: 超时与工作目录

        Returns:
            ExecutionResult

        Raises:
            PolicyViolation: 命令不在白名单或参数含危险内容
            ValidationError: 参数格式错误
            ExecutionTimeout: 超时（进程已被终止）
            OutputLimitExceeded: 输出超过上限（进程已被终止）
            ProcessError: 进程被信号终止
            SpawnError: 进程启动失败
        """
        options = options or ExecutionOptions()

        if not isinstance(command, str) or not command.strip():
            raise ValidationError("Command must be a non-empty string", field="command", value=command)

        command = command.strip()
        if command not in self.config.allowed_commands:
            self.event_log.log_event("policy_violation", {"rule": "command_whitelist"})
            raise PolicyViolation("Command not allowed", rule="command_whitelist")

        sanitized_args = [str(a) for a in self.validator.sanitize_command_args(list(args))]
        timeout_ms = options.timeout_ms or self.config.default_timeout_ms

        self.stats["executions"] += 1
        logger.debug(f"执行命令: {command} ({len(sanitized_args)} 个参数)")

        proc = await self._spawn(command, sanitized_args, options.cwd)
        try:
            return await self._collect(proc, timeout_ms)
        except Exception:
            self.stats["failures"] += 1
            raise

    async def exec_npm(self, args: Sequence[str], options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        """执行 npm，追加安全标志"""
        return await self.execute("npm", [*args, *self.config.npm_safety_flags], options)

    async def exec_git(self, args: Sequence[str], options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        """
        执行 git

        拒绝远程变更和改写历史的子命令（参数中任意位置出现即拒绝），
        以及 -c、-C、--config-env 等可注入配置或外部程序的选项。
        """
        for arg in args:
            blocked = self._blocked_git_arg(str(arg))
            if blocked:
                self.event_log.log_event("policy_violation", {"rule": "git_subcommand", "arg": blocked})
                raise PolicyViolation("Git command not allowed", rule="git_subcommand")
        return await self.execute("git", args, options)

    def _blocked_git_arg(self, arg: str) -> Optional[str]:
        """返回命中的选项或关键词，未命中返回 None"""
        token = arg.strip()
        option = token.split("=", 1)[0]
        options = set(self.config.blocked_git_options)
        if option in options:
            return option
        # 短选项粘连值: -calias.x=... / -Cdir
        if not token.startswith("--") and token[:2] in options:
            return token[:2]

        lowered = token.lower()
        for word in self.config.blocked_git_args:
            if word.lower() in lowered:
                return word
        return None

    async def exec_node(self, args: Sequence[str], options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        """执行 node，前置内存与告警限制标志"""
        return await self.execute("node", [*self.config.node_safety_flags, *args], options)

    # ========== 进程管理 ==========

    def _build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        for name in self.config.stripped_env_vars:
            env.pop(name, None)
        env.setdefault("NODE_ENV", "production")
        return env

    def _resolve_command(self, command: str) -> Optional[str]:
        """解析命令路径"""
        if os.path.isabs(command) and os.path.isfile(command):
            return command
        return shutil.which(command)

    async def _spawn(self, command: str, args: List[str], cwd: Optional[str]) -> asyncio.subprocess.Process:
        cmd_path = self._resolve_command(command)
        if not cmd_path:
            raise SpawnError("Command not found", details={"command": command})

        kwargs = dict(
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=self._build_env(),
        )
        try:
            if sys.platform == "win32" and cmd_path.lower().endswith((".cmd", ".bat")):
                # Windows 上 .cmd/.bat 只能经由 cmd.exe 启动
                return await asyncio.create_subprocess_shell(
                    subprocess.list2cmdline([cmd_path, *args]), **kwargs
                )
            return await asyncio.create_subprocess_exec(
                cmd_path, *args, start_new_session=(os.name == "posix"), **kwargs
            )
        except OSError as e:
            raise SpawnError("Command execution failed", cause=e, details={"command": command})

    async def _pump(self, stream: asyncio.StreamReader, target: bytearray, buffer: _OutputBuffer):
        while not buffer.overflow.is_set():
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            buffer.total += len(chunk)
            if buffer.total > buffer.limit:
                buffer.overflow.set()
                return
            target.extend(chunk)

    async def _collect(self, proc: asyncio.subprocess.Process, timeout_ms: int) -> ExecutionResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        buffer = _OutputBuffer(self.config.max_output_bytes)

        readers = [
            asyncio.ensure_future(self._pump(proc.stdout, buffer.stdout, buffer)),
            asyncio.ensure_future(self._pump(proc.stderr, buffer.stderr, buffer)),
        ]
        exit_task = asyncio.ensure_future(proc.wait())
        overflow_task = asyncio.ensure_future(buffer.overflow.wait())

        try:
            done, _ = await asyncio.wait(
                {exit_task, overflow_task},
                timeout=max(0.0, deadline - loop.time()),
                return_when=asyncio.FIRST_COMPLETED,
            )

            if not buffer.overflow.is_set() and exit_task in done:
                # 进程已退出，读完管道中剩余的输出
                await asyncio.wait(readers, timeout=max(0.0, deadline - loop.time()))

            if buffer.overflow.is_set():
                self.stats["output_limited"] += 1
                await self._terminate(proc)
                self.event_log.log_event("resource_limit", {"limit": "output", "bytes": buffer.limit})
                raise OutputLimitExceeded(
                    f"Command output too large (max {buffer.limit} bytes)",
                    limit=buffer.limit, observed=buffer.total
                )

            if exit_task not in done or not all(t.done() for t in readers):
                self.stats["timeouts"] += 1
                await self._terminate(proc)
                self.event_log.log_event("resource_limit", {"limit": "timeout", "timeout_ms": timeout_ms})
                raise ExecutionTimeout(f"Command timed out after {timeout_ms}ms", limit=timeout_ms)

            returncode = proc.returncode
            if returncode is not None and returncode < 0:
                raise ProcessError(f"Command killed with signal: {-returncode}", signal=-returncode)

            return ExecutionResult(
                stdout=buffer.stdout.decode("utf-8", errors="replace").strip(),
                stderr=buffer.stderr.decode("utf-8", errors="replace").strip(),
                exit_code=returncode or 0,
            )
        finally:
            if proc.returncode is None:
                self._force_kill(proc)
                await proc.wait()
            for task in (*readers, exit_task, overflow_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(*readers, exit_task, overflow_task, return_exceptions=True)

    def _signal_group(self, proc: asyncio.subprocess.Process, sig: int):
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
        except (ProcessLookupError, PermissionError):
            pass

    def _force_kill(self, proc: asyncio.subprocess.Process):
        if os.name == "posix":
            self._signal_group(proc, signal.SIGKILL)
        else:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def _terminate(self, proc: asyncio.subprocess.Process):
        """SIGTERM 终止进程组，宽限期后仍未退出则 SIGKILL"""
        if proc.returncode is not None:
            # 主进程已退出，清理可能残留的子进程
            self._force_kill(proc)
            return

        self._signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), self.config.kill_grace_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning(f"进程 {proc.pid} 未响应 SIGTERM，强制终止")
            self._force_kill(proc)
            await proc.wait()

    def get_stats(self) -> dict:
        """获取统计信息"""
        return dict(self.stats)


# ========== 重试与批量执行 ==========

def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, (PolicyViolation, ResourceLimitExceeded)):
        return False
    return is_retriable(exc)


async def exec_with_retry(func: Callable[[], Awaitable[Any]], max_retries: int = 3,
                          base_delay_ms: int = 1000,
                          sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> Any:
    """
    带指数退避的重试执行

    第 n 次失败后等待 base_delay_ms * 2^(n-1)；策略违规、超时、
    输出超限不重试。

    Args:
        func: 返回协程的无参函数
        max_retries: 最大尝试次数
        base_delay_ms: 初始延迟（毫秒）
    """
    return await retry_async(
        func,
        max_attempts=max_retries,
        delay=base_delay_ms / 1000,
        backoff=2.0,
        retry_if=_should_retry,
        sleep=sleep,
        name="exec_with_retry",
    )


async def exec_batch(funcs: Iterable[Callable[[], Awaitable[Any]]],
                     max_concurrency: int = 3) -> List[BatchOutcome]:
    """
    有界并发的批量执行

    同时在途的任务永远不超过 max_concurrency；单项失败不影响其他项，
    返回与输入顺序一致的结果列表。
    """
    if max_concurrency < 1:
        raise ValidationError("max_concurrency must be >= 1", field="maxConcurrency", value=str(max_concurrency))

    semaphore = asyncio.Semaphore(max_concurrency)

    async def run_one(func: Callable[[], Awaitable[Any]]) -> BatchOutcome:
        async with semaphore:
            try:
                return BatchOutcome(success=True, result=await func())
            except Exception as e:
                logger.debug(f"批量任务失败: {type(e).__name__}")
                return BatchOutcome(success=False, error=e)

    return list(await asyncio.gather(*(run_one(f) for f in funcs)))


# ========== 全局实例 ==========

_safe_executor: Optional[SecureExecutor] = None


def get_safe_executor() -> SecureExecutor:
    """获取全局安全执行器实例"""
    global _safe_executor
    if _safe_executor is None:
        _safe_executor = SecureExecutor()
    return _safe_executor
