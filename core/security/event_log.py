"""
安全事件日志 - 仅追加的分级事件记录

网关各组件在拒绝请求、触发限流、完整性校验失败时写入事件，
事件详情在写入前完成脱敏。
"""

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from core.exceptions import redact

logger = logging.getLogger("core.security.events")

# 内存中保留的事件数上限
DEFAULT_MAX_EVENTS = 10000


class Severity(str, Enum):
    """事件严重程度"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}

# 事件类型 -> 严重程度，未列出的类型为 MEDIUM
EVENT_SEVERITY: Dict[str, Severity] = {
    "command_injection": Severity.CRITICAL,
    "path_traversal": Severity.HIGH,
    "malicious_input": Severity.HIGH,
    "ssrf_blocked": Severity.HIGH,
    "integrity_failure": Severity.HIGH,
    "package_integrity_failure": Severity.HIGH,
    "rate_limit": Severity.MEDIUM,
    "policy_violation": Severity.MEDIUM,
    "resource_limit": Severity.MEDIUM,
    "key_rotation": Severity.LOW,
    "validation_error": Severity.LOW,
}


@dataclass(frozen=True)
class SecurityEvent:
    """单条安全事件"""
    timestamp: str
    type: str
    severity: Severity
    details: str

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["severity"] = self.severity.value
        return result


class SecurityEventLog:
    """
    仅追加的安全事件记录

    事件列表是共享可变状态，写入与读取都持有锁，
    读取时返回副本。最多保留 max_events 条，超出后丢弃最早的事件。
    """

    def __init__(self, severity_map: Optional[Dict[str, Severity]] = None,
                 max_events: int = DEFAULT_MAX_EVENTS):
        if max_events < 1:
            raise ValueError("max_events must be positive")
        self._severity_map = dict(severity_map or EVENT_SEVERITY)
        self._events: Deque[SecurityEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def get_severity(self, event_type: str) -> Severity:
        return self._severity_map.get(event_type, Severity.MEDIUM)

    def log_event(self, event_type: str, details: Optional[Dict[str, Any]] = None) -> SecurityEvent:
        """
        记录安全事件

        Args:
            event_type: 事件类型，如 command_injection、rate_limit
            details: 事件详情，序列化并脱敏后保存

        Returns:
            写入的事件
        """
        serialized = json.dumps(details or {}, default=str, ensure_ascii=False)
        event = SecurityEvent(
            timestamp=datetime.now(timezone.utc).isoformat(),
            type=event_type,
            severity=self.get_severity(event_type),
            details=redact(serialized),
        )

        with self._lock:
            self._events.append(event)

        logger.log(_LOG_LEVELS[event.severity], f"[SECURITY EVENT] {event.type}: {event.details}")
        return event

    def get_events(
        self,
        event_type: Optional[str] = None,
        min_severity: Optional[Severity] = None
    ) -> List[SecurityEvent]:
        """按类型/最低严重程度过滤，返回事件副本"""
        with self._lock:
            events = list(self._events)

        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        if min_severity is not None:
            events = [e for e in events if e.severity.rank >= Severity(min_severity).rank]
        return events

    def clear_events(self):
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def __bool__(self) -> bool:
        # 空日志也是有效实例
        return True


# 全局事件日志实例
security_event_log = SecurityEventLog()
