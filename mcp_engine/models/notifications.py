"""Уровни логирования MCP и построители серверных уведомлений."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Union

from mcp_engine.models.json_rpc import JsonRpcNotification

ProgressToken = Union[int, str]


class LogLevel(str, Enum):
    """Уровни RFC 5424 в порядке возрастания серьёзности."""

    DEBUG = "debug"
    INFO = "info"
    NOTICE = "notice"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    ALERT = "alert"
    EMERGENCY = "emergency"

    @property
    def priority(self) -> int:
        # syslog: 0 = emergency, 7 = debug
        return 7 - _ORDER.index(self)

    def is_at_least(self, other: "LogLevel") -> bool:
        return self.priority <= other.priority

    @classmethod
    def parse(cls, value: Any) -> Optional["LogLevel"]:
        if isinstance(value, LogLevel):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


_ORDER = list(LogLevel)


def progress_notification(
    progress_token: ProgressToken,
    progress: float,
    *,
    total: Optional[float] = None,
    message: Optional[str] = None,
) -> JsonRpcNotification:
    params: Dict[str, Any] = {"progressToken": progress_token, "progress": progress}
    if total is not None:
        params["total"] = total
    if message is not None:
        params["message"] = message
    return JsonRpcNotification(method="notifications/progress", params=params)


def log_notification(level: LogLevel, message: str, *, logger: Optional[str] = None) -> JsonRpcNotification:
    params: Dict[str, Any] = {"level": level.value, "message": message}
    if logger:
        params["logger"] = logger
    return JsonRpcNotification(method="notifications/log", params=params)


__all__ = ["LogLevel", "ProgressToken", "log_notification", "progress_notification"]
