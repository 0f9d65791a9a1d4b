"""Контекст выполнения запроса, передаваемый обработчикам инструментов."""

from __future__ import annotations

import logging
from typing import Any, Optional

from mcp_engine.core.session import Session
from mcp_engine.models.notifications import (
    LogLevel,
    ProgressToken,
    log_notification,
    progress_notification,
)

logger = logging.getLogger("mcp_engine.core.context")


def extract_progress_token(params: Any) -> Optional[ProgressToken]:
    if not isinstance(params, dict):
        return None
    meta = params.get("_meta")
    if not isinstance(meta, dict):
        return None
    token = meta.get("progressToken")
    if isinstance(token, bool) or not isinstance(token, (int, str)):
        return None
    return token


class RequestContext:
    """Сессия, id запроса и progress-токен текущего вызова.

    Прогресс и логи уходят клиенту через реестр каналов асинхронно и без
    гарантии доставки; ответ на сам запрос от них не зависит.
    """

    def __init__(
        self,
        session: Session,
        *,
        request_id: Any = None,
        method: str = "",
        progress_token: Optional[ProgressToken] = None,
    ) -> None:
        self.session = session
        self.request_id = request_id
        self.method = method
        self.progress_token = progress_token
        self._last_progress: Optional[float] = None

    async def report_progress(
        self,
        progress: float,
        total: Optional[float] = None,
        message: Optional[str] = None,
    ) -> bool:
        if self.progress_token is None:
            return False
        if self._last_progress is not None and progress < self._last_progress:
            logger.debug(
                "Dropping non-monotonic progress %s < %s for request %s",
                progress,
                self._last_progress,
                self.request_id,
            )
            return False
        self._last_progress = progress
        notification = progress_notification(self.progress_token, progress, total=total, message=message)
        return await self.session.push(notification)

    async def log(self, level: LogLevel, message: str, *, logger_name: Optional[str] = None) -> bool:
        if not level.is_at_least(self.session.min_log_level):
            return False
        return await self.session.push(log_notification(level, message, logger=logger_name))


__all__ = ["RequestContext", "extract_progress_token"]
