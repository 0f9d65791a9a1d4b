"""Хранилище и утилиты для управления сессиями MCP."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

from mcp_engine.core.channels import ChannelRegistry
from mcp_engine.core.config import CLIENT_LOG_LEVEL
from mcp_engine.models.json_rpc import JsonRpcMessage, encode_message
from mcp_engine.models.notifications import LogLevel

logger = logging.getLogger("mcp_engine.core.session")

DEFAULT_LOG_LEVEL = LogLevel.parse(CLIENT_LOG_LEVEL) or LogLevel.INFO


@dataclass(slots=True)
class ClientCapabilities:
    """Возможности клиента, заявленные в `initialize`."""

    roots: bool = False
    sampling: bool = False
    elicitation: bool = False

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ClientCapabilities":
        return cls(
            roots="roots" in raw,
            sampling="sampling" in raw,
            elicitation="elicitation" in raw,
        )


@dataclass(eq=False)
class Session:
    """Состояние одного соединения: stdio-процесса или SSE-подключения.

    `lock` упорядочивает обработку входящих сообщений одной сессии: они
    диспатчатся строго по одному в порядке поступления.
    """

    id: str
    channels: Optional[ChannelRegistry] = None
    client_info: Dict[str, Any] = field(default_factory=dict)
    capabilities: ClientCapabilities = field(default_factory=ClientCapabilities)
    min_log_level: LogLevel = DEFAULT_LOG_LEVEL
    protocol_version: Optional[str] = None
    initialized: bool = False
    access_token: Optional[str] = None
    user: Dict[str, Any] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    last_seen: float = field(default_factory=time.monotonic, repr=False)

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    async def push(self, message: JsonRpcMessage) -> bool:
        """Отправляет серверное сообщение через канал сессии, не дожидаясь доставки."""
        if self.channels is None:
            return False
        return await self.channels.send(self.id, encode_message(message))


ACTIVE_SESSIONS: Dict[str, Session] = {}


def create_session(channels: Optional[ChannelRegistry] = None, *, session_id: Optional[str] = None) -> Session:
    session = Session(id=session_id or str(uuid4()), channels=channels)
    ACTIVE_SESSIONS[session.id] = session
    logger.debug("Session %s created", session.id)
    return session


async def close_session(session: Session) -> None:
    """Удаляет сессию и её push-канал; повторный вызов безопасен."""
    ACTIVE_SESSIONS.pop(session.id, None)
    if session.channels is not None:
        channel = await session.channels.get(session.id)
        await session.channels.remove(session.id)
        if channel is not None:
            channel.close()
    logger.debug("Session %s closed", session.id)


async def expire_idle_sessions(max_idle: float, *, now: Optional[float] = None) -> int:
    """Закрывает сессии без активного канала, простаивающие дольше `max_idle` секунд."""
    now = time.monotonic() if now is None else now
    expired: List[Session] = []
    for session in list(ACTIVE_SESSIONS.values()):
        if now - session.last_seen <= max_idle:
            continue
        if session.channels is not None and await session.channels.has_active(session.id):
            continue
        expired.append(session)
    for session in expired:
        await close_session(session)
    if expired:
        logger.info("Expired %d idle session(s)", len(expired))
    return len(expired)


async def run_session_expiry(max_idle: float, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await expire_idle_sessions(max_idle)
        except Exception:
            logger.exception("Session expiry sweep failed")


__all__ = [
    "ACTIVE_SESSIONS",
    "ClientCapabilities",
    "DEFAULT_LOG_LEVEL",
    "Session",
    "close_session",
    "create_session",
    "expire_idle_sessions",
    "run_session_expiry",
]
