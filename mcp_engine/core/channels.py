"""Реестр push-каналов: session id -> канал доставки серверных сообщений.

Карта каналов является единственным разделяемым ресурсом: регистрация/удаление
конкурируют с broadcast/send из параллельных вызовов инструментов и с
закрытием соединений, поэтому любой доступ к ней идёт под одним
`asyncio.Lock`. Сами каналы только ставят кадр в очередь/пишут строку и
никогда не ждут подтверждения доставки.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Dict, Optional, Protocol, TextIO

from sse_starlette.sse import ServerSentEvent

logger = logging.getLogger("mcp_engine.core.channels")


class PushChannel(Protocol):
    """Приёмник исходящих кадров (JSON-текст одного сообщения)."""

    @property
    def closed(self) -> bool: ...

    def send(self, frame: str) -> None: ...

    def close(self) -> None: ...


class SSEChannel:
    """Канал SSE поверх `asyncio.Queue`; HTTP-ответ вычитывает события через `events()`."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._queue: "asyncio.Queue[Optional[ServerSentEvent]]" = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: str) -> None:
        self.send_event(frame)

    def send_event(self, data: str, event: Optional[str] = None) -> None:
        if self._closed:
            return
        self._queue.put_nowait(ServerSentEvent(data=data, event=event))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[ServerSentEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class StdioChannel:
    """Канал stdio: одно JSON-сообщение на строку."""

    def __init__(self, writer: TextIO) -> None:
        self._writer = writer
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: str) -> None:
        if self._closed:
            return
        try:
            self._writer.write(frame + "\n")
            self._writer.flush()
        except (OSError, ValueError) as exc:
            # stdout закрыт клиентом: дальнейшие push молча теряются
            logger.debug("stdio channel write failed: %s", exc)
            self._closed = True

    def close(self) -> None:
        self._closed = True


class ChannelRegistry:
    """Конкурентно-безопасная карта session id -> канал."""

    def __init__(self) -> None:
        self._channels: Dict[str, PushChannel] = {}
        self._lock = asyncio.Lock()

    async def register(self, session_id: str, channel: PushChannel) -> bool:
        """Регистрирует канал; повторная регистрация того же id игнорируется."""
        async with self._lock:
            if session_id in self._channels:
                return False
            self._channels[session_id] = channel
            total = len(self._channels)
        logger.info("Push channel registered for session %s (total: %d)", session_id, total)
        return True

    async def remove(self, session_id: str) -> bool:
        async with self._lock:
            removed = self._channels.pop(session_id, None) is not None
            total = len(self._channels)
        if removed:
            logger.info("Push channel removed for session %s (remaining: %d)", session_id, total)
        return removed

    async def get(self, session_id: str) -> Optional[PushChannel]:
        async with self._lock:
            return self._channels.get(session_id)

    async def has_active(self, session_id: str) -> bool:
        channel = await self.get(session_id)
        return channel is not None and not channel.closed

    async def send(self, session_id: str, frame: str) -> bool:
        async with self._lock:
            channel = self._channels.get(session_id)
        # send канала выполняется без удержания блокировки реестра
        if channel is None or channel.closed:
            return False
        channel.send(frame)
        return True

    async def broadcast(self, frame: str) -> int:
        async with self._lock:
            targets = list(self._channels.items())
        delivered = 0
        for session_id, channel in targets:
            if channel.closed:
                continue
            try:
                channel.send(frame)
            except Exception:
                logger.exception("Broadcast to session %s failed", session_id)
                continue
            delivered += 1
        return delivered

    async def count(self) -> int:
        async with self._lock:
            return len(self._channels)

    async def close_all(self) -> None:
        async with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
        for channel in channels:
            channel.close()
        logger.info("Closed %d push channel(s)", len(channels))


__all__ = ["ChannelRegistry", "PushChannel", "SSEChannel", "StdioChannel"]
