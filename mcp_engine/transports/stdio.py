"""Транспорт stdio: одна сессия на процесс, одно JSON-RPC сообщение (или пакет) на строку."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional, TextIO

from mcp_engine.api.dispatcher import McpDispatcher
from mcp_engine.core.channels import ChannelRegistry, StdioChannel
from mcp_engine.core.session import close_session, create_session

logger = logging.getLogger("mcp_engine.transports.stdio")


async def serve_stdio(
    dispatcher: McpDispatcher,
    channels: ChannelRegistry,
    *,
    reader: Optional[TextIO] = None,
    writer: Optional[TextIO] = None,
) -> None:
    """Читает stdin построчно до EOF; ответы и push-уведомления пишутся в stdout."""
    reader = reader or sys.stdin
    writer = writer or sys.stdout

    session = create_session(channels)
    channel = StdioChannel(writer)
    await channels.register(session.id, channel)
    logger.info("stdio transport started (session %s)", session.id)
    try:
        while True:
            line = await asyncio.to_thread(reader.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                reply = await dispatcher.handle_payload(line, session)
            except Exception:
                logger.exception("Failed to process stdio message")
                continue
            if reply is not None:
                channel.send(reply)
    finally:
        await close_session(session)
        logger.info("stdio transport stopped (session %s)", session.id)


def run_stdio(dispatcher: McpDispatcher, channels: ChannelRegistry) -> None:
    try:
        asyncio.run(serve_stdio(dispatcher, channels))
    except KeyboardInterrupt:
        logger.info("stdio transport interrupted")


__all__ = ["run_stdio", "serve_stdio"]
