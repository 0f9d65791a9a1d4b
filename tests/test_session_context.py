from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import pytest

from mcp_engine.core.channels import ChannelRegistry
from mcp_engine.core.context import RequestContext, extract_progress_token
from mcp_engine.core.session import ACTIVE_SESSIONS, Session, close_session, create_session
from mcp_engine.models.notifications import LogLevel


class RecordingChannel:
    def __init__(self) -> None:
        self.frames: List[str] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: str) -> None:
        self.frames.append(frame)

    def close(self) -> None:
        self._closed = True

    def messages(self) -> List[Dict[str, Any]]:
        return [json.loads(frame) for frame in self.frames]


@pytest.fixture(autouse=True)
def clear_sessions() -> None:
    ACTIVE_SESSIONS.clear()


async def _session_with_channel() -> tuple[Session, RecordingChannel]:
    registry = ChannelRegistry()
    session = create_session(registry)
    channel = RecordingChannel()
    await registry.register(session.id, channel)
    return session, channel


def test_log_levels_follow_rfc5424_order() -> None:
    assert LogLevel.DEBUG.priority == 7
    assert LogLevel.EMERGENCY.priority == 0
    assert LogLevel.WARNING.is_at_least(LogLevel.INFO)
    assert not LogLevel.DEBUG.is_at_least(LogLevel.INFO)
    assert LogLevel.parse("Error") is LogLevel.ERROR
    assert LogLevel.parse("verbose") is None
    assert LogLevel.parse(3) is None


def test_extract_progress_token() -> None:
    assert extract_progress_token({"_meta": {"progressToken": "tok"}}) == "tok"
    assert extract_progress_token({"_meta": {"progressToken": 5}}) == 5
    assert extract_progress_token({"_meta": {"progressToken": True}}) is None
    assert extract_progress_token({"name": "echo"}) is None
    assert extract_progress_token(None) is None


def test_progress_requires_token_and_is_monotonic() -> None:
    async def scenario() -> RecordingChannel:
        session, channel = await _session_with_channel()

        silent = RequestContext(session, request_id=1, method="tools/call")
        assert await silent.report_progress(0.5) is False

        context = RequestContext(session, request_id=2, method="tools/call", progress_token="p-1")
        assert await context.report_progress(1, total=4) is True
        assert await context.report_progress(3, total=4, message="almost") is True
        assert await context.report_progress(2, total=4) is False
        assert await context.report_progress(3, total=4) is True
        return channel

    channel = asyncio.run(scenario())
    messages = channel.messages()
    assert [m["params"]["progress"] for m in messages] == [1, 3, 3]
    assert messages[0] == {
        "jsonrpc": "2.0",
        "method": "notifications/progress",
        "params": {"progressToken": "p-1", "progress": 1, "total": 4},
    }
    assert messages[1]["params"]["message"] == "almost"


def test_log_notifications_respect_session_minimum_level() -> None:
    async def scenario() -> RecordingChannel:
        session, channel = await _session_with_channel()
        session.min_log_level = LogLevel.WARNING
        context = RequestContext(session, request_id=1, method="tools/call")

        assert await context.log(LogLevel.INFO, "dropped") is False
        assert await context.log(LogLevel.ERROR, "kept", logger_name="tool") is True
        return channel

    channel = asyncio.run(scenario())
    assert channel.messages() == [
        {
            "jsonrpc": "2.0",
            "method": "notifications/log",
            "params": {"level": "error", "message": "kept", "logger": "tool"},
        }
    ]


def test_push_without_channel_is_silently_lost() -> None:
    async def scenario() -> bool:
        session = Session(id="detached")
        context = RequestContext(session, progress_token="t")
        return await context.report_progress(1)

    assert asyncio.run(scenario()) is False


def test_close_session_removes_channel_and_session() -> None:
    async def scenario() -> None:
        session, channel = await _session_with_channel()
        assert session.id in ACTIVE_SESSIONS

        await close_session(session)
        await close_session(session)

        assert session.id not in ACTIVE_SESSIONS
        assert channel.closed is True
        assert await session.channels.count() == 0

    asyncio.run(scenario())
