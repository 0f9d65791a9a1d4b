from __future__ import annotations

import asyncio
import io
import json
from typing import Any, Dict, List

import pytest

from mcp_engine.api.dispatcher import McpDispatcher
from mcp_engine.core.channels import ChannelRegistry
from mcp_engine.core.session import ACTIVE_SESSIONS
from mcp_engine.tools.handlers import ECHO_TOOL, _handle_echo
from mcp_engine.tools.registry import ToolRegistry
from mcp_engine.transports.stdio import serve_stdio


@pytest.fixture(autouse=True)
def clear_sessions() -> None:
    ACTIVE_SESSIONS.clear()
    yield
    ACTIVE_SESSIONS.clear()


def _dispatcher() -> McpDispatcher:
    tools = ToolRegistry()
    tools.register(ECHO_TOOL, _handle_echo)
    return McpDispatcher(tools=tools)


def _run(lines: List[str]) -> List[Any]:
    reader = io.StringIO("".join(line + "\n" for line in lines))
    writer = io.StringIO()
    channels = ChannelRegistry()
    asyncio.run(serve_stdio(_dispatcher(), channels, reader=reader, writer=writer))
    assert asyncio.run(channels.count()) == 0
    return [json.loads(line) for line in writer.getvalue().splitlines()]


def _request(method: str, request_id: Any, params: Dict[str, Any] = None) -> str:
    payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        payload["params"] = params
    return json.dumps(payload)


def test_one_reply_per_request_line() -> None:
    replies = _run(
        [
            _request("initialize", 1, {"protocolVersion": "2024-11-05", "capabilities": {}}),
            json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
            "",
            _request("tools/call", 2, {"name": "echo", "arguments": {"text": "hi"}}),
        ]
    )
    assert [reply["id"] for reply in replies] == [1, 2]
    assert replies[0]["result"]["capabilities"]["tools"] == {"listChanged": False}
    assert replies[1]["result"]["content"] == [{"type": "text", "text": "hi"}]


def test_garbage_line_gets_parse_error_and_loop_continues() -> None:
    replies = _run(["{not json", _request("ping", "after")])
    assert replies[0]["error"]["code"] == -32700
    assert replies[0]["id"] is None
    assert replies[1] == {"jsonrpc": "2.0", "id": "after", "result": {}}


def test_batch_line_gets_array_reply() -> None:
    batch = json.dumps(
        [
            json.loads(_request("ping", 1)),
            {"jsonrpc": "2.0", "method": "notifications/initialized"},
            json.loads(_request("missing", 2)),
        ]
    )
    (reply,) = _run([batch])
    assert [item["id"] for item in reply] == [1, 2]
    assert reply[1]["error"]["code"] == -32601


def test_log_notifications_are_written_before_reply() -> None:
    replies = _run(
        [
            _request("logging/setLevel", 1, {"level": "debug"}),
            _request("tools/call", 2, {"name": "echo", "arguments": {"text": "abc"}}),
        ]
    )
    assert replies[0]["id"] == 1
    assert replies[1]["method"] == "notifications/log"
    assert replies[1]["params"]["level"] == "debug"
    assert replies[2]["id"] == 2


def test_session_is_closed_at_eof() -> None:
    _run([_request("ping", 1)])
    assert ACTIVE_SESSIONS == {}
