# mcp_engine/main.py
"""Точка входа MCP engine: сборка реестров, FastAPI-приложение и запуск транспорта.

`MCP_TRANSPORT=stdio` (по умолчанию) обслуживает одного клиента через
stdin/stdout, `MCP_TRANSPORT=http` поднимает uvicorn с HTTP+SSE маршрутами.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import configure_routes, router as api_router
from .api.dispatcher import McpDispatcher
from .api.routes import UnauthorizedError, unauthorized_handler
from .auth.tokens import create_token_validator
from .core.channels import ChannelRegistry
from .core.config import (
    CORS_ORIGINS,
    HTTP_HOST,
    HTTP_PORT,
    OAUTH_SETTINGS,
    PROTOCOL_VERSION,
    SERVER_INFO,
    SERVER_LOG_LEVEL,
    SESSION_IDLE_SECONDS,
    SESSION_SWEEP_SECONDS,
    SSE_PING_SECONDS,
    TRANSPORT,
)
from .core.session import ACTIVE_SESSIONS, run_session_expiry
from .prompts.registry import PromptArgument, PromptMessage, PromptMetadata, PromptRegistry
from .resources.registry import ResourceContent, ResourceDescriptor, ResourceRegistry, ResourceTemplate
from .tools.handlers import ECHO_TOOL, READ_FILE_TOOL, _handle_echo, _handle_read_file
from .tools.registry import ToolRegistry
from .transports.stdio import run_stdio

logger = logging.getLogger("mcp_engine")
if not logger.handlers:
    # stderr: stdout занят кадрами stdio-транспорта
    logging.basicConfig(level=SERVER_LOG_LEVEL, stream=sys.stderr)


# =========================
# Registries
# =========================
TOOLS = ToolRegistry()
TOOLS.register(ECHO_TOOL, _handle_echo)
TOOLS.register(READ_FILE_TOOL, _handle_read_file)


def _read_server_info(uri: str, variables: Dict[str, str]) -> ResourceContent:
    payload = {
        "serverInfo": SERVER_INFO,
        "protocolVersion": PROTOCOL_VERSION,
        "tools": TOOLS.names(),
        "activeSessions": len(ACTIVE_SESSIONS),
    }
    return ResourceContent(uri=uri, mimeType="application/json", text=json.dumps(payload, ensure_ascii=False))


def _read_tool_spec(uri: str, variables: Dict[str, str]) -> List[ResourceContent]:
    name = variables.get("name", "")
    spec = next((item for item in TOOLS.list() if item.name == name), None)
    if spec is None:
        return []
    return [ResourceContent(uri=uri, mimeType="application/json", text=json.dumps(spec.as_mcp_dict(), ensure_ascii=False))]


RESOURCES = ResourceRegistry()
RESOURCES.register(
    ResourceDescriptor(
        uri="server://info",
        name="Server info",
        description="Server name, version, protocol and registered tools.",
        mimeType="application/json",
    ),
    _read_server_info,
)
RESOURCES.register_template(
    ResourceTemplate(
        uriTemplate="server://tools/{name}",
        name="Tool specification",
        description="MCP description of a registered tool.",
        mimeType="application/json",
        values={"name": TOOLS.names()},
    ),
    _read_tool_spec,
)


def _explain_tool_prompt(arguments: Dict[str, str]) -> List[PromptMessage]:
    tool = arguments["tool"]
    if tool not in TOOLS:
        raise ValueError(f"Unknown tool '{tool}'")
    return [PromptMessage.text("user", f"Explain when and how to call the '{tool}' tool.")]


PROMPTS = PromptRegistry()
PROMPTS.register(
    PromptMetadata(
        name="explain_tool",
        description="Ask the model to explain one of the server tools.",
        arguments=[PromptArgument(name="tool", description="Tool name", required=True, values=TOOLS.names())],
    ),
    _explain_tool_prompt,
)

CHANNELS = ChannelRegistry()
DISPATCHER = McpDispatcher(tools=TOOLS, resources=RESOURCES, prompts=PROMPTS)
TOKEN_VALIDATOR = create_token_validator(OAUTH_SETTINGS)


# =========================
# FastAPI app
# =========================
@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    sweeper = asyncio.create_task(run_session_expiry(SESSION_IDLE_SECONDS, SESSION_SWEEP_SECONDS))
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await CHANNELS.close_all()


app = FastAPI(title="MCP Engine", version=SERVER_INFO["version"], lifespan=_lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Mcp-Session-Id"],
    expose_headers=["Mcp-Session-Id"],
)

configure_routes(
    dispatcher=DISPATCHER,
    channels=CHANNELS,
    validator=TOKEN_VALIDATOR,
    oauth=OAUTH_SETTINGS,
    ping_seconds=SSE_PING_SECONDS,
)
app.include_router(api_router)
app.add_exception_handler(UnauthorizedError, unauthorized_handler)


def run() -> None:
    if TRANSPORT == "http":
        logger.info("Starting MCP HTTP transport at http://%s:%d", HTTP_HOST, HTTP_PORT)
        uvicorn.run(app, host=HTTP_HOST, port=HTTP_PORT, log_level=SERVER_LOG_LEVEL.lower())
    elif TRANSPORT == "stdio":
        run_stdio(DISPATCHER, CHANNELS)
    else:
        logger.error("Unknown MCP_TRANSPORT=%r (expected 'stdio' or 'http')", TRANSPORT)
        raise SystemExit(2)


__all__ = [
    "ACTIVE_SESSIONS",
    "CHANNELS",
    "DISPATCHER",
    "PROMPTS",
    "PROTOCOL_VERSION",
    "RESOURCES",
    "TOOLS",
    "app",
    "run",
]
