"""Обработчики встроенных MCP-инструментов и упаковка результатов в content-блоки."""

from __future__ import annotations

import json
import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp_engine.core.context import RequestContext
from mcp_engine.core.config import BASE_DIR
from mcp_engine.models.notifications import LogLevel
from mcp_engine.resources.registry import ResourceContent
from mcp_engine.tools.registry import ToolError, ToolResponse, ToolSchema, ToolSpec

logger = logging.getLogger("mcp_engine.tools.handlers")


def _tool_ok(*, content: Optional[List[Dict[str, Any]]] = None) -> ToolResponse:
    return {"content": content or [], "isError": False}


def _tool_error(message: str) -> ToolResponse:
    return {"content": [{"type": "text", "text": message}], "isError": True}


def _content_block(value: Any) -> Dict[str, Any]:
    if isinstance(value, ResourceContent):
        return {"type": "resource", "resource": value.as_mcp_dict()}
    if isinstance(value, str):
        return {"type": "text", "text": value}
    return {"type": "text", "text": json.dumps(value, ensure_ascii=False, default=str)}


def tool_result(value: Any) -> ToolResponse:
    """Превращает возвращённое обработчиком значение в результат `tools/call`."""
    if isinstance(value, list) and value and all(isinstance(item, ResourceContent) for item in value):
        return _tool_ok(content=[_content_block(item) for item in value])
    return _tool_ok(content=[_content_block(value)])


def _safe_read_file(path: str, *, max_bytes: int = 200_000) -> ResourceContent:
    raw = Path(path)
    if raw.is_absolute() or ".." in raw.parts:
        raise ToolError("Invalid path (absolute paths and traversal are not allowed)")
    base = BASE_DIR.resolve()
    target = (base / raw).resolve()
    if not target.is_relative_to(base):
        raise ToolError("Path escapes base directory")
    try:
        data = target.read_bytes()[: max(1, int(max_bytes))]
    except FileNotFoundError as exc:
        raise ToolError(f"File not found: {raw}") from exc
    except OSError as exc:
        raise ToolError(f"{type(exc).__name__}: {exc}") from exc
    mime_type, _ = mimetypes.guess_type(target.name)
    return ResourceContent(
        uri=target.as_uri(),
        mimeType=mime_type or "text/plain",
        text=data.decode("utf-8", errors="replace"),
    )


async def _handle_echo(arguments: Dict[str, Any], context: RequestContext) -> str:
    text = arguments.get("text")
    if not isinstance(text, str):
        raise ToolError("Invalid params: 'text' must be a string")
    await context.log(LogLevel.DEBUG, f"echo: {len(text)} chars", logger_name="echo")
    return text


def _handle_read_file(arguments: Dict[str, Any], context: RequestContext) -> ResourceContent:
    path = arguments.get("path")
    if not isinstance(path, str):
        raise ToolError("Invalid params: 'path' must be a string")
    max_bytes_raw = arguments.get("max_bytes", 200_000)
    try:
        max_bytes = int(max_bytes_raw)
    except (TypeError, ValueError) as exc:
        raise ToolError("Invalid params: 'max_bytes' must be an integer") from exc
    logger.debug("read_file %s (max_bytes=%d, session=%s)", path, max_bytes, context.session.id)
    return _safe_read_file(path, max_bytes=max_bytes)


ECHO_TOOL = ToolSpec(
    name="echo",
    description="Echo text back.",
    input_schema=ToolSchema(
        properties={
            "text": {"type": "string", "description": "Text to echo"},
        },
        required=["text"],
    ),
)

READ_FILE_TOOL = ToolSpec(
    name="read_file",
    description="Read a UTF-8 text file below the server base directory (relative path).",
    input_schema=ToolSchema(
        properties={
            "path": {"type": "string", "description": "Relative path under the base directory"},
            "max_bytes": {
                "type": "integer",
                "description": "Max bytes to read",
                "minimum": 1,
                "default": 200_000,
            },
        },
        required=["path"],
    ),
)


__all__ = [
    "ECHO_TOOL",
    "READ_FILE_TOOL",
    "_handle_echo",
    "_handle_read_file",
    "_safe_read_file",
    "_tool_error",
    "_tool_ok",
    "tool_result",
]
