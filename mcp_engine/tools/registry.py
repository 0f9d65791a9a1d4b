"""Описание схем и реестра MCP-инструментов."""

from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from mcp_engine.core.context import RequestContext

logger = logging.getLogger("mcp_engine.tools.registry")

ToolResponse = Dict[str, Any]
# handler(arguments, context) -> str | ResourceContent | любое JSON-значение (или awaitable)
ToolHandler = Callable[[Dict[str, Any], "RequestContext"], Any]


class ToolError(Exception):
    """Бизнес-ошибка инструмента: клиент получает результат с `isError: true`."""


class ToolNotFoundError(ToolError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tool '{name}' not found")
        self.name = name


class ToolSchema(BaseModel):
    """JSON-схема аргументов/результатов инструмента MCP."""

    type: str = "object"
    properties: Dict[str, Any] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)
    additionalProperties: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump()


class ToolSpec(BaseModel):
    """Спецификация инструмента MCP, публикуемая в `tools/list`."""

    name: str
    description: str
    input_schema: ToolSchema = Field(default_factory=ToolSchema)
    output_schema: Optional[ToolSchema] = None

    def as_mcp_dict(self) -> Dict[str, Any]:
        payload = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema.as_dict(),
        }
        if self.output_schema is not None:
            payload["outputSchema"] = self.output_schema.as_dict()
        return payload


class ToolRegistry:
    """Имя инструмента -> (спецификация, обработчик)."""

    def __init__(self) -> None:
        self._specs: Dict[str, ToolSpec] = {}
        self._handlers: Dict[str, ToolHandler] = {}

    def register(self, spec: ToolSpec, handler: ToolHandler) -> None:
        if spec.name in self._specs:
            logger.warning("Tool '%s' re-registered, previous handler replaced", spec.name)
        self._specs[spec.name] = spec
        self._handlers[spec.name] = handler

    def list(self) -> List[ToolSpec]:
        return list(self._specs.values())

    def names(self) -> List[str]:
        return list(self._specs.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    async def invoke(self, name: str, arguments: Dict[str, Any], context: "RequestContext") -> Any:
        handler = self._handlers.get(name)
        if handler is None:
            raise ToolNotFoundError(name)
        result = handler(arguments, context)
        if inspect.isawaitable(result):
            result = await result
        return result


__all__ = [
    "ToolError",
    "ToolHandler",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolResponse",
    "ToolSchema",
    "ToolSpec",
]
