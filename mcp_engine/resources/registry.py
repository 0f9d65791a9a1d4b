"""Реестр MCP-ресурсов: статические URI и шаблоны URI."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from mcp_engine.utils.uri_template import match_uri_template

logger = logging.getLogger("mcp_engine.resources.registry")

# reader(uri, variables) -> ResourceContent | list[ResourceContent] | str (или awaitable)
ResourceReader = Callable[[str, Dict[str, str]], Any]


class ResourceError(Exception):
    """Ошибка чтения ресурса."""


class ResourceContent(BaseModel):
    """Содержимое ресурса: текст или base64-блоб."""

    uri: str
    mimeType: Optional[str] = None
    text: Optional[str] = None
    blob: Optional[str] = None

    def as_mcp_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ResourceDescriptor(BaseModel):
    uri: str
    name: str
    description: Optional[str] = None
    mimeType: Optional[str] = None

    def as_mcp_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ResourceTemplate(BaseModel):
    """Шаблон URI; `values` перечисляет допустимые значения переменных для автодополнения."""

    uriTemplate: str
    name: str
    description: Optional[str] = None
    mimeType: Optional[str] = None
    values: Dict[str, List[str]] = Field(default_factory=dict)

    def as_mcp_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={"values"})


def _normalise_contents(uri: str, result: Any) -> List[ResourceContent]:
    if result is None:
        return []
    if isinstance(result, ResourceContent):
        return [result]
    if isinstance(result, str):
        return [ResourceContent(uri=uri, mimeType="text/plain", text=result)]
    if isinstance(result, list):
        contents: List[ResourceContent] = []
        for item in result:
            contents.extend(_normalise_contents(uri, item))
        return contents
    raise ResourceError(f"Unsupported resource reader result: {type(result).__name__}")


class ResourceRegistry:
    def __init__(self) -> None:
        self._resources: Dict[str, Tuple[ResourceDescriptor, ResourceReader]] = {}
        self._templates: Dict[str, Tuple[ResourceTemplate, ResourceReader]] = {}

    def register(self, descriptor: ResourceDescriptor, reader: ResourceReader) -> None:
        self._resources[descriptor.uri] = (descriptor, reader)

    def register_template(self, template: ResourceTemplate, reader: ResourceReader) -> None:
        self._templates[template.uriTemplate] = (template, reader)

    def list(self) -> List[ResourceDescriptor]:
        return [descriptor for descriptor, _ in self._resources.values()]

    def list_templates(self) -> List[ResourceTemplate]:
        return [template for template, _ in self._templates.values()]

    def template(self, uri_template: str) -> Optional[ResourceTemplate]:
        entry = self._templates.get(uri_template)
        return entry[0] if entry else None

    def __len__(self) -> int:
        return len(self._resources) + len(self._templates)

    def _resolve(self, uri: str) -> Optional[Tuple[ResourceReader, Dict[str, str]]]:
        entry = self._resources.get(uri)
        if entry is not None:
            return entry[1], {}
        for template, reader in self._templates.values():
            variables = match_uri_template(template.uriTemplate, uri)
            if variables is not None:
                return reader, variables
        return None

    async def read(self, uri: str) -> List[ResourceContent]:
        """Читает ресурс; неизвестный URI даёт пустой список, а не исключение."""
        resolved = self._resolve(uri)
        if resolved is None:
            logger.debug("No resource matches %s", uri)
            return []
        reader, variables = resolved
        result = reader(uri, variables)
        if inspect.isawaitable(result):
            result = await result
        return _normalise_contents(uri, result)


__all__ = [
    "ResourceContent",
    "ResourceDescriptor",
    "ResourceError",
    "ResourceReader",
    "ResourceRegistry",
    "ResourceTemplate",
]
