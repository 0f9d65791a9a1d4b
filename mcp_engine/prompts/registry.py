"""Реестр MCP-промптов."""

from __future__ import annotations

import inspect
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

# handler(arguments) -> list[PromptMessage] | PromptMessage | str (или awaitable)
PromptHandler = Callable[[Dict[str, str]], Any]


class PromptError(Exception):
    pass


class PromptNotFoundError(PromptError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Prompt '{name}' not found")
        self.name = name


class PromptArgument(BaseModel):
    name: str
    description: Optional[str] = None
    required: bool = False
    values: List[str] = Field(default_factory=list)

    def as_mcp_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={"values"})


class PromptMetadata(BaseModel):
    name: str
    description: Optional[str] = None
    arguments: List[PromptArgument] = Field(default_factory=list)

    def argument(self, name: str) -> Optional[PromptArgument]:
        return next((arg for arg in self.arguments if arg.name == name), None)

    def as_mcp_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name, "arguments": [arg.as_mcp_dict() for arg in self.arguments]}
        if self.description is not None:
            payload["description"] = self.description
        return payload


class PromptMessage(BaseModel):
    role: str
    content: Dict[str, Any]

    @classmethod
    def text(cls, role: str, text: str) -> "PromptMessage":
        return cls(role=role, content={"type": "text", "text": text})

    def as_mcp_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


def _normalise_messages(result: Any) -> List[PromptMessage]:
    if isinstance(result, PromptMessage):
        return [result]
    if isinstance(result, str):
        return [PromptMessage.text("user", result)]
    if isinstance(result, list):
        return [item if isinstance(item, PromptMessage) else PromptMessage.model_validate(item) for item in result]
    raise PromptError(f"Unsupported prompt handler result: {type(result).__name__}")


class PromptRegistry:
    def __init__(self) -> None:
        self._prompts: Dict[str, Tuple[PromptMetadata, PromptHandler]] = {}

    def register(self, metadata: PromptMetadata, handler: PromptHandler) -> None:
        self._prompts[metadata.name] = (metadata, handler)

    def list(self) -> List[PromptMetadata]:
        return [metadata for metadata, _ in self._prompts.values()]

    def metadata(self, name: str) -> Optional[PromptMetadata]:
        entry = self._prompts.get(name)
        return entry[0] if entry else None

    def __len__(self) -> int:
        return len(self._prompts)

    async def get(self, name: str, arguments: Optional[Dict[str, str]] = None) -> List[PromptMessage]:
        entry = self._prompts.get(name)
        if entry is None:
            raise PromptNotFoundError(name)
        metadata, handler = entry
        arguments = dict(arguments or {})
        missing = [arg.name for arg in metadata.arguments if arg.required and arg.name not in arguments]
        if missing:
            raise PromptError(f"Missing required argument(s): {', '.join(missing)}")
        result = handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        return _normalise_messages(result)


__all__ = [
    "PromptArgument",
    "PromptError",
    "PromptHandler",
    "PromptMessage",
    "PromptMetadata",
    "PromptNotFoundError",
    "PromptRegistry",
]
