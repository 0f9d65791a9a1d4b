from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

import mcp_engine.tools.handlers as handlers
from mcp_engine.core.context import RequestContext
from mcp_engine.core.session import Session
from mcp_engine.prompts.registry import (
    PromptArgument,
    PromptError,
    PromptMessage,
    PromptMetadata,
    PromptNotFoundError,
    PromptRegistry,
)
from mcp_engine.resources.registry import (
    ResourceContent,
    ResourceDescriptor,
    ResourceError,
    ResourceRegistry,
    ResourceTemplate,
)
from mcp_engine.tools.registry import ToolError, ToolNotFoundError, ToolRegistry, ToolSpec
from mcp_engine.utils.uri_template import match_uri_template


def test_uri_template_matching() -> None:
    template = "file:///logs/{day}/{name}"
    assert match_uri_template(template, "file:///logs/2024-01-02/app%20one.log") == {
        "day": "2024-01-02",
        "name": "app one.log",
    }
    assert match_uri_template(template, "file:///logs/2024-01-02") is None
    assert match_uri_template(template, "file:///logs/a/b/c") is None


def test_uri_template_escapes_literal_parts() -> None:
    assert match_uri_template("db://t.{id}", "db://t.42") == {"id": "42"}
    assert match_uri_template("db://t.{id}", "db://tx42") is None


def test_tool_registry_invokes_sync_and_async_handlers() -> None:
    async def shout(arguments, context):
        return arguments["text"].upper()

    registry = ToolRegistry()
    registry.register(ToolSpec(name="shout", description="Upper-case"), shout)
    registry.register(ToolSpec(name="size", description="Length"), lambda arguments, context: len(arguments))

    context = RequestContext(Session(id="s"))
    assert asyncio.run(registry.invoke("shout", {"text": "hi"}, context)) == "HI"
    assert asyncio.run(registry.invoke("size", {"a": 1, "b": 2}, context)) == 2
    assert "shout" in registry and len(registry) == 2
    assert registry.list()[0].as_mcp_dict()["inputSchema"]["type"] == "object"

    with pytest.raises(ToolNotFoundError) as excinfo:
        asyncio.run(registry.invoke("missing", {}, context))
    assert str(excinfo.value) == "Tool 'missing' not found"


def test_tool_result_shapes() -> None:
    assert handlers.tool_result("ok") == {"content": [{"type": "text", "text": "ok"}], "isError": False}
    assert handlers.tool_result({"a": 1})["content"][0]["text"] == '{"a": 1}'
    content = ResourceContent(uri="file:///x", mimeType="text/plain", text="x")
    assert handlers.tool_result([content, content])["content"] == [
        {"type": "resource", "resource": {"uri": "file:///x", "mimeType": "text/plain", "text": "x"}}
    ] * 2


def test_safe_read_file_stays_inside_base(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    (tmp_path / "data.json").write_text('{"k": 1}', encoding="utf-8")
    monkeypatch.setattr(handlers, "BASE_DIR", tmp_path)

    content = handlers._safe_read_file("data.json", max_bytes=4)
    assert content.mimeType == "application/json"
    assert content.text == '{"k"'

    for bad in ("/etc/passwd", "../secret", "nested/../../secret"):
        with pytest.raises(ToolError):
            handlers._safe_read_file(bad)


def test_resource_registry_static_and_templates() -> None:
    registry = ResourceRegistry()
    registry.register(ResourceDescriptor(uri="mem://motd", name="motd"), lambda uri, variables: "hello")

    async def read_user(uri, variables):
        return ResourceContent(uri=uri, mimeType="application/json", text=f'{{"id": "{variables["id"]}"}}')

    registry.register_template(
        ResourceTemplate(uriTemplate="mem://users/{id}", name="user", values={"id": ["1", "2"]}),
        read_user,
    )

    motd = asyncio.run(registry.read("mem://motd"))
    assert [item.as_mcp_dict() for item in motd] == [{"uri": "mem://motd", "mimeType": "text/plain", "text": "hello"}]
    user = asyncio.run(registry.read("mem://users/2"))
    assert user[0].text == '{"id": "2"}'
    assert asyncio.run(registry.read("mem://nothing")) == []

    assert registry.template("mem://users/{id}").values == {"id": ["1", "2"]}
    assert "values" not in registry.list_templates()[0].as_mcp_dict()
    assert len(registry) == 2


def test_resource_reader_with_unsupported_result() -> None:
    registry = ResourceRegistry()
    registry.register(ResourceDescriptor(uri="mem://n", name="n"), lambda uri, variables: 42)
    with pytest.raises(ResourceError):
        asyncio.run(registry.read("mem://n"))


def test_prompt_registry() -> None:
    registry = PromptRegistry()
    registry.register(
        PromptMetadata(
            name="greet",
            description="Greeting",
            arguments=[PromptArgument(name="who", required=True, values=["world"])],
        ),
        lambda arguments: f"Hello, {arguments['who']}!",
    )

    async def review(arguments):
        return [PromptMessage.text("user", "Review"), {"role": "assistant", "content": {"type": "text", "text": "OK"}}]

    registry.register(PromptMetadata(name="review"), review)

    greeting = asyncio.run(registry.get("greet", {"who": "world"}))
    assert greeting[0].as_mcp_dict() == {"role": "user", "content": {"type": "text", "text": "Hello, world!"}}
    assert [message.role for message in asyncio.run(registry.get("review"))] == ["user", "assistant"]

    listed = registry.list()[0].as_mcp_dict()
    assert listed["arguments"] == [{"name": "who", "required": True}]

    with pytest.raises(PromptError, match="who"):
        asyncio.run(registry.get("greet", {}))
    with pytest.raises(PromptNotFoundError):
        asyncio.run(registry.get("absent"))
