"""Unit tests for the tool registry and tool types."""

from __future__ import annotations

import json
from typing import Any, Mapping

import pytest

from cardwright.ai.orchestration.tools import (
    DuplicateToolError,
    SimpleTool,
    Tool,
    ToolCategory,
    ToolRegistry,
    ToolResult,
    ToolSpec,
)


# -----------------------------------------------------------------------------
# Test Fixtures and Helpers
# -----------------------------------------------------------------------------


def make_spec(name: str = "echo", **kwargs: Any) -> ToolSpec:
    return ToolSpec(name=name, description=f"{name} tool", **kwargs)


class EchoTool:
    def __init__(self, name: str = "echo") -> None:
        self._spec = make_spec(name)

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def spec(self) -> ToolSpec:
        return self._spec

    async def execute(self, arguments: Mapping[str, Any], character_id: str) -> Any:
        return {"character_id": character_id, **arguments}


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry()


# -----------------------------------------------------------------------------
# ToolSpec / ToolResult
# -----------------------------------------------------------------------------


class TestToolSpec:
    def test_openai_format(self) -> None:
        schema = {"type": "object", "properties": {"x": {"type": "string"}}}
        spec = make_spec("edit", parameters=schema, category=ToolCategory.CHARACTER, is_write=True)

        assert spec.to_openai_tool() == {
            "type": "function",
            "function": {"name": "edit", "description": "edit tool", "parameters": schema},
        }

    def test_missing_parameters_become_empty_object_schema(self) -> None:
        function = make_spec().to_openai_tool()["function"]
        assert function["parameters"] == {"type": "object", "properties": {}}


class TestToolResult:
    def test_success_content(self) -> None:
        assert json.loads(ToolResult.ok({"updated": ["tags"]}).to_content()) == {
            "success": True,
            "data": {"updated": ["tags"]},
        }

    def test_failure_content(self) -> None:
        assert json.loads(ToolResult.failure("nope").to_content()) == {"success": False, "error": "nope"}

    def test_unserializable_data_is_stringified(self) -> None:
        content = json.loads(ToolResult.ok({1, 2}).to_content())
        assert content["success"] is True
        assert isinstance(content["data"], str)


# -----------------------------------------------------------------------------
# Registration
# -----------------------------------------------------------------------------


class TestRegistration:
    def test_register_and_get(self, registry: ToolRegistry) -> None:
        tool = EchoTool()

        assert registry.register(tool) is tool
        assert isinstance(tool, Tool)
        assert registry.get("echo") is tool
        assert registry.get("missing") is None
        assert "echo" in registry
        assert len(registry) == 1
        assert list(registry) == [tool]

    def test_duplicate_name_is_rejected(self, registry: ToolRegistry) -> None:
        first = EchoTool()
        registry.register(first)

        with pytest.raises(DuplicateToolError) as excinfo:
            registry.register(EchoTool())

        assert excinfo.value.name == "echo"
        assert registry.get("echo") is first

    def test_blank_name_is_rejected(self, registry: ToolRegistry) -> None:
        with pytest.raises(ValueError):
            registry.register(EchoTool(""))


class TestListing:
    def test_registration_order_is_preserved(self, registry: ToolRegistry) -> None:
        for name in ("b_tool", "a_tool", "c_tool"):
            registry.register(EchoTool(name))

        assert registry.list_names() == ["b_tool", "a_tool", "c_tool"]
        assert [tool["function"]["name"] for tool in registry.get_openai_tools()] == [
            "b_tool",
            "a_tool",
            "c_tool",
        ]

    def test_empty_registry_offers_no_tools(self, registry: ToolRegistry) -> None:
        assert registry.list_names() == []
        assert registry.get_openai_tools() == []


class TestSimpleTool:
    @pytest.mark.asyncio
    async def test_sync_handler(self) -> None:
        tool = SimpleTool(spec=make_spec(), handler=lambda args, character_id: (character_id, dict(args)))

        assert await tool.execute({"a": 1}, "ava") == ("ava", {"a": 1})

    @pytest.mark.asyncio
    async def test_async_handler(self) -> None:
        async def handler(args: Mapping[str, Any], character_id: str) -> str:
            return f"{character_id}:{args['x']}"

        tool = SimpleTool(spec=make_spec(), handler=handler)

        assert await tool.execute({"x": "y"}, "bram") == "bram:y"
