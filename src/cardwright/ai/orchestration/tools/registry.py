"""Name-keyed map of the tools a chat turn may call."""

from __future__ import annotations

import logging
from typing import Any, Iterator

from .types import Tool

__all__ = ["ToolRegistry", "DuplicateToolError"]

LOGGER = logging.getLogger(__name__)


class DuplicateToolError(Exception):
    """Raised when a second tool claims a name that is already taken."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolRegistry:
    """Tools offered to the model, in registration order.

    The order is the order of the ``tools`` array in every completion
    request, so it stays fixed for the lifetime of the registry::

        registry = ToolRegistry()
        registry.register(EditCharacterTool(store))
        registry.register(CreateWorldBookEntryTool(store))
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> Tool:
        name = tool.name
        if not name:
            raise ValueError("Tool name must be a non-empty string")
        if name in self._tools:
            raise DuplicateToolError(name)
        self._tools[name] = tool
        LOGGER.debug("Registered tool %s", name)
        return tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_names(self) -> list[str]:
        return list(self._tools)

    def get_openai_tools(self) -> list[dict[str, Any]]:
        """Tool definitions in the OpenAI ``tools`` request format."""

        return [tool.spec.to_openai_tool() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(list(self._tools.values()))
