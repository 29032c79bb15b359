"""Tool system types.

A tool is anything exposing ``name``, ``spec`` and an async ``execute``.
Tools receive the character id of the session that requested them so a
single registry can serve every resident session.
"""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Mapping, Protocol, runtime_checkable

__all__ = [
    "ToolSpec",
    "ToolResult",
    "ToolHandler",
    "AsyncToolHandler",
    "Tool",
    "SimpleTool",
    "ToolCategory",
]


# -----------------------------------------------------------------------------
# Tool Categories
# -----------------------------------------------------------------------------


class ToolCategory:
    """Standard tool categories for organization."""

    CHARACTER = "character"
    WORLDBOOK = "worldbook"
    UTILITY = "utility"


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description shown to the model.
        parameters: JSON Schema for the tool's arguments.
        category: Tool category for organization.
        is_write: Whether the tool mutates the character profile.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    category: str = ToolCategory.UTILITY
    is_write: bool = False

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


# -----------------------------------------------------------------------------
# Tool Result
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolResult:
    """Outcome of a single tool execution.

    Failures are data: the pipeline feeds them back to the model instead of
    aborting the turn.
    """

    success: bool
    data: Any = None
    error: str | None = None
    execution_time_ms: float = 0.0

    @classmethod
    def ok(cls, data: Any = None, *, execution_time_ms: float = 0.0) -> ToolResult:
        return cls(success=True, data=data, execution_time_ms=execution_time_ms)

    @classmethod
    def failure(cls, error: str, *, execution_time_ms: float = 0.0) -> ToolResult:
        return cls(success=False, error=error, execution_time_ms=execution_time_ms)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.success:
            payload["data"] = self.data
        else:
            payload["error"] = self.error or "unknown error"
        return payload

    def to_content(self) -> str:
        """Render as the content of a ``tool`` message."""
        try:
            return json.dumps(self.to_dict(), ensure_ascii=False)
        except (TypeError, ValueError):
            fallback = self.to_dict()
            fallback["data"] = str(self.data)
            return json.dumps(fallback, ensure_ascii=False)


# -----------------------------------------------------------------------------
# Tool Handler Types
# -----------------------------------------------------------------------------

ToolHandler = Callable[[Mapping[str, Any], str], Any]
AsyncToolHandler = Callable[[Mapping[str, Any], str], Coroutine[Any, Any, Any]]


# -----------------------------------------------------------------------------
# Tool Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any], character_id: str) -> Any:
        """Run the tool for ``character_id``.

        Returns either a :class:`ToolResult` or any JSON-serializable value,
        which is wrapped as a successful result. Raising marks the call failed.
        """
        ...


@dataclass
class SimpleTool:
    """Tool implementation wrapping a plain callable."""

    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = inspect.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any], character_id: str) -> Any:
        if self._is_async:
            return await self.handler(arguments, character_id)  # type: ignore[misc]
        return self.handler(arguments, character_id)
