"""Tool registry and execution for chat turns."""

from .executor import ExecutorConfig, ToolExecutor, parse_tool_arguments
from .registry import DuplicateToolError, ToolRegistry
from .types import SimpleTool, Tool, ToolCategory, ToolResult, ToolSpec

__all__ = [
    "DuplicateToolError",
    "ExecutorConfig",
    "SimpleTool",
    "Tool",
    "ToolCategory",
    "ToolExecutor",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "parse_tool_arguments",
]
