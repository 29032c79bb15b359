"""Turn orchestration: message types, context assembly, tools and the chat pipeline.

The pipeline lives in :mod:`cardwright.ai.orchestration.pipeline` and is not
re-exported here so that session modules can import message types without
pulling in the session manager.
"""

from .context_builder import ContextBuilder, ContextBuildResult, ContextOptions, TokenAllocation
from .types import (
    CompletionUsage,
    FailureKind,
    Message,
    ModelResponse,
    ToolCall,
    ToolCallRecord,
    TurnFailure,
    TurnResult,
    TurnState,
)

__all__ = [
    "CompletionUsage",
    "ContextBuildResult",
    "ContextBuilder",
    "ContextOptions",
    "FailureKind",
    "Message",
    "ModelResponse",
    "TokenAllocation",
    "ToolCall",
    "ToolCallRecord",
    "TurnFailure",
    "TurnResult",
    "TurnState",
]
