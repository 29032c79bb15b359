"""Core data types for chat turns.

Messages are immutable; history edits replace whole messages. The wire
format (``to_chat_param``) is the OpenAI chat-completions shape, while
``to_record`` is the persisted shape used by the chat log.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal, Mapping, Sequence

from ...errors import CompletionEndpointError, ToolLoopExceeded, TurnTimeoutError

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from .tools.types import ToolResult

__all__ = [
    "MessageRole",
    "ToolCall",
    "Message",
    "CompletionUsage",
    "ModelResponse",
    "TurnState",
    "FailureKind",
    "TurnFailure",
    "ToolCallRecord",
    "TurnResult",
]

MessageRole = Literal["system", "user", "assistant", "tool"]
_VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    return _utcnow()


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A model-requested function invocation.

    Attributes:
        id: Identifier correlating the call with its ``tool`` reply.
        name: Registered tool name.
        arguments: Raw JSON argument string as produced by the model.
    """

    id: str
    name: str
    arguments: str = "{}"

    def to_chat_param(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_chat_param(cls, payload: Mapping[str, Any]) -> ToolCall:
        function = payload.get("function") or {}
        arguments = function.get("arguments")
        if arguments is None:
            arguments = "{}"
        elif not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)
        return cls(
            id=str(payload.get("id") or ""),
            name=str(function.get("name") or ""),
            arguments=arguments,
        )


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message stored in session history.

    Attributes:
        role: The role of the message sender.
        content: The text content of the message.
        tool_calls: Tool calls requested by an assistant message.
        tool_call_id: ID linking a tool reply to its call.
        name: Tool name for tool replies.
        timestamp: When the message was created.
        metadata: Additional metadata (never sent to the model).
    """

    role: MessageRole
    content: str
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.role not in _VALID_ROLES:
            raise ValueError(f"Unsupported message role: {self.role!r}")
        if self.tool_calls is not None and not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_chat_param(self) -> dict[str, Any]:
        """Convert to OpenAI's chat message format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.name is not None and self.role == "tool":
            payload["name"] = self.name
        return payload

    def to_record(self) -> dict[str, Any]:
        """Serialize for the chat log."""
        record = self.to_chat_param()
        record["timestamp"] = self.timestamp.isoformat()
        if self.metadata:
            record["metadata"] = dict(self.metadata)
        return record

    @classmethod
    def from_record(cls, payload: Mapping[str, Any]) -> Message:
        raw_calls = payload.get("tool_calls")
        tool_calls = None
        if raw_calls:
            tool_calls = tuple(ToolCall.from_chat_param(item) for item in raw_calls)
        metadata = payload.get("metadata")
        return cls(
            role=str(payload.get("role", "user")),  # type: ignore[arg-type]
            content=str(payload.get("content") or ""),
            tool_calls=tool_calls,
            tool_call_id=payload.get("tool_call_id"),
            name=payload.get("name"),
            timestamp=_parse_timestamp(payload.get("timestamp")),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )

    @classmethod
    def system(cls, content: str, **metadata: Any) -> Message:
        return cls(role="system", content=content, metadata=metadata)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> Message:
        return cls(role="user", content=content, metadata=metadata)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Sequence[ToolCall] | None = None,
        **metadata: Any,
    ) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
            metadata=metadata,
        )

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str | None = None, **metadata: Any) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name, metadata=metadata)


# -----------------------------------------------------------------------------
# Model Responses
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CompletionUsage:
    """Token usage reported by the completion endpoint."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: CompletionUsage) -> CompletionUsage:
        return CompletionUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass(slots=True, frozen=True)
class ModelResponse:
    """Parsed completion: either content, tool calls, or both."""

    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None
    usage: CompletionUsage = field(default_factory=CompletionUsage)
    model: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    def to_message(self) -> Message:
        return Message.assistant(self.content, tool_calls=self.tool_calls or None)


# -----------------------------------------------------------------------------
# Turn Results
# -----------------------------------------------------------------------------


class TurnState(str, Enum):
    BUILDING_CONTEXT = "building_context"
    AWAITING_COMPLETION = "awaiting_completion"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    FAILED = "failed"


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    ENDPOINT_ERROR = "endpoint_error"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"


@dataclass(slots=True, frozen=True)
class TurnFailure:
    kind: FailureKind
    message: str
    error: BaseException | None = None


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """A tool call paired with the result it produced."""

    call: ToolCall
    result: "ToolResult"


@dataclass(slots=True)
class TurnResult:
    """Outcome of one send/regenerate/continue operation.

    Attributes:
        session_id: Character id of the session the turn ran on.
        state: ``DONE`` or ``FAILED``.
        message: Final assistant message committed to history, if any.
        intermediate_messages: Assistant tool-call and tool reply messages
            produced during the turn, in order.
        tool_calls: Every executed tool call with its result.
        iterations: Completion requests issued.
        usage: Accumulated endpoint usage.
        context_tokens: Token total of the last built context.
        failure: Failure details when ``state`` is ``FAILED``.
    """

    session_id: str
    state: TurnState
    message: Message | None = None
    intermediate_messages: list[Message] = field(default_factory=list)
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    iterations: int = 0
    usage: CompletionUsage = field(default_factory=CompletionUsage)
    context_tokens: int = 0
    failure: TurnFailure | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is TurnState.DONE

    def raise_for_failure(self) -> None:
        """Re-raise the failure as its typed exception."""

        failure = self.failure
        if failure is None:
            return
        if failure.error is not None:
            raise failure.error
        if failure.kind is FailureKind.TIMEOUT:
            raise TurnTimeoutError(0.0)
        if failure.kind is FailureKind.TOOL_LOOP_EXCEEDED:
            raise ToolLoopExceeded(self.iterations)
        raise CompletionEndpointError(failure.message)
