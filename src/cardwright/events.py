"""Event bus and the notifications emitted by the session engine.

Events are advisory. Session state is the source of truth, and observers
must not assume a notification arrives before that state is queryable.
Handlers run synchronously in registration order; a failing handler is
logged and never interrupts the publisher.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    ClassVar,
    Generic,
    Mapping,
    Protocol,
    TypeVar,
)
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all engine events.

    Subclasses set ``kind`` to the wire name used by transports that only
    understand ``(kind, payload)`` pairs.
    """

    kind: ClassVar[str] = "event"

    def payload(self) -> dict[str, Any]:
        """Return a JSON-friendly mapping of the event fields."""
        return {item.name: _to_payload(getattr(self, item.name)) for item in fields(self)}


def _to_payload(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    to_record = getattr(value, "to_record", None)
    if callable(to_record):
        return to_record()
    if is_dataclass(value) and not isinstance(value, type):
        return {item.name: _to_payload(getattr(value, item.name)) for item in fields(value)}
    if isinstance(value, Mapping):
        return {str(key): _to_payload(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_payload(item) for item in value]
    return value


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


class EventSink(Protocol):
    """What the engine needs from a notification transport."""

    def publish(self, event: Event) -> None:
        ...


# =============================================================================
# Session Events
# =============================================================================


@dataclass(slots=True)
class SessionLoaded(Event):
    """A session became resident (fresh load or reactivation)."""

    kind: ClassVar[str] = "character-loaded"

    character_id: str
    character_name: str
    message_count: int


@dataclass(slots=True)
class ChatHistoryLoaded(Event):
    """History for a session was read from the chat log."""

    kind: ClassVar[str] = "chat-history-loaded"

    character_id: str
    message_count: int


@dataclass(slots=True)
class SessionUnloaded(Event):
    """A session left the pool.

    Attributes:
        reason: One of the ``UnloadReason`` values.
        flushed: Number of messages written to the chat log on the way out.
    """

    kind: ClassVar[str] = "session-unloaded"

    character_id: str
    reason: str
    flushed: int = 0


@dataclass(slots=True)
class CharacterUpdated(Event):
    """A resident session picked up a changed character profile."""

    kind: ClassVar[str] = "character-updated"

    character_id: str
    character_name: str
    update_type: str = "FullData"
    fields: tuple[str, ...] = ()


# =============================================================================
# Turn Events
# =============================================================================


@dataclass(slots=True)
class ContextBuilt(Event):
    kind: ClassVar[str] = "context-built"

    character_id: str
    total_tokens: int
    token_budget: int
    allocation: Mapping[str, int] = field(default_factory=dict)
    was_truncated: bool = False
    history_messages: int = 0


@dataclass(slots=True)
class MessageSent(Event):
    """A user message was accepted into history."""

    kind: ClassVar[str] = "message-sent"

    character_id: str
    content: str
    index: int


@dataclass(slots=True)
class ToolExecuted(Event):
    kind: ClassVar[str] = "tool-executed"

    character_id: str
    tool_name: str
    tool_call_id: str
    success: bool
    result: Any = None
    error: str | None = None
    execution_time_ms: float = 0.0


@dataclass(slots=True)
class MessageReceived(Event):
    """A final assistant message was committed to history."""

    kind: ClassVar[str] = "message-received"

    character_id: str
    content: str
    index: int
    intermediate_messages: tuple[Any, ...] = ()


@dataclass(slots=True)
class TurnFailed(Event):
    kind: ClassVar[str] = "turn-failed"

    character_id: str
    failure: str
    message: str


@dataclass(slots=True)
class TokenStats(Event):
    kind: ClassVar[str] = "token-stats"

    character_id: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    context_tokens: int
    budget_utilization: float


@dataclass(slots=True)
class ProgressUpdated(Event):
    """Coarse progress for long operations (0.0 to 1.0)."""

    kind: ClassVar[str] = "progress"

    operation: str
    progress: float
    message: str = ""


@dataclass(slots=True)
class GenericEvent(Event):
    """Untyped event built by :meth:`EventBus.emit`."""

    kind: ClassVar[str] = "generic"

    name: str
    data: Mapping[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {str(key): _to_payload(value) for key, value in self.data.items()}


_QUIET_EVENT_TYPES.add(ProgressUpdated)


# =============================================================================
# Event Bus
# =============================================================================


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus.

    Example::

        bus = EventBus()
        bus.subscribe(MessageReceived, lambda event: print(event.content))
        bus.subscribe_all(lambda event: transport.send(event.kind, event.payload()))

    Not thread-safe; use from the event loop thread.
    """

    __slots__ = ("_handlers", "_wildcard")

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)
        self._wildcard: list[_HandlerRef] = []

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for events of exactly ``event_type``.

        Bound methods are held weakly so subscribers can be garbage collected
        without unsubscribing.
        """
        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def subscribe_all(self, handler: Handler[Event]) -> None:
        """Register ``handler`` for every published event."""
        self._wildcard.append(_HandlerRef.create(handler))

    def unsubscribe(self, event_type: type[E] | None, handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; ``None`` targets ``subscribe_all``."""
        handlers = self._wildcard if event_type is None else self._handlers.get(event_type)
        if not handlers:
            return
        for index, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(index)
                return

    def publish(self, event: Event) -> None:
        event_type = type(event)
        handlers = list(self._handlers.get(event_type, ())) + list(self._wildcard)
        if event_type not in _QUIET_EVENT_TYPES:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))
        if not handlers:
            return

        dead = False
        for handler_ref in handlers:
            handler = handler_ref.resolve()
            if handler is None:
                dead = True
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
        if dead:
            self._prune()

    def emit(self, kind: str, payload: Mapping[str, Any] | None = None) -> None:
        """Publish an untyped ``(kind, payload)`` notification."""
        self.publish(GenericEvent(name=kind, data=dict(payload or {})))

    def clear(self) -> None:
        self._handlers.clear()
        self._wildcard.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values()) + len(self._wildcard)

    def _prune(self) -> None:
        for event_type in list(self._handlers):
            self._handlers[event_type] = [
                handler_ref for handler_ref in self._handlers[event_type] if handler_ref.alive
            ]
        self._wildcard = [handler_ref for handler_ref in self._wildcard if handler_ref.alive]


class _HandlerRef:
    """Weak reference for bound methods, strong reference otherwise."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    @property
    def alive(self) -> bool:
        return self.resolve() is not None

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "EventSink",
    "Handler",
    "GenericEvent",
    "SessionLoaded",
    "ChatHistoryLoaded",
    "SessionUnloaded",
    "CharacterUpdated",
    "ContextBuilt",
    "MessageSent",
    "ToolExecuted",
    "MessageReceived",
    "TurnFailed",
    "TokenStats",
    "ProgressUpdated",
]
