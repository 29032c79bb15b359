"""Error taxonomy shared by the session engine."""

from __future__ import annotations

from typing import Sequence

__all__ = [
    "CardwrightError",
    "ProfileNotFoundError",
    "SessionNotFoundError",
    "SessionCapacityEvictionFailed",
    "CompletionEndpointError",
    "ToolExecutionError",
    "ToolLoopExceeded",
    "TurnTimeoutError",
    "InvalidHistoryOperation",
]


class CardwrightError(Exception):
    """Base class for all engine errors."""


# -----------------------------------------------------------------------------
# Session management
# -----------------------------------------------------------------------------


class ProfileNotFoundError(CardwrightError):
    """Raised when the character backing a session does not exist."""

    def __init__(self, character_id: str) -> None:
        self.character_id = character_id
        super().__init__(f"Character profile '{character_id}' not found")


class SessionNotFoundError(CardwrightError):
    """Raised when an operation targets a session that is not resident."""

    def __init__(self, character_id: str) -> None:
        self.character_id = character_id
        super().__init__(f"No resident session for character '{character_id}'")


class SessionCapacityEvictionFailed(CardwrightError):
    """Raised when the pool is full and every candidate is busy with a turn."""

    def __init__(self, capacity: int, blocked_ids: Sequence[str] = ()) -> None:
        self.capacity = capacity
        self.blocked_ids = tuple(blocked_ids)
        blocked = ", ".join(self.blocked_ids) or "none"
        super().__init__(
            f"Session pool is at capacity ({capacity}) and no session can be evicted "
            f"(busy: {blocked})"
        )


class InvalidHistoryOperation(CardwrightError):
    """Raised when a history edit, delete, regenerate or continue is not applicable."""


# -----------------------------------------------------------------------------
# Turn execution
# -----------------------------------------------------------------------------


class CompletionEndpointError(CardwrightError):
    """Raised when the completion endpoint fails or returns an unusable response."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.status_code = status_code
        self.cause = cause
        super().__init__(message)


class ToolExecutionError(CardwrightError):
    """Raised by tools when execution fails; converted into a failed tool result."""

    def __init__(
        self,
        message: str,
        *,
        tool_name: str = "",
        cause: BaseException | None = None,
    ) -> None:
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(message)


class ToolLoopExceeded(CardwrightError):
    """Raised when the tool loop hits its iteration cap without final content."""

    def __init__(self, max_iterations: int) -> None:
        self.max_iterations = max_iterations
        super().__init__(
            f"Tool loop exceeded {max_iterations} iteration(s) without a final response"
        )


class TurnTimeoutError(CardwrightError):
    """Raised when a completion request does not return within the turn timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Completion request timed out after {timeout:.1f}s")
