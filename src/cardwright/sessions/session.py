"""Live chat session state."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List

from ..ai.orchestration.types import CompletionUsage, Message
from ..characters.models import CharacterProfile

__all__ = ["SessionStatus", "UnloadReason", "Session", "SessionSummary"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    LOADING = "loading"
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class UnloadReason(str, Enum):
    USER_REQUEST = "user_request"
    EXPIRED = "expired"
    CAPACITY = "capacity"
    APP_SHUTDOWN = "app_shutdown"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class SessionSummary:
    """Read-only view of a session for listings and status displays."""

    id: str
    character_name: str
    message_count: int
    created_at: datetime
    last_active_at: datetime
    status: SessionStatus
    token_budget: int
    last_context_tokens: int = 0
    error: str | None = None


@dataclass(slots=True, eq=False)
class Session:
    """One character opened for chat.

    ``history[:saved_count]`` mirrors the chat log; anything after it is
    waiting for the next flush. ``lock`` serializes turns and history edits,
    and a session that has left the pool is marked ``closed``.
    """

    id: str
    profile: CharacterProfile
    token_budget: int
    history: List[Message] = field(default_factory=list)
    status: SessionStatus = SessionStatus.LOADING
    error: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    last_active_at: datetime = field(default_factory=_utcnow)
    saved_count: int = 0
    last_context_tokens: int = 0
    last_usage: CompletionUsage = field(default_factory=CompletionUsage)
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def character_name(self) -> str:
        return self.profile.name

    @property
    def is_busy(self) -> bool:
        return self.lock.locked()

    @property
    def unsaved_count(self) -> int:
        return max(0, len(self.history) - self.saved_count)

    @property
    def last_message(self) -> Message | None:
        return self.history[-1] if self.history else None

    def touch(self) -> None:
        self.last_active_at = _utcnow()

    def mark_error(self, reason: str) -> None:
        self.status = SessionStatus.ERROR
        self.error = reason

    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            character_name=self.character_name,
            message_count=len(self.history),
            created_at=self.created_at,
            last_active_at=self.last_active_at,
            status=self.status,
            token_budget=self.token_budget,
            last_context_tokens=self.last_context_tokens,
            error=self.error,
        )
