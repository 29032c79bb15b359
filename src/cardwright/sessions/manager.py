"""Bounded pool of live chat sessions keyed by character id.

The pool is guarded by one asyncio lock; each session carries its own lock
that chat turns hold for their whole duration. Eviction never waits on a
session lock: a busy session is skipped and retried on the next sweep, so an
in-flight turn is never torn down underneath itself. Every removal flushes
unsaved history to the chat log first.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import fields
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List

from ..characters.models import CharacterCard, CharacterProfile
from ..characters.store import CharacterProfileStore
from ..errors import (
    InvalidHistoryOperation,
    ProfileNotFoundError,
    SessionCapacityEvictionFailed,
    SessionNotFoundError,
)
from ..events import (
    CharacterUpdated,
    Event,
    ChatHistoryLoaded,
    EventSink,
    ProgressUpdated,
    SessionLoaded,
    SessionUnloaded,
)
from ..ai.orchestration.types import Message
from .chat_log import ChatLogStore
from .session import Session, SessionStatus, SessionSummary, UnloadReason

__all__ = ["SessionManager", "DEFAULT_CAPACITY", "DEFAULT_TOKEN_BUDGET"]

LOGGER = logging.getLogger(__name__)

DEFAULT_CAPACITY = 10
DEFAULT_TOKEN_BUDGET = 102_400
DEFAULT_EXPIRY_HOURS = 24.0
_BASIC_INFO_FIELDS = frozenset({"name", "description", "personality", "scenario", "first_mes"})


class SessionManager:
    """Owns resident :class:`Session` objects.

    Construct one per application and pass it to every caller; there is no
    module-level registry.
    """

    def __init__(
        self,
        profile_store: CharacterProfileStore,
        chat_log: ChatLogStore,
        *,
        events: EventSink | None = None,
        capacity: int = DEFAULT_CAPACITY,
        default_token_budget: int = DEFAULT_TOKEN_BUDGET,
        default_expiry_hours: float = DEFAULT_EXPIRY_HOURS,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._profiles = profile_store
        self._chat_log = chat_log
        self._events = events
        self._capacity = int(capacity)
        self._default_token_budget = max(1, int(default_token_budget))
        self._default_expiry_hours = float(default_expiry_hours)
        self._sessions: Dict[str, Session] = {}
        self._pool_lock = asyncio.Lock()
        self._profiles.subscribe(self._on_profile_changed)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def default_token_budget(self) -> int:
        return self._default_token_budget

    @property
    def profile_store(self) -> CharacterProfileStore:
        return self._profiles

    @property
    def chat_log(self) -> ChatLogStore:
        return self._chat_log

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, character_id: object) -> bool:
        return character_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    # ------------------------------------------------------------------
    # Pool operations
    # ------------------------------------------------------------------
    async def load_session(self, character_id: str) -> Session:
        """Return the resident session for ``character_id``, loading it if needed.

        Raises:
            ProfileNotFoundError: If the character does not exist.
            SessionCapacityEvictionFailed: If the pool is full and every other
                session is busy with a turn.
        """

        async with self._pool_lock:
            session = self._sessions.get(character_id)
            if session is not None:
                session.touch()
                return session

            profile = self._profiles.get(character_id)
            if profile is None:
                raise ProfileNotFoundError(character_id)

            # A failed history read must not evict anything.
            try:
                history = self._chat_log.load_all(character_id)
            except OSError as exc:
                LOGGER.error("Failed to load chat history for %s: %s", character_id, exc)
                raise

            if len(self._sessions) >= self._capacity:
                self._evict_for_capacity()

            session = Session(
                id=character_id,
                profile=profile,
                token_budget=self._default_token_budget,
            )
            session.history = list(history)
            session.saved_count = len(history)
            session.status = SessionStatus.ACTIVE
            self._sessions[character_id] = session

        LOGGER.info(
            "Loaded session %s (%s) with %d message(s); %d/%d resident",
            character_id,
            profile.name,
            len(history),
            len(self._sessions),
            self._capacity,
        )
        self._publish(
            SessionLoaded(
                character_id=character_id,
                character_name=profile.name,
                message_count=len(history),
            )
        )
        self._publish(ChatHistoryLoaded(character_id=character_id, message_count=len(history)))
        return session

    async def reload_session(self, character_id: str) -> Session:
        """Load the session and refresh its profile snapshot from the store."""

        session = await self.load_session(character_id)
        profile = self._profiles.get(character_id)
        if profile is None:
            raise ProfileNotFoundError(character_id)
        self._apply_profile(session, profile)
        return session

    async def unload_session(
        self,
        character_id: str,
        reason: UnloadReason = UnloadReason.USER_REQUEST,
    ) -> bool:
        """Flush and remove a session; absent ids are a no-op.

        Waits for an in-flight turn on the session to finish first.
        """

        session = self._sessions.get(character_id)
        if session is None:
            return False
        async with session.lock:
            async with self._pool_lock:
                if self._sessions.get(character_id) is not session:
                    return False
                self._evict(session, reason)
        return True

    def get_session(self, character_id: str) -> Session | None:
        return self._sessions.get(character_id)

    def require_session(self, character_id: str) -> Session:
        session = self._sessions.get(character_id)
        if session is None:
            raise SessionNotFoundError(character_id)
        return session

    def get_session_info(self, character_id: str) -> SessionSummary | None:
        session = self._sessions.get(character_id)
        return session.summary() if session is not None else None

    def list_sessions(self) -> List[SessionSummary]:
        """Summaries of resident sessions, most recently active first."""

        sessions = sorted(self._sessions.values(), key=lambda item: item.last_active_at, reverse=True)
        return [session.summary() for session in sessions]

    async def cleanup_expired(self, max_age_hours: float | None = None) -> int:
        """Evict idle sessions older than ``max_age_hours``; busy ones wait for the next sweep."""

        hours = self._default_expiry_hours if max_age_hours is None else float(max_age_hours)
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        evicted = 0
        async with self._pool_lock:
            for session in list(self._sessions.values()):
                if session.last_active_at >= cutoff:
                    continue
                if session.is_busy:
                    LOGGER.warning("Deferring expiry of busy session %s", session.id)
                    continue
                self._evict(session, UnloadReason.EXPIRED)
                evicted += 1
        if evicted:
            LOGGER.info("Expired %d idle session(s)", evicted)
        return evicted

    async def save_all(self) -> int:
        """Flush every resident session; returns how many had unsaved messages."""

        flushed = 0
        for session in list(self._sessions.values()):
            if self.flush(session):
                flushed += 1
        LOGGER.debug("save_all flushed %d session(s)", flushed)
        return flushed

    async def shutdown(self) -> int:
        """Flush and unload every session, waiting for in-flight turns."""

        await self.save_all()
        resident = list(self._sessions)
        unloaded = 0
        for position, character_id in enumerate(resident, start=1):
            if await self.unload_session(character_id, UnloadReason.APP_SHUTDOWN):
                unloaded += 1
            self._publish(
                ProgressUpdated(
                    operation="shutdown",
                    progress=position / len(resident),
                    message=f"Unloaded {character_id}",
                )
            )
        self._profiles.unsubscribe(self._on_profile_changed)
        return unloaded

    # ------------------------------------------------------------------
    # History persistence (callers hold ``session.lock``)
    # ------------------------------------------------------------------
    def flush(self, session: Session) -> int:
        """Append unsaved messages to the chat log; returns the number written."""

        written = 0
        while session.saved_count < len(session.history):
            self._chat_log.append(session.id, session.history[session.saved_count])
            session.saved_count += 1
            written += 1
        if written:
            LOGGER.debug("Flushed %d message(s) for session %s", written, session.id)
        return written

    def replace_message(self, session: Session, index: int, message: Message) -> None:
        self._check_index(session, index)
        if index < session.saved_count:
            self._chat_log.replace_at(session.id, index, message)
        session.history[index] = message
        session.touch()

    def delete_message(self, session: Session, index: int) -> Message:
        self._check_index(session, index)
        if index < session.saved_count:
            self._chat_log.delete_at(session.id, index)
            session.saved_count -= 1
        removed = session.history.pop(index)
        session.touch()
        return removed

    def truncate_history(self, session: Session, length: int) -> List[Message]:
        """Drop messages from ``length`` onward and return them."""

        length = max(0, length)
        if length >= len(session.history):
            return []
        removed = session.history[length:]
        if length < session.saved_count:
            self._chat_log.rewrite(session.id, session.history[:length])
            session.saved_count = length
        del session.history[length:]
        session.touch()
        return removed

    def clear_history(self, session: Session) -> int:
        count = len(session.history)
        self._chat_log.clear(session.id)
        session.history.clear()
        session.saved_count = 0
        session.last_context_tokens = 0
        session.touch()
        return count

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _evict_for_capacity(self) -> None:
        candidates = sorted(self._sessions.values(), key=lambda item: item.last_active_at)
        blocked: List[str] = []
        for candidate in candidates:
            if candidate.is_busy:
                blocked.append(candidate.id)
                LOGGER.warning("Session %s is busy; deferring its eviction", candidate.id)
                continue
            self._evict(candidate, UnloadReason.CAPACITY)
            return
        raise SessionCapacityEvictionFailed(self._capacity, blocked)

    def _evict(self, session: Session, reason: UnloadReason) -> None:
        flushed = self.flush(session)
        self._sessions.pop(session.id, None)
        session.closed = True
        session.status = SessionStatus.PAUSED
        LOGGER.info(
            "Unloaded session %s (reason=%s, flushed=%d)", session.id, reason.value, flushed
        )
        self._publish(SessionUnloaded(character_id=session.id, reason=reason.value, flushed=flushed))

    def _on_profile_changed(self, character_id: str, profile: CharacterProfile) -> None:
        session = self._sessions.get(character_id)
        if session is not None:
            self._apply_profile(session, profile)

    def _apply_profile(self, session: Session, profile: CharacterProfile) -> None:
        previous = session.profile
        session.profile = profile
        session.touch()
        changed = _changed_fields(previous.card, profile.card)
        if not changed:
            return
        LOGGER.debug("Session %s picked up profile change: %s", session.id, ", ".join(changed))
        self._publish(
            CharacterUpdated(
                character_id=session.id,
                character_name=profile.name,
                update_type=_update_type(changed),
                fields=changed,
            )
        )

    def _publish(self, event: Event) -> None:
        if self._events is not None:
            self._events.publish(event)

    @staticmethod
    def _check_index(session: Session, index: int) -> None:
        if not 0 <= index < len(session.history):
            raise InvalidHistoryOperation(
                f"Message index {index} out of range ({len(session.history)} message(s))"
            )


def _changed_fields(before: CharacterCard, after: CharacterCard) -> tuple[str, ...]:
    return tuple(
        item.name
        for item in fields(CharacterCard)
        if getattr(before, item.name) != getattr(after, item.name)
    )


def _update_type(changed: tuple[str, ...]) -> str:
    names = set(changed)
    if names == {"character_book"}:
        return "Worldbook"
    if names == {"tags"}:
        return "Tags"
    if names <= _BASIC_INFO_FIELDS:
        return "BasicInfo"
    return "Fields"
