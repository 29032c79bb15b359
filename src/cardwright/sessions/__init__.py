"""Live chat sessions, their pool, and the chat log they persist to."""

from .chat_log import ChatLogStore, InMemoryChatLogStore, JsonlChatLogStore
from .manager import SessionManager
from .session import Session, SessionStatus, SessionSummary, UnloadReason

__all__ = [
    "ChatLogStore",
    "InMemoryChatLogStore",
    "JsonlChatLogStore",
    "Session",
    "SessionManager",
    "SessionStatus",
    "SessionSummary",
    "UnloadReason",
]
