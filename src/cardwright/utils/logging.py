"""Logging setup for the session engine.

Records carry a ``session`` attribute holding the character id of the chat
operation that emitted them, or ``-`` outside one. Turns for different
characters run concurrently, so the id is what keeps their lines apart in the
shared log file.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator

__all__ = ["LOG_FORMAT", "SessionContextFilter", "session_context", "current_session", "setup_logging"]

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(session)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_LOG_FILENAME = "cardwright.log"
_DEFAULT_LOG_DIR = Path.home() / ".cardwright" / "logs"
_QUIET_LOGGERS = ("asyncio", "httpx", "httpcore", "openai")
_NO_SESSION = "-"

_SESSION: ContextVar[str] = ContextVar("cardwright_log_session", default=_NO_SESSION)


class SessionContextFilter(logging.Filter):
    """Stamp each record with the active session id."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "session"):
            record.session = _SESSION.get()
        return True


@contextmanager
def session_context(character_id: str) -> Iterator[None]:
    """Tag records logged inside the block (and tasks it spawns) with ``character_id``."""

    token = _SESSION.set(character_id or _NO_SESSION)
    try:
        yield
    finally:
        _SESSION.reset(token)


def current_session() -> str:
    return _SESSION.get()


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = False,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
) -> Path:
    """Route root logging to a rotating ``cardwright.log``; returns its path.

    Calling it again replaces the previous handlers, which is how the CLI
    switches to DEBUG once ``Settings.debug_logging`` has been read.
    """

    target_dir = Path(log_dir or os.environ.get("CARDWRIGHT_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILENAME

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())

    formatter = logging.Formatter(LOG_FORMAT, datefmt=_DATE_FORMAT)
    session_filter = SessionContextFilter()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(session_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    quiet_level = max(level, logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
    return log_path
