"""Chat log stores: durable, append-mostly message history per character."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Protocol, Sequence

from ..ai.orchestration.types import Message
from ..utils.file_io import append_line, iter_lines, safe_path_segment, write_text

__all__ = ["ChatLogStore", "JsonlChatLogStore", "InMemoryChatLogStore"]

LOGGER = logging.getLogger(__name__)
_HISTORY_FILENAME = "chat_history.jsonl"


class ChatLogStore(Protocol):
    """Persistence boundary for session history.

    Indexes are positions in the list returned by :meth:`load_all`.
    """

    def append(self, character_id: str, message: Message) -> None:
        ...

    def load_all(self, character_id: str) -> List[Message]:
        ...

    def clear(self, character_id: str) -> None:
        ...

    def delete_at(self, character_id: str, index: int) -> None:
        ...

    def replace_at(self, character_id: str, index: int, message: Message) -> None:
        ...

    def rewrite(self, character_id: str, messages: Sequence[Message]) -> None:
        ...


class JsonlChatLogStore:
    """One JSON object per line under ``<root>/<character_id>/chat_history.jsonl``."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, character_id: str) -> Path:
        return self._root / safe_path_segment(character_id) / _HISTORY_FILENAME

    def append(self, character_id: str, message: Message) -> None:
        append_line(self.path_for(character_id), _encode(message))

    def load_all(self, character_id: str) -> List[Message]:
        path = self.path_for(character_id)
        messages: List[Message] = []
        for line_number, raw in iter_lines(path):
            try:
                payload = json.loads(raw.decode("utf-8"))
                if not isinstance(payload, dict):
                    raise ValueError("record is not an object")
                messages.append(Message.from_record(payload))
            except (ValueError, TypeError, AttributeError) as exc:
                LOGGER.warning(
                    "Skipping unreadable chat log line %s:%d (%s)", path, line_number, exc
                )
        return messages

    def clear(self, character_id: str) -> None:
        path = self.path_for(character_id)
        if path.exists():
            path.unlink()

    def delete_at(self, character_id: str, index: int) -> None:
        messages = self.load_all(character_id)
        _check_index(character_id, index, len(messages))
        del messages[index]
        self.rewrite(character_id, messages)

    def replace_at(self, character_id: str, index: int, message: Message) -> None:
        messages = self.load_all(character_id)
        _check_index(character_id, index, len(messages))
        messages[index] = message
        self.rewrite(character_id, messages)

    def rewrite(self, character_id: str, messages: Sequence[Message]) -> None:
        body = "".join(_encode(message) + "\n" for message in messages)
        write_text(self.path_for(character_id), body)


class InMemoryChatLogStore:
    """Chat log kept in process memory."""

    def __init__(self) -> None:
        self._logs: Dict[str, List[Message]] = {}
        self.append_count = 0

    def append(self, character_id: str, message: Message) -> None:
        self._logs.setdefault(character_id, []).append(message)
        self.append_count += 1

    def load_all(self, character_id: str) -> List[Message]:
        return list(self._logs.get(character_id, []))

    def clear(self, character_id: str) -> None:
        self._logs.pop(character_id, None)

    def delete_at(self, character_id: str, index: int) -> None:
        messages = self._logs.get(character_id, [])
        _check_index(character_id, index, len(messages))
        del messages[index]

    def replace_at(self, character_id: str, index: int, message: Message) -> None:
        messages = self._logs.get(character_id, [])
        _check_index(character_id, index, len(messages))
        messages[index] = message

    def rewrite(self, character_id: str, messages: Sequence[Message]) -> None:
        self._logs[character_id] = list(messages)


def _encode(message: Message) -> str:
    return json.dumps(message.to_record(), ensure_ascii=False, separators=(",", ":"))


def _check_index(character_id: str, index: int, length: int) -> None:
    if not 0 <= index < length:
        raise IndexError(f"Chat log index {index} out of range for '{character_id}' ({length} message(s))")
