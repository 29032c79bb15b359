"""Tool that appends a world-book entry to the session's character."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, ClassVar, Mapping

from ...characters.models import CharacterBook, WorldBookEntry
from ...characters.store import CharacterProfileStore
from ...errors import ProfileNotFoundError, ToolExecutionError
from ..orchestration.tools.types import ToolCategory, ToolResult, ToolSpec

__all__ = ["CreateWorldBookEntryTool"]

_PREVIEW_CHARS = 50


def _split_keys(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        parts = [str(item) for item in value]
    else:
        parts = str(value).split(",")
    return tuple(part.strip() for part in parts if part.strip())


@dataclass(slots=True)
class CreateWorldBookEntryTool:
    """Create a keyed lore entry, creating the world book if the card has none."""

    store: CharacterProfileStore

    spec: ClassVar[ToolSpec] = ToolSpec(
        name="create_world_book_entry",
        description=(
            "Add a world book (lorebook) entry to the current character. The entry's "
            "content is injected into context whenever one of its keys appears in chat."
        ),
        parameters={
            "type": "object",
            "properties": {
                "keys": {"type": "string", "description": "Comma-separated trigger keywords."},
                "content": {"type": "string", "description": "Lore text to inject."},
                "name": {"type": "string", "description": "Short entry title."},
                "comment": {"type": "string", "description": "Author note for the entry."},
                "secondary_keys": {
                    "type": "string",
                    "description": "Comma-separated secondary keywords (used when selective).",
                },
                "selective": {"type": "boolean"},
                "constant": {"type": "boolean", "description": "Always include the entry."},
                "enabled": {"type": "boolean"},
                "case_sensitive": {"type": "boolean"},
                "priority": {"type": "integer", "description": "Higher wins when budget is tight."},
                "position": {"type": "string", "enum": ["before_char", "after_char"]},
                "depth": {"type": "integer", "minimum": 0},
                "probability": {"type": "integer", "minimum": 0, "maximum": 100},
            },
            "required": ["keys", "content"],
            "additionalProperties": False,
        },
        category=ToolCategory.WORLDBOOK,
        is_write=True,
    )

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any], character_id: str) -> ToolResult:
        profile = self.store.get(character_id)
        if profile is None:
            raise ToolExecutionError(
                f"Character '{character_id}' not found", tool_name=self.name
            )

        keys = _split_keys(arguments.get("keys"))
        if not keys:
            raise ToolExecutionError("At least one key is required", tool_name=self.name)
        content = str(arguments.get("content") or "").strip()
        if not content:
            raise ToolExecutionError("Entry content cannot be empty", tool_name=self.name)

        book = profile.card.character_book or CharacterBook(name=f"{profile.card.name} Lorebook")
        extensions: dict[str, Any] = {}
        for extra in ("depth", "probability"):
            if arguments.get(extra) is not None:
                extensions[extra] = int(arguments[extra])

        entry_id = book.next_entry_id()
        entry = WorldBookEntry(
            id=entry_id,
            keys=keys,
            content=content,
            name=str(arguments.get("name") or keys[0]),
            comment=str(arguments.get("comment") or ""),
            secondary_keys=_split_keys(arguments.get("secondary_keys")),
            selective=bool(arguments.get("selective", False)),
            constant=bool(arguments.get("constant", False)),
            enabled=bool(arguments.get("enabled", True)),
            case_sensitive=bool(arguments.get("case_sensitive", False)),
            priority=int(arguments.get("priority", 10)),
            insertion_order=book.next_insertion_order(),
            position=arguments.get("position") or "before_char",
            extensions=extensions,
        )
        card = replace(profile.card, character_book=book.with_entry(entry))
        try:
            self.store.update(character_id, card)
        except ProfileNotFoundError as exc:
            raise ToolExecutionError(str(exc), tool_name=self.name, cause=exc) from exc

        preview = content if len(content) <= _PREVIEW_CHARS else content[:_PREVIEW_CHARS] + "..."
        return ToolResult.ok(
            {
                "message": f"Created world book entry '{entry.name}'",
                "entry_id": entry_id,
                "entry_name": entry.name,
                "keys": list(keys),
                "content_preview": preview,
            }
        )
