"""Tool that edits fields on the session's character card."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, ClassVar, Mapping

from ...characters.store import CharacterProfileStore
from ...errors import ProfileNotFoundError, ToolExecutionError
from ..orchestration.tools.types import ToolCategory, ToolResult, ToolSpec

__all__ = ["EditCharacterTool", "EDITABLE_FIELDS"]

EDITABLE_FIELDS: tuple[str, ...] = (
    "name",
    "description",
    "personality",
    "scenario",
    "first_mes",
    "mes_example",
    "creator_notes",
    "system_prompt",
    "post_history_instructions",
    "alternate_greetings",
    "tags",
    "creator",
    "character_version",
)

_FIELD_HINTS: Mapping[str, str] = {
    "name": "Character name.",
    "description": "Physical and background description.",
    "personality": "Personality summary.",
    "scenario": "Scenario or setting the chat takes place in.",
    "first_mes": "Greeting the character opens the chat with.",
    "mes_example": "Example dialogue showing the character's voice.",
    "creator_notes": "Notes for people using the card.",
    "system_prompt": "System prompt bundled with the card.",
    "post_history_instructions": "Instructions placed after chat history.",
    "alternate_greetings": "Alternate greetings, one per line.",
    "tags": "Comma-separated tags.",
    "creator": "Card author.",
    "character_version": "Card version string.",
}


@dataclass(slots=True)
class EditCharacterTool:
    """Update one or more card fields; omitted fields are left untouched."""

    store: CharacterProfileStore

    spec: ClassVar[ToolSpec] = ToolSpec(
        name="edit_character",
        description=(
            "Edit fields of the current character card. Provide only the fields "
            "to change; each value replaces the existing field content."
        ),
        parameters={
            "type": "object",
            "properties": {
                name: {"type": "string", "description": hint} for name, hint in _FIELD_HINTS.items()
            },
            "additionalProperties": False,
        },
        category=ToolCategory.CHARACTER,
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

        updates: dict[str, Any] = {}
        for field_name in EDITABLE_FIELDS:
            value = arguments.get(field_name)
            if value is None:
                continue
            text = str(value)
            if field_name == "alternate_greetings":
                updates[field_name] = tuple(
                    line.strip() for line in text.splitlines() if line.strip()
                )
            elif field_name == "tags":
                updates[field_name] = tuple(
                    tag.strip() for tag in text.split(",") if tag.strip()
                )
            elif field_name == "name" and not text.strip():
                raise ToolExecutionError("Character name cannot be empty", tool_name=self.name)
            else:
                updates[field_name] = text

        if not updates:
            raise ToolExecutionError(
                "No valid field provided; pass at least one of: " + ", ".join(EDITABLE_FIELDS),
                tool_name=self.name,
            )

        card = replace(profile.card, **updates)
        try:
            self.store.update(character_id, card)
        except ProfileNotFoundError as exc:
            raise ToolExecutionError(str(exc), tool_name=self.name, cause=exc) from exc

        updated = sorted(updates)
        return ToolResult.ok(
            {
                "message": f"Updated {len(updated)} field(s) on {card.name}",
                "updated_fields": updated,
                "update_count": len(updated),
            }
        )
