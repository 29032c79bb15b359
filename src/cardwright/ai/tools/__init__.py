"""Character-card tools exposed to the model."""

from .character_editor import EDITABLE_FIELDS, EditCharacterTool
from .world_book_creator import CreateWorldBookEntryTool

__all__ = ["EDITABLE_FIELDS", "EditCharacterTool", "CreateWorldBookEntryTool"]
