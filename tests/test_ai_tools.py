"""Tests for the character-card tools exposed to the model."""

from __future__ import annotations

import pytest

from cardwright.ai.tools import CreateWorldBookEntryTool, EditCharacterTool
from cardwright.characters.models import WorldBookEntry
from cardwright.characters.store import InMemoryCharacterStore
from cardwright.errors import ToolExecutionError

from tests.helpers import make_card


# -----------------------------------------------------------------------------
# Test Fixtures and Helpers
# -----------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryCharacterStore:
    return InMemoryCharacterStore({"ava": make_card("Ava", tags=("map",))})


# -----------------------------------------------------------------------------
# edit_character
# -----------------------------------------------------------------------------


class TestEditCharacterTool:
    @pytest.mark.asyncio
    async def test_updates_only_given_fields(self, store: InMemoryCharacterStore) -> None:
        tool = EditCharacterTool(store)

        result = await tool.execute({"personality": "Curious", "scenario": "A flooded archive"}, "ava")

        card = store.get("ava").card
        assert result.success
        assert result.data["updated_fields"] == ["personality", "scenario"]
        assert result.data["update_count"] == 2
        assert card.personality == "Curious"
        assert card.scenario == "A flooded archive"
        assert card.description == "A cartographer of drowned cities."

    @pytest.mark.asyncio
    async def test_list_fields_are_split(self, store: InMemoryCharacterStore) -> None:
        tool = EditCharacterTool(store)

        await tool.execute({"tags": "pirate, sky ,", "alternate_greetings": "Ahoy.\n\nWelcome aboard."}, "ava")

        card = store.get("ava").card
        assert card.tags == ("pirate", "sky")
        assert card.alternate_greetings == ("Ahoy.", "Welcome aboard.")

    @pytest.mark.asyncio
    async def test_notifies_store_listeners(self, store: InMemoryCharacterStore) -> None:
        seen: list[str] = []
        store.subscribe(lambda character_id, profile: seen.append(profile.card.name))

        await EditCharacterTool(store).execute({"name": "Ava Vale"}, "ava")

        assert seen == ["Ava Vale"]

    @pytest.mark.asyncio
    async def test_requires_at_least_one_field(self, store: InMemoryCharacterStore) -> None:
        with pytest.raises(ToolExecutionError, match="No valid field"):
            await EditCharacterTool(store).execute({}, "ava")

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, store: InMemoryCharacterStore) -> None:
        with pytest.raises(ToolExecutionError, match="cannot be empty"):
            await EditCharacterTool(store).execute({"name": "  "}, "ava")
        assert store.get("ava").card.name == "Ava"

    @pytest.mark.asyncio
    async def test_unknown_character(self, store: InMemoryCharacterStore) -> None:
        with pytest.raises(ToolExecutionError, match="not found"):
            await EditCharacterTool(store).execute({"personality": "x"}, "nobody")

    def test_schema_lists_editable_fields(self, store: InMemoryCharacterStore) -> None:
        tool = EditCharacterTool(store)
        parameters = tool.spec.to_openai_tool()["function"]["parameters"]

        assert tool.name == "edit_character"
        assert "description" in parameters["properties"]
        assert parameters["additionalProperties"] is False


# -----------------------------------------------------------------------------
# create_world_book_entry
# -----------------------------------------------------------------------------


class TestCreateWorldBookEntryTool:
    @pytest.mark.asyncio
    async def test_creates_book_when_missing(self, store: InMemoryCharacterStore) -> None:
        tool = CreateWorldBookEntryTool(store)

        result = await tool.execute({"keys": "Saltmarch, harbor", "content": "A drowned city."}, "ava")

        book = store.get("ava").card.character_book
        assert book is not None
        assert book.name == "Ava Lorebook"
        assert len(book.entries) == 1
        entry = book.entries[0]
        assert entry.keys == ("Saltmarch", "harbor")
        assert entry.name == "Saltmarch"
        assert entry.id == 1
        assert entry.insertion_order == 1
        assert entry.priority == 10
        assert entry.enabled
        assert result.data["entry_id"] == 1
        assert result.data["content_preview"] == "A drowned city."

    @pytest.mark.asyncio
    async def test_appends_with_next_id(self) -> None:
        existing = WorldBookEntry(keys=("old",), content="Old lore.", id=4, insertion_order=7)
        store = InMemoryCharacterStore({"ava": make_card("Ava", entries=[existing])})

        await CreateWorldBookEntryTool(store).execute(
            {
                "keys": "new",
                "content": "New lore.",
                "secondary_keys": "night",
                "selective": True,
                "priority": 40,
                "position": "after_char",
                "depth": 2,
            },
            "ava",
        )

        entries = store.get("ava").card.character_book.entries
        assert [entry.id for entry in entries] == [4, 5]
        created = entries[1]
        assert created.insertion_order == 8
        assert created.secondary_keys == ("night",)
        assert created.selective
        assert created.priority == 40
        assert created.position == "after_char"
        assert created.extensions == {"depth": 2}

    @pytest.mark.asyncio
    async def test_long_content_preview_is_shortened(self, store: InMemoryCharacterStore) -> None:
        result = await CreateWorldBookEntryTool(store).execute({"keys": "x", "content": "y" * 80}, "ava")

        assert result.data["content_preview"] == "y" * 50 + "..."

    @pytest.mark.asyncio
    async def test_requires_keys_and_content(self, store: InMemoryCharacterStore) -> None:
        tool = CreateWorldBookEntryTool(store)

        with pytest.raises(ToolExecutionError, match="key"):
            await tool.execute({"keys": " , ", "content": "lore"}, "ava")
        with pytest.raises(ToolExecutionError, match="content"):
            await tool.execute({"keys": "x", "content": "   "}, "ava")
        assert store.get("ava").card.character_book is None
