"""Character profile model (Tavern Card V2 ``data`` shape)."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Sequence

__all__ = [
    "CARD_SPEC",
    "CARD_SPEC_VERSION",
    "WorldBookPosition",
    "WorldBookEntry",
    "CharacterBook",
    "CharacterCard",
    "CharacterProfile",
]

CARD_SPEC = "chara_card_v2"
CARD_SPEC_VERSION = "2.0"
WorldBookPosition = Literal["before_char", "after_char"]
_POSITIONS: frozenset[str] = frozenset({"before_char", "after_char"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    return [str(item).strip() for item in value if str(item).strip()]


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(slots=True, frozen=True)
class WorldBookEntry:
    """Keyed lore entry injected into context when its keys match."""

    keys: tuple[str, ...]
    content: str
    id: int | None = None
    name: str = ""
    secondary_keys: tuple[str, ...] = ()
    enabled: bool = True
    constant: bool = False
    selective: bool = False
    case_sensitive: bool = False
    priority: int = 10
    insertion_order: int = 0
    position: WorldBookPosition = "before_char"
    comment: str = ""
    extensions: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "keys", tuple(self.keys))
        object.__setattr__(self, "secondary_keys", tuple(self.secondary_keys))
        if self.position not in _POSITIONS:
            object.__setattr__(self, "position", "before_char")

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> WorldBookEntry:
        extensions = payload.get("extensions")
        return cls(
            keys=tuple(_as_str_list(payload.get("keys"))),
            content=_as_str(payload.get("content")),
            id=_as_optional_int(payload.get("id")),
            name=_as_str(payload.get("name")),
            secondary_keys=tuple(_as_str_list(payload.get("secondary_keys"))),
            enabled=bool(payload.get("enabled", True)),
            constant=bool(payload.get("constant", False)),
            selective=bool(payload.get("selective", False)),
            case_sensitive=bool(payload.get("case_sensitive", False)),
            priority=_as_int(payload.get("priority"), 10),
            insertion_order=_as_int(payload.get("insertion_order"), 0),
            position=_as_str(payload.get("position")) or "before_char",  # type: ignore[arg-type]
            comment=_as_str(payload.get("comment")),
            extensions=dict(extensions) if isinstance(extensions, Mapping) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "keys": list(self.keys),
            "content": self.content,
            "extensions": dict(self.extensions),
            "enabled": self.enabled,
            "insertion_order": self.insertion_order,
            "case_sensitive": self.case_sensitive,
            "name": self.name,
            "priority": self.priority,
            "comment": self.comment,
            "selective": self.selective,
            "secondary_keys": list(self.secondary_keys),
            "constant": self.constant,
            "position": self.position,
        }
        if self.id is not None:
            payload["id"] = self.id
        return payload


@dataclass(slots=True, frozen=True)
class CharacterBook:
    """The world book attached to a character."""

    entries: tuple[WorldBookEntry, ...] = ()
    name: str = ""
    description: str = ""
    scan_depth: int | None = None
    token_budget: int | None = None
    recursive_scanning: bool = False
    extensions: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", tuple(self.entries))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CharacterBook:
        entries = payload.get("entries") or []
        extensions = payload.get("extensions")
        return cls(
            entries=tuple(
                WorldBookEntry.from_dict(item) for item in entries if isinstance(item, Mapping)
            ),
            name=_as_str(payload.get("name")),
            description=_as_str(payload.get("description")),
            scan_depth=_as_optional_int(payload.get("scan_depth")),
            token_budget=_as_optional_int(payload.get("token_budget")),
            recursive_scanning=bool(payload.get("recursive_scanning", False)),
            extensions=dict(extensions) if isinstance(extensions, Mapping) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "recursive_scanning": self.recursive_scanning,
            "extensions": dict(self.extensions),
            "entries": [entry.to_dict() for entry in self.entries],
        }
        if self.scan_depth is not None:
            payload["scan_depth"] = self.scan_depth
        if self.token_budget is not None:
            payload["token_budget"] = self.token_budget
        return payload

    def next_entry_id(self) -> int:
        ids = [entry.id for entry in self.entries if entry.id is not None]
        return max(ids) + 1 if ids else 1

    def next_insertion_order(self) -> int:
        if not self.entries:
            return 1
        return max(entry.insertion_order for entry in self.entries) + 1

    def with_entry(self, entry: WorldBookEntry) -> CharacterBook:
        return replace(self, entries=self.entries + (entry,))


@dataclass(slots=True, frozen=True)
class CharacterCard:
    """Structured persona definition driving a chat.

    ``name``, ``description``, ``personality`` and ``scenario`` are the core
    fields; the rest are details the context builder includes as budget allows.
    """

    name: str
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_mes: str = ""
    mes_example: str = ""
    creator_notes: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    alternate_greetings: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    creator: str = ""
    character_version: str = ""
    extensions: Mapping[str, Any] = field(default_factory=dict)
    character_book: CharacterBook | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "alternate_greetings", tuple(self.alternate_greetings))
        object.__setattr__(self, "tags", tuple(self.tags))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CharacterCard:
        """Parse either a bare ``data`` object or a full V2 envelope."""

        data = payload.get("data") if payload.get("spec") == CARD_SPEC else payload
        if not isinstance(data, Mapping):
            raise ValueError("Character card payload must be a mapping")
        book = data.get("character_book")
        extensions = data.get("extensions")
        return cls(
            name=_as_str(data.get("name")),
            description=_as_str(data.get("description")),
            personality=_as_str(data.get("personality")),
            scenario=_as_str(data.get("scenario")),
            first_mes=_as_str(data.get("first_mes")),
            mes_example=_as_str(data.get("mes_example")),
            creator_notes=_as_str(data.get("creator_notes")),
            system_prompt=_as_str(data.get("system_prompt")),
            post_history_instructions=_as_str(data.get("post_history_instructions")),
            alternate_greetings=tuple(_as_str_list(data.get("alternate_greetings"))),
            tags=tuple(_as_str_list(data.get("tags"))),
            creator=_as_str(data.get("creator")),
            character_version=_as_str(data.get("character_version")),
            extensions=dict(extensions) if isinstance(extensions, Mapping) else {},
            character_book=CharacterBook.from_dict(book) if isinstance(book, Mapping) else None,
        )

    def to_dict(self, *, envelope: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "personality": self.personality,
            "scenario": self.scenario,
            "first_mes": self.first_mes,
            "mes_example": self.mes_example,
            "creator_notes": self.creator_notes,
            "system_prompt": self.system_prompt,
            "post_history_instructions": self.post_history_instructions,
            "alternate_greetings": list(self.alternate_greetings),
            "tags": list(self.tags),
            "creator": self.creator,
            "character_version": self.character_version,
            "extensions": dict(self.extensions),
        }
        if self.character_book is not None:
            data["character_book"] = self.character_book.to_dict()
        if not envelope:
            return data
        return {"spec": CARD_SPEC, "spec_version": CARD_SPEC_VERSION, "data": data}

    @property
    def world_book_entries(self) -> Sequence[WorldBookEntry]:
        if self.character_book is None:
            return ()
        return self.character_book.entries


@dataclass(slots=True, frozen=True)
class CharacterProfile:
    """Immutable snapshot of a character as stored."""

    id: str
    card: CharacterCard
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def name(self) -> str:
        return self.card.name

    def with_card(self, card: CharacterCard) -> CharacterProfile:
        return CharacterProfile(id=self.id, card=card, updated_at=_utcnow())
