"""Token-budgeted context assembly for a chat turn.

Budget is spent in a fixed order: the instruction block, tool schemas,
core character fields and the pending exchange are always included; then
character details, world-book entries and finally history fill whatever
remains. Items are included whole or skipped, never cut mid-text, and every
skip flips ``was_truncated``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Protocol, Sequence

from ...characters.models import CharacterCard, WorldBookEntry
from ..ai_types import TokenCounterProtocol
from .types import Message

__all__ = [
    "DEFAULT_AI_ROLE",
    "DEFAULT_AI_TASK",
    "DEFAULT_INSTRUCTION_TEMPLATE",
    "ContextOptions",
    "TokenAllocation",
    "ContextBuildResult",
    "ContextBuilder",
    "SessionView",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_AI_ROLE = "a character card writing assistant"
DEFAULT_AI_TASK = (
    "Help the user develop and refine the character card for {{CHARACTER_NAME}}. "
    "When the user asks for changes, call edit_character to update card fields and "
    "create_world_book_entry to add lore, then summarize what changed."
)
DEFAULT_INSTRUCTION_TEMPLATE = "You are {{ROLE}}.\n\n{{TASK}}"

_CORE_FIELDS: tuple[tuple[str, str], ...] = (
    ("name", "Name"),
    ("description", "Description"),
    ("personality", "Personality"),
    ("scenario", "Scenario"),
)
# Highest priority first.
_DETAIL_FIELDS: tuple[tuple[str, str], ...] = (
    ("mes_example", "Example dialogue"),
    ("creator_notes", "Creator notes"),
    ("system_prompt", "Character system prompt"),
    ("post_history_instructions", "Post-history instructions"),
    ("first_mes", "First message"),
    ("tags", "Tags"),
)
_WORLD_BOOK_HEADERS = {
    "before_char": "[World information]",
    "after_char": "[Additional world information]",
}
_MAX_RECURSION_PASSES = 5


class SessionView(Protocol):
    """What the builder reads from a session (``profile.card``, ``history``, ``token_budget``)."""

    profile: Any
    history: Sequence[Message]
    token_budget: int


@dataclass(slots=True, frozen=True)
class ContextOptions:
    """Knobs for prompt assembly.

    Attributes:
        ai_role: Substituted for ``{{ROLE}}`` in the instruction template.
        ai_task: Substituted for ``{{TASK}}``.
        instruction_template: Instruction block text; empty disables it.
        scan_depth: Recent messages scanned for world-book keys when the
            book does not set its own ``scan_depth``.
        message_overhead_tokens: Framing cost charged per emitted message.
        include_first_message: Whether ``first_mes`` is offered as a detail.
    """

    ai_role: str = DEFAULT_AI_ROLE
    ai_task: str = DEFAULT_AI_TASK
    instruction_template: str = DEFAULT_INSTRUCTION_TEMPLATE
    scan_depth: int = 4
    message_overhead_tokens: int = 4
    include_first_message: bool = True


@dataclass(slots=True)
class TokenAllocation:
    system: int = 0
    character_core: int = 0
    character_details: int = 0
    worldbook: int = 0
    history: int = 0
    current_message: int = 0

    @property
    def total(self) -> int:
        return (
            self.system
            + self.character_core
            + self.character_details
            + self.worldbook
            + self.history
            + self.current_message
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "system": self.system,
            "character_core": self.character_core,
            "character_details": self.character_details,
            "worldbook": self.worldbook,
            "history": self.history,
            "current_message": self.current_message,
        }


@dataclass(slots=True)
class ContextBuildResult:
    """Bounded prompt for one completion request.

    Attributes:
        system_messages: Instruction, world-book and character messages.
        history_messages: Chronological suffix of prior history that fit.
        current_user_message: The user message the turn answers, if any.
        turn_messages: Assistant tool-call and tool reply messages already
            produced by the in-flight turn.
        post_history_messages: Messages placed after history (post-history
            instructions).
        total_tokens: Sum of ``token_allocation``.
        token_budget: The budget the build was constrained to.
        was_truncated: True when anything was skipped or the budget was exceeded.
        included_entries: World-book entries that made it into the prompt.
        dropped_entries: Candidate entries that did not fit.
    """

    system_messages: list[Message] = field(default_factory=list)
    history_messages: list[Message] = field(default_factory=list)
    current_user_message: Message | None = None
    turn_messages: list[Message] = field(default_factory=list)
    post_history_messages: list[Message] = field(default_factory=list)
    total_tokens: int = 0
    token_budget: int = 0
    token_allocation: TokenAllocation = field(default_factory=TokenAllocation)
    was_truncated: bool = False
    included_entries: list[WorldBookEntry] = field(default_factory=list)
    dropped_entries: list[WorldBookEntry] = field(default_factory=list)

    @property
    def budget_utilization(self) -> float:
        if self.token_budget <= 0:
            return 0.0
        return self.total_tokens / self.token_budget

    def to_messages(self) -> list[Message]:
        messages = list(self.system_messages)
        messages.extend(self.history_messages)
        messages.extend(self.post_history_messages)
        if self.current_user_message is not None:
            messages.append(self.current_user_message)
        messages.extend(self.turn_messages)
        return messages

    def to_chat_params(self) -> list[dict[str, Any]]:
        return [message.to_chat_param() for message in self.to_messages()]


class ContextBuilder:
    """Builds :class:`ContextBuildResult` objects from session state.

    The builder has no side effects; it only reads ``session.profile``,
    ``session.history`` and ``session.token_budget``.
    """

    def __init__(
        self,
        counter: TokenCounterProtocol,
        options: ContextOptions | None = None,
    ) -> None:
        self._counter = counter
        self._options = options or ContextOptions()

    @property
    def counter(self) -> TokenCounterProtocol:
        return self._counter

    @property
    def options(self) -> ContextOptions:
        return self._options

    def build_full_context(
        self,
        session: SessionView,
        *,
        turn_messages: Sequence[Message] = (),
        tools: Sequence[Mapping[str, Any]] = (),
        token_budget: int | None = None,
    ) -> ContextBuildResult:
        card: CharacterCard = session.profile.card
        budget = max(0, int(token_budget if token_budget is not None else session.token_budget))
        history = list(session.history)
        current: Message | None = None
        if history and history[-1].role == "user":
            current = history.pop()

        result = ContextBuildResult(token_budget=budget, current_user_message=current)
        result.turn_messages = list(turn_messages)
        allocation = result.token_allocation
        overhead = max(0, self._options.message_overhead_tokens)

        # Mandatory: instructions, tool schemas, core fields, pending exchange.
        instruction_text = self.render_instructions(card)
        instruction_message = Message.system(instruction_text) if instruction_text else None
        if instruction_message is not None:
            allocation.system += overhead + self._count(instruction_text)
        if tools:
            allocation.system += self._count(json.dumps(list(tools), ensure_ascii=False))

        # Lines are charged what they add to the joined message text, separators included.
        character_text = ""
        for attr, label in _CORE_FIELDS:
            line = _field_line(label, getattr(card, attr))
            if line is None:
                continue
            allocation.character_core += self._append_cost(character_text, "\n", line)
            character_text = _join(character_text, "\n", line)
        allocation.character_core += overhead

        for message in ([current] if current is not None else []) + result.turn_messages:
            allocation.current_message += self.message_cost(message)

        mandatory = allocation.system + allocation.character_core + allocation.current_message
        if mandatory > budget:
            result.was_truncated = True
            LOGGER.debug(
                "Mandatory context for %s costs %d token(s), over budget %d",
                card.name,
                mandatory,
                budget,
            )
        remaining = max(0, budget - mandatory)

        # Character details, all-or-nothing per field.
        post_history_text: str | None = None
        for attr, label in _DETAIL_FIELDS:
            if attr == "first_mes" and not self._options.include_first_message:
                continue
            line = _field_line(label, getattr(card, attr))
            if line is None:
                continue
            if attr == "post_history_instructions":
                text = card.post_history_instructions.strip()
                cost = overhead + self._count(text)
            else:
                cost = self._append_cost(character_text, "\n", line)
            if cost > remaining:
                result.was_truncated = True
                continue
            remaining -= cost
            allocation.character_details += cost
            if attr == "post_history_instructions":
                post_history_text = text
            else:
                character_text = _join(character_text, "\n", line)

        # World book.
        scan_messages = history + ([current] if current is not None else []) + result.turn_messages
        candidates = self.select_world_book_entries(card, scan_messages)
        book = card.character_book
        book_cap = book.token_budget if book is not None and book.token_budget else None
        grouped: dict[str, list[WorldBookEntry]] = {"before_char": [], "after_char": []}
        group_texts = dict(_WORLD_BOOK_HEADERS)
        for entry in candidates:
            group = grouped[entry.position]
            content = entry.content.strip()
            separator = "\n\n" if group else "\n"
            group_text = group_texts[entry.position]
            if group:
                cost = self._append_cost(group_text, separator, content)
            else:
                cost = overhead + self._count(_join(group_text, separator, content))
            over_cap = book_cap is not None and allocation.worldbook + cost > book_cap
            if cost > remaining or over_cap:
                result.was_truncated = True
                result.dropped_entries.append(entry)
                continue
            remaining -= cost
            allocation.worldbook += cost
            group.append(entry)
            group_texts[entry.position] = _join(group_text, separator, content)
            result.included_entries.append(entry)

        # History, newest first, stopping at the first message that does not fit.
        selected: list[Message] = []
        for message in reversed(history):
            cost = self.message_cost(message)
            if cost > remaining:
                result.was_truncated = True
                break
            remaining -= cost
            allocation.history += cost
            selected.append(message)
        selected.reverse()
        while selected and selected[0].role == "tool":
            orphan = selected.pop(0)
            allocation.history -= self.message_cost(orphan)
            result.was_truncated = True
        result.history_messages = selected

        if instruction_message is not None:
            result.system_messages.append(instruction_message)
        if grouped["before_char"]:
            result.system_messages.append(Message.system(group_texts["before_char"]))
        result.system_messages.append(Message.system(character_text))
        if grouped["after_char"]:
            result.system_messages.append(Message.system(group_texts["after_char"]))
        if post_history_text:
            result.post_history_messages.append(Message.system(post_history_text))

        result.total_tokens = allocation.total
        LOGGER.debug(
            "Built context for %s: %d/%d token(s), %d history message(s), %d world-book entr(ies), truncated=%s",
            card.name,
            result.total_tokens,
            budget,
            len(result.history_messages),
            len(result.included_entries),
            result.was_truncated,
        )
        return result

    def select_world_book_entries(
        self,
        card: CharacterCard,
        messages: Sequence[Message],
    ) -> list[WorldBookEntry]:
        """Return candidate entries ordered by priority (descending), stable on book order."""

        book = card.character_book
        if book is None or not book.entries:
            return []
        depth = book.scan_depth if book.scan_depth is not None else self._options.scan_depth
        recent = list(messages)[-depth:] if depth > 0 else []
        scan_texts = [message.content for message in recent if message.content]

        chosen: list[tuple[int, WorldBookEntry]] = []
        chosen_ids: set[int] = set()
        passes = _MAX_RECURSION_PASSES if book.recursive_scanning else 1
        for _ in range(passes):
            added = False
            for index, entry in enumerate(book.entries):
                if index in chosen_ids or not entry.enabled or not entry.content.strip():
                    continue
                if entry.constant or _entry_matches(entry, scan_texts):
                    chosen.append((index, entry))
                    chosen_ids.add(index)
                    added = True
                    if book.recursive_scanning and not entry.constant:
                        scan_texts.append(entry.content)
            if not added:
                break

        chosen.sort(key=lambda item: (-item[1].priority, item[0]))
        return [entry for _, entry in chosen]

    def render_instructions(self, card: CharacterCard) -> str:
        template = self._options.instruction_template
        if not template.strip():
            return ""
        text = (
            template.replace("{{ROLE}}", self._options.ai_role)
            .replace("{{TASK}}", self._options.ai_task)
            .replace("{{CHARACTER_NAME}}", card.name or "the character")
        )
        return text.strip()

    def message_cost(self, message: Message) -> int:
        cost = max(0, self._options.message_overhead_tokens) + self._count(message.content)
        for call in message.tool_calls or ():
            cost += self._count(call.name) + self._count(call.arguments)
        return cost

    def _count(self, text: str) -> int:
        if not text:
            return 0
        return self._counter.count(text)

    def _append_cost(self, text: str, separator: str, line: str) -> int:
        """Tokens added by appending ``separator + line`` to ``text``."""

        if not text:
            return self._count(line)
        return max(0, self._count(_join(text, separator, line)) - self._count(text))


def _field_line(label: str, value: Any) -> str | None:
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(item) for item in value if str(item).strip())
    text = (value or "").strip() if isinstance(value, str) else ""
    if not text:
        return None
    return f"{label}: {text}"


def _entry_matches(entry: WorldBookEntry, texts: Iterable[str]) -> bool:
    corpus = list(texts)
    if not _any_key_matches(entry.keys, corpus, entry.case_sensitive):
        return False
    if entry.selective and entry.secondary_keys:
        return _any_key_matches(entry.secondary_keys, corpus, entry.case_sensitive)
    return True


def _any_key_matches(keys: Sequence[str], texts: Sequence[str], case_sensitive: bool) -> bool:
    for key in keys:
        needle = key.strip()
        if not needle:
            continue
        if not case_sensitive:
            needle = needle.lower()
        for text in texts:
            haystack = text if case_sensitive else text.lower()
            if needle in haystack:
                return True
    return False


def _join(text: str, separator: str, line: str) -> str:
    return f"{text}{separator}{line}" if text else line
