"""Shared test doubles.

Import from here instead of duplicating these classes in individual test
files::

    from tests.helpers import MockModelClient, WordCounter, make_card
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Mapping, Sequence

from cardwright.ai.orchestration.types import CompletionUsage, ModelResponse, ToolCall
from cardwright.characters.models import CharacterBook, CharacterCard, WorldBookEntry


class WordCounter:
    """Deterministic counter: one token per whitespace-separated word."""

    model_name = "words"

    def count(self, text: str) -> int:
        return len(text.split())

    def estimate(self, text: str) -> int:
        return self.count(text)


def make_card(
    name: str = "Ava",
    *,
    description: str = "A cartographer of drowned cities.",
    entries: Sequence[WorldBookEntry] = (),
    **fields: Any,
) -> CharacterCard:
    book = CharacterBook(entries=tuple(entries), name=f"{name} Lorebook") if entries else None
    return CharacterCard(name=name, description=description, character_book=book, **fields)


def text_response(content: str, *, prompt_tokens: int = 10, completion_tokens: int = 5) -> ModelResponse:
    return ModelResponse(
        content=content,
        finish_reason="stop",
        usage=CompletionUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


def tool_response(name: str, arguments: Mapping[str, Any], *, call_id: str = "call_1", content: str = "") -> ModelResponse:
    return ModelResponse(
        content=content,
        tool_calls=(ToolCall(id=call_id, name=name, arguments=json.dumps(arguments)),),
        finish_reason="tool_calls",
        usage=CompletionUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
    )


class MockModelClient:
    """Scripted completion client that records every call.

    Each entry in ``responses`` is either a :class:`ModelResponse` to return
    or an exception instance to raise. When the script runs out the last
    entry is repeated.
    """

    def __init__(
        self,
        responses: Sequence[ModelResponse | BaseException] | None = None,
        *,
        delay: float = 0.0,
    ) -> None:
        self.responses = list(responses or [])
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        tool_choice: str | Mapping[str, Any] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse:
        self.calls.append(
            {
                "messages": [dict(message) for message in messages],
                "tools": tools,
                "tool_choice": tool_choice,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.responses:
            return text_response("")
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        outcome = self.responses[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome
