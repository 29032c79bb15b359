"""Tests for the OpenAI-compatible AI client."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, cast

import httpx
import pytest
from openai import APIConnectionError, APIStatusError, AsyncOpenAI, RateLimitError

from cardwright.ai.client import AIClient, ClientSettings
from cardwright.errors import CompletionEndpointError
from cardwright.services.settings import Settings


# -----------------------------------------------------------------------------
# Test Fixtures and Helpers
# -----------------------------------------------------------------------------

_REQUEST = httpx.Request("POST", "https://api.example.com/v1/chat/completions")


def _status_error(status: int, cls: type[APIStatusError] = APIStatusError) -> APIStatusError:
    return cls(f"status {status}", response=httpx.Response(status, request=_REQUEST), body=None)


def _completion(
    content: str | None = "Hello!",
    *,
    tool_calls: list[SimpleNamespace] | None = None,
    finish_reason: str = "stop",
) -> SimpleNamespace:
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        model="gpt-test",
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3, total_tokens=15),
    )


def _tool_call(name: str | None, arguments: Any, call_id: str | None = "call_a") -> SimpleNamespace:
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


class _FakeCompletions:
    def __init__(self, outcomes: list[Any]) -> None:
        self._outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class _FakeOpenAI:
    def __init__(self, outcomes: list[Any]) -> None:
        self.completions = _FakeCompletions(outcomes)
        self.chat = SimpleNamespace(completions=self.completions)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _settings(**overrides: Any) -> ClientSettings:
    values: dict[str, Any] = {
        "base_url": "https://api.example.com/v1",
        "api_key": "sk-test",
        "model": "gpt-test",
        "retry_min_seconds": 0.0,
        "retry_max_seconds": 0.0,
    }
    values.update(overrides)
    return ClientSettings(**values)


def _client(outcomes: list[Any], **overrides: Any) -> tuple[AIClient, _FakeOpenAI]:
    fake = _FakeOpenAI(outcomes)
    return AIClient(_settings(**overrides), client=cast(AsyncOpenAI, fake)), fake


# -----------------------------------------------------------------------------
# Request payload
# -----------------------------------------------------------------------------


class TestRequestPayload:
    @pytest.mark.asyncio
    async def test_plain_request_is_non_streaming(self) -> None:
        client, fake = _client([_completion()])

        await client.chat([{"role": "user", "content": "hi"}], temperature=0.3, max_tokens=64)

        payload = fake.completions.calls[0]
        assert payload["model"] == "gpt-test"
        assert payload["stream"] is False
        assert payload["messages"] == [{"role": "user", "content": "hi"}]
        assert payload["temperature"] == 0.3
        assert payload["max_tokens"] == 64
        assert "tools" not in payload
        assert "tool_choice" not in payload

    @pytest.mark.asyncio
    async def test_tool_choice_only_sent_with_tools(self) -> None:
        client, fake = _client([_completion()])
        tools = [{"type": "function", "function": {"name": "edit_character", "parameters": {}}}]

        await client.chat([{"role": "user", "content": "hi"}], tools=tools, tool_choice="auto")
        await client.chat([{"role": "user", "content": "hi"}], tools=None, tool_choice="auto")

        assert fake.completions.calls[0]["tools"] == tools
        assert fake.completions.calls[0]["tool_choice"] == "auto"
        assert "tool_choice" not in fake.completions.calls[1]

    @pytest.mark.asyncio
    async def test_metadata_is_merged(self) -> None:
        client, fake = _client([_completion()], metadata={"app": "cardwright"})

        await client.chat([{"role": "user", "content": "hi"}], metadata={"turn": "1"})

        assert fake.completions.calls[0]["metadata"] == {"app": "cardwright", "turn": "1"}

    @pytest.mark.asyncio
    async def test_empty_messages_rejected(self) -> None:
        client, _ = _client([_completion()])

        with pytest.raises(ValueError):
            await client.chat([])


# -----------------------------------------------------------------------------
# Response parsing
# -----------------------------------------------------------------------------


class TestResponseParsing:
    @pytest.mark.asyncio
    async def test_content_and_usage(self) -> None:
        client, _ = _client([_completion("Ahoy.")])

        response = await client.chat([{"role": "user", "content": "hi"}])

        assert response.content == "Ahoy."
        assert response.tool_calls == ()
        assert response.finish_reason == "stop"
        assert response.model == "gpt-test"
        assert response.usage.prompt_tokens == 12
        assert response.usage.total_tokens == 15

    @pytest.mark.asyncio
    async def test_tool_calls(self) -> None:
        calls = [
            _tool_call("edit_character", '{"tags": "pirate"}'),
            _tool_call("create_world_book_entry", {"keys": "x"}, call_id=None),
        ]
        client, _ = _client([_completion(None, tool_calls=calls, finish_reason="tool_calls")])

        response = await client.chat([{"role": "user", "content": "hi"}])

        assert response.content == ""
        assert [(call.id, call.name, call.arguments) for call in response.tool_calls] == [
            ("call_a", "edit_character", '{"tags": "pirate"}'),
            ("call_1", "create_world_book_entry", '{"keys": "x"}'),
        ]

    @pytest.mark.asyncio
    async def test_no_choices_is_endpoint_error(self) -> None:
        client, _ = _client([SimpleNamespace(choices=[], usage=None)])

        with pytest.raises(CompletionEndpointError, match="no choices"):
            await client.chat([{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_nameless_tool_call_is_endpoint_error(self) -> None:
        client, _ = _client([_completion(None, tool_calls=[_tool_call(None, "{}")])])

        with pytest.raises(CompletionEndpointError, match="missing a function name"):
            await client.chat([{"role": "user", "content": "hi"}])


# -----------------------------------------------------------------------------
# Errors and retries
# -----------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self) -> None:
        client, fake = _client([_status_error(400)])

        with pytest.raises(CompletionEndpointError) as excinfo:
            await client.chat([{"role": "user", "content": "hi"}])

        assert excinfo.value.status_code == 400
        assert "HTTP 400" in str(excinfo.value)
        assert len(fake.completions.calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self) -> None:
        client, fake = _client([_status_error(429, RateLimitError), _completion("after retry")])

        response = await client.chat([{"role": "user", "content": "hi"}])

        assert response.content == "after retry"
        assert len(fake.completions.calls) == 2

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self) -> None:
        client, fake = _client([_status_error(503)], max_retries=3)

        with pytest.raises(CompletionEndpointError) as excinfo:
            await client.chat([{"role": "user", "content": "hi"}])

        assert excinfo.value.status_code == 503
        assert len(fake.completions.calls) == 3

    @pytest.mark.asyncio
    async def test_connection_error_is_wrapped(self) -> None:
        client, _ = _client([APIConnectionError(request=_REQUEST)], max_retries=1)

        with pytest.raises(CompletionEndpointError, match="Completion request failed"):
            await client.chat([{"role": "user", "content": "hi"}])


class TestLifecycle:
    def test_settings_projection(self) -> None:
        settings = Settings(api_key="sk-x", model="gpt-x", metadata={"a": "b"})

        client_settings = ClientSettings.from_settings(settings)

        assert client_settings.model == "gpt-x"
        assert client_settings.api_key == "sk-x"
        assert client_settings.metadata == {"a": "b"}
        assert client_settings.default_headers is None

    @pytest.mark.asyncio
    async def test_aclose_closes_underlying_client(self) -> None:
        client, fake = _client([_completion()])

        await client.aclose()

        assert fake.closed
