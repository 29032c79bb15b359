"""Tests for ai/tokens.py."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from cardwright.ai import tokens
from cardwright.ai.tokens import (
    ApproxByteCounter,
    TiktokenCounter,
    count_batch,
    count_message,
    count_messages,
    create_token_counter,
    is_within_limit,
    truncate_to_limit,
)

from tests.helpers import WordCounter


class _FakeEncoding:
    """Encodes one token per character and records every call."""

    name = "fake"

    def __init__(self) -> None:
        self.calls = 0

    def encode(self, text: str, disallowed_special=()) -> list[int]:
        self.calls += 1
        return [ord(char) for char in text]


@pytest.fixture
def fake_encoding(monkeypatch: pytest.MonkeyPatch) -> _FakeEncoding:
    encoding = _FakeEncoding()
    monkeypatch.setattr(tokens.tiktoken, "encoding_for_model", lambda model: encoding)
    monkeypatch.setattr(tokens.tiktoken, "get_encoding", lambda name: encoding)
    return encoding


class TestApproxByteCounter:
    def test_counts_four_bytes_per_token(self) -> None:
        counter = ApproxByteCounter()

        assert counter.count("") == 0
        assert counter.count("a") == 1
        assert counter.count("abcd") == 1
        assert counter.count("abcde") == 2

    def test_counts_utf8_bytes(self) -> None:
        assert ApproxByteCounter().count("ééé") == 2


class TestTiktokenCounter:
    def test_caches_exact_text_counts(self, fake_encoding: _FakeEncoding) -> None:
        counter = TiktokenCounter("gpt-4o-mini")

        assert counter.count("hello") == 5
        assert counter.count("hello") == 5
        assert fake_encoding.calls == 1
        assert counter.encoding_name == "fake"

    def test_cache_is_bounded(self, fake_encoding: _FakeEncoding) -> None:
        counter = TiktokenCounter("gpt-4o-mini", cache_size=1)

        counter.count("a")
        counter.count("b")
        counter.count("a")

        assert fake_encoding.calls == 3

    def test_unknown_model_falls_back_to_default_encoding(self, monkeypatch: pytest.MonkeyPatch) -> None:
        requested: list[str] = []

        def _unknown(model: str):
            raise KeyError(model)

        def _get_encoding(name: str):
            requested.append(name)
            return _FakeEncoding()

        monkeypatch.setattr(tokens.tiktoken, "encoding_for_model", _unknown)
        monkeypatch.setattr(tokens.tiktoken, "get_encoding", _get_encoding)

        TiktokenCounter("local-llama")

        assert requested == ["cl100k_base"]

    def test_requires_model_name(self) -> None:
        with pytest.raises(ValueError):
            TiktokenCounter("")


class TestCreateTokenCounter:
    def test_falls_back_to_bytes_when_tiktoken_fails(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def _broken(model: str):
            raise OSError("offline")

        monkeypatch.setattr(tokens.tiktoken, "encoding_for_model", _broken)

        counter = create_token_counter("gpt-4o-mini")

        assert isinstance(counter, ApproxByteCounter)
        assert counter.model_name == "gpt-4o-mini"

    def test_builds_tiktoken_counter(self, fake_encoding: _FakeEncoding) -> None:
        counter = create_token_counter(" gpt-4o-mini ")

        assert isinstance(counter, TiktokenCounter)
        assert counter.model_name == "gpt-4o-mini"
        assert counter.count("abc") == 3

    def test_blank_model_uses_bytes(self) -> None:
        assert isinstance(create_token_counter(""), ApproxByteCounter)


class TestHelpers:
    def test_truncate_returns_text_within_limit_unchanged(self) -> None:
        assert truncate_to_limit(WordCounter(), "one two", 5) == "one two"

    def test_truncate_cuts_on_word_boundary(self) -> None:
        counter = ApproxByteCounter(bytes_per_token=1)

        assert truncate_to_limit(counter, "alpha beta gamma", 12) == "alpha beta"

    def test_truncate_zero_limit(self) -> None:
        assert truncate_to_limit(WordCounter(), "anything", 0) == ""

    def test_batch_and_limit(self) -> None:
        counter = WordCounter()

        assert count_batch(counter, ["a", "a b", ""]) == [1, 2, 0]
        assert is_within_limit(counter, "a b c", 3)
        assert not is_within_limit(counter, "a b c", 2)

    def test_message_counts_use_json_wire_form(self) -> None:
        counter = ApproxByteCounter(bytes_per_token=1)
        message = {"role": "user", "content": "hi"}

        # {"role":"user","content":"hi"}
        assert count_message(counter, message) == 30
        assert count_messages(counter, [message, message]) == 60
