"""Token counting helpers shared by the context builder and the client."""

from __future__ import annotations

import json
import logging
import math
from collections import OrderedDict
from typing import Any, Iterable, List, Mapping

import tiktoken

from .ai_types import TokenCounterProtocol

__all__ = [
    "ApproxByteCounter",
    "TiktokenCounter",
    "create_token_counter",
    "truncate_to_limit",
    "count_batch",
    "is_within_limit",
    "count_message",
    "count_messages",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
_DEFAULT_ENCODING = "cl100k_base"
_DEFAULT_CACHE_SIZE = 2048
_WHITESPACE_LOOKBACK = 32


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(
        self,
        *,
        model_name: str | None = None,
        charset: str = "utf-8",
        bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN,
    ) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package.

    Exact-text results are memoized in a small LRU cache since the context
    builder re-counts the same card fields on every turn.
    """

    def __init__(
        self,
        model_name: str,
        *,
        encoding_name: str | None = None,
        cache_size: int = _DEFAULT_CACHE_SIZE,
    ) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)
        self._cache: OrderedDict[str, int] = OrderedDict()
        self._cache_size = max(0, int(cache_size))

    @property
    def encoding_name(self) -> str:
        return self._encoding.name

    def count(self, text: str) -> int:
        if not text:
            return 0
        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return cached
        try:
            value = len(self._encoding.encode(text, disallowed_special=()))
        except Exception:  # pragma: no cover
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)
        self._remember(text, value)
        return value

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def clear_cache(self) -> None:
        self._cache.clear()

    def _remember(self, text: str, value: int) -> None:
        if not self._cache_size:
            return
        self._cache[text] = value
        if len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    @staticmethod
    def _load_encoding(model_name: str, encoding_name: str | None) -> Any:
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to %s encoding for model %s", _DEFAULT_ENCODING, model_name)
            return tiktoken.get_encoding(_DEFAULT_ENCODING)


def create_token_counter(model_name: str | None) -> TokenCounterProtocol:
    """Build the best available counter for ``model_name``.

    tiktoken fetches encoding files on first use; when that fails (offline
    hosts, unknown encodings) the byte approximation keeps counts deterministic.
    """

    name = (model_name or "").strip()
    if not name:
        return ApproxByteCounter()
    try:
        return TiktokenCounter(name)
    except Exception as exc:
        LOGGER.warning("Failed to initialize tiktoken counter for %s: %s", name, exc)
        return ApproxByteCounter(model_name=name)


def truncate_to_limit(
    counter: TokenCounterProtocol,
    text: str,
    limit: int,
    *,
    lookback: int = _WHITESPACE_LOOKBACK,
) -> str:
    """Return the longest prefix of ``text`` whose token count is ``<= limit``.

    Counts are monotone over prefixes, so the cut point is found by binary
    search. When whitespace occurs within ``lookback`` characters before the
    cut, the prefix is shortened to end there instead of mid-word.
    """

    if not text or limit <= 0:
        return ""
    if counter.count(text) <= limit:
        return text

    low, high = 0, len(text)
    while low < high:
        middle = (low + high + 1) // 2
        if counter.count(text[:middle]) <= limit:
            low = middle
        else:
            high = middle - 1
    if low == 0:
        return ""

    cut = low
    if not text[cut].isspace():
        window_start = max(0, cut - max(0, lookback))
        for index in range(cut - 1, window_start - 1, -1):
            if text[index].isspace():
                cut = index
                break
    return text[:cut].rstrip()


def count_batch(counter: TokenCounterProtocol, texts: Iterable[str]) -> List[int]:
    return [counter.count(text) for text in texts]


def is_within_limit(counter: TokenCounterProtocol, text: str, limit: int) -> bool:
    return counter.count(text) <= limit


def count_message(counter: TokenCounterProtocol, message: Mapping[str, Any]) -> int:
    """Count a chat message as its JSON wire representation."""

    serialized = json.dumps(dict(message), ensure_ascii=False, separators=(",", ":"))
    return counter.count(serialized)


def count_messages(counter: TokenCounterProtocol, messages: Iterable[Mapping[str, Any]]) -> int:
    return sum(count_message(counter, message) for message in messages)
