"""Shared AI-related types and configuration containers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


@dataclass(slots=True)
class PipelineConfig:
    """Tunable parameters that shape a chat turn."""

    max_iterations: int = 8
    completion_timeout: float | None = 120.0
    tool_timeout: float | None = 30.0
    temperature: float | None = 0.7
    max_response_tokens: int | None = 2048
    tool_choice: str = "auto"

    def clamp(self) -> PipelineConfig:
        """Clamp values into safe operating ranges and return ``self``."""

        self.max_iterations = max(1, min(int(self.max_iterations or 1), 50))
        if self.completion_timeout is not None:
            self.completion_timeout = max(1.0, float(self.completion_timeout))
        if self.tool_timeout is not None:
            self.tool_timeout = max(0.1, float(self.tool_timeout))
        if self.temperature is not None:
            self.temperature = max(0.0, min(float(self.temperature), 2.0))
        if self.max_response_tokens is not None:
            self.max_response_tokens = max(16, int(self.max_response_tokens))
        self.tool_choice = (self.tool_choice or "auto").strip() or "auto"
        return self
