"""AI client, token counting, and turn orchestration."""

from .ai_types import PipelineConfig, TokenCounterProtocol
from .client import AIClient, ClientSettings
from .tokens import ApproxByteCounter, TiktokenCounter, create_token_counter

__all__ = [
    "AIClient",
    "ClientSettings",
    "PipelineConfig",
    "TokenCounterProtocol",
    "ApproxByteCounter",
    "TiktokenCounter",
    "create_token_counter",
]
