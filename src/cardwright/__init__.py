"""Conversational session engine for character-card chat."""

__version__ = "0.3.0"

__all__ = ["__version__"]
