"""Character profile model and store boundary."""

from .models import CharacterBook, CharacterCard, CharacterProfile, WorldBookEntry
from .store import CharacterProfileStore, InMemoryCharacterStore, ProfileListener

__all__ = [
    "CharacterBook",
    "CharacterCard",
    "CharacterProfile",
    "CharacterProfileStore",
    "InMemoryCharacterStore",
    "ProfileListener",
    "WorldBookEntry",
]
