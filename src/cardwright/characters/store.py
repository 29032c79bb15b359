"""Character profile store boundary."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, Protocol

from ..errors import ProfileNotFoundError
from .models import CharacterCard, CharacterProfile

__all__ = ["ProfileListener", "CharacterProfileStore", "InMemoryCharacterStore"]

LOGGER = logging.getLogger(__name__)

ProfileListener = Callable[[str, CharacterProfile], None]


class CharacterProfileStore(Protocol):
    """Source of truth for character profiles.

    Implementations guarantee single-writer-per-id semantics and notify
    listeners after every successful update.
    """

    def get(self, character_id: str) -> CharacterProfile | None:
        ...

    def update(self, character_id: str, card: CharacterCard) -> CharacterProfile:
        ...

    def subscribe(self, listener: ProfileListener) -> None:
        ...

    def unsubscribe(self, listener: ProfileListener) -> None:
        ...


class InMemoryCharacterStore:
    """Dictionary-backed profile store."""

    def __init__(self, cards: Mapping[str, CharacterCard] | None = None) -> None:
        self._profiles: Dict[str, CharacterProfile] = {}
        self._listeners: List[ProfileListener] = []
        for character_id, card in (cards or {}).items():
            self._profiles[character_id] = CharacterProfile(id=character_id, card=card)

    def get(self, character_id: str) -> CharacterProfile | None:
        return self._profiles.get(character_id)

    def put(self, character_id: str, card: CharacterCard) -> CharacterProfile:
        """Insert or replace a card without notifying listeners."""

        profile = CharacterProfile(id=character_id, card=card)
        self._profiles[character_id] = profile
        return profile

    def update(self, character_id: str, card: CharacterCard) -> CharacterProfile:
        current = self._profiles.get(character_id)
        if current is None:
            raise ProfileNotFoundError(character_id)
        profile = current.with_card(card)
        self._profiles[character_id] = profile
        self._notify(character_id, profile)
        return profile

    def remove(self, character_id: str) -> bool:
        return self._profiles.pop(character_id, None) is not None

    def ids(self) -> List[str]:
        return list(self._profiles)

    def subscribe(self, listener: ProfileListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: ProfileListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self, character_id: str, profile: CharacterProfile) -> None:
        for listener in list(self._listeners):
            try:
                listener(character_id, profile)
            except Exception:
                LOGGER.exception("Profile listener failed for %s", character_id)
