"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from cardwright.characters.store import InMemoryCharacterStore
from cardwright.events import EventBus
from cardwright.sessions.chat_log import InMemoryChatLogStore
from cardwright.sessions.manager import SessionManager

from tests.helpers import make_card


@pytest.fixture
def profile_store() -> InMemoryCharacterStore:
    return InMemoryCharacterStore({"ava": make_card("Ava"), "bram": make_card("Bram"), "cora": make_card("Cora")})


@pytest.fixture
def chat_log() -> InMemoryChatLogStore:
    return InMemoryChatLogStore()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded_events(event_bus: EventBus) -> list:
    received: list = []
    event_bus.subscribe_all(received.append)
    return received


@pytest.fixture
def manager(profile_store: InMemoryCharacterStore, chat_log: InMemoryChatLogStore, event_bus: EventBus) -> SessionManager:
    return SessionManager(profile_store, chat_log, events=event_bus, capacity=2)
