"""Tests for the composition root and CLI helpers in :mod:`cardwright.app`."""

from __future__ import annotations

import io
import json
import os
from pathlib import Path
from typing import Any

import pytest

from cardwright import app
from cardwright.ai.orchestration.tools import ToolExecutor
from cardwright.app import ChatEngine, create_engine, load_card
from cardwright.characters.models import CharacterCard
from cardwright.characters.store import InMemoryCharacterStore
from cardwright.errors import InvalidHistoryOperation
from cardwright.services.settings import SecretVault, Settings, SettingsStore
from cardwright.sessions.chat_log import InMemoryChatLogStore

from tests.helpers import MockModelClient, WordCounter, make_card, text_response


# -----------------------------------------------------------------------------
# Test Fixtures and Helpers
# -----------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolate(monkeypatch: pytest.MonkeyPatch) -> list[bool]:
    for name in list(os.environ):
        if name.startswith("CARDWRIGHT_"):
            monkeypatch.delenv(name, raising=False)
    calls: list[bool] = []
    monkeypatch.setattr(app, "configure_logging", lambda debug=False, **kwargs: calls.append(debug))
    return calls


def _engine(client: MockModelClient, **overrides: Any) -> ChatEngine:
    return create_engine(
        Settings(**overrides),
        profile_store=InMemoryCharacterStore({"ava": make_card("Ava")}),
        chat_log_store=InMemoryChatLogStore(),
        client=client,
        counter=WordCounter(),
    )


# -----------------------------------------------------------------------------
# create_engine
# -----------------------------------------------------------------------------


class TestCreateEngine:
    def test_wires_settings_through(self) -> None:
        engine = _engine(
            MockModelClient(),
            max_sessions=3,
            max_context_tokens=5000,
            max_tool_iterations=4,
            completion_timeout=30.0,
            temperature=0.2,
        )

        assert engine.sessions.capacity == 3
        assert engine.sessions.default_token_budget == 5000
        assert engine.pipeline.config.max_iterations == 4
        assert engine.pipeline.config.completion_timeout == 30.0
        assert engine.pipeline.config.temperature == 0.2
        assert isinstance(engine.executor, ToolExecutor)
        assert engine.registry.list_names() == ["edit_character", "create_world_book_entry"]

    @pytest.mark.asyncio
    async def test_aclose_unloads_sessions(self) -> None:
        engine = _engine(MockModelClient())
        await engine.sessions.load_session("ava")

        await engine.aclose()

        assert len(engine.sessions) == 0


class TestDispatch:
    @pytest.mark.asyncio
    async def test_send_prints_reply(self) -> None:
        engine = _engine(MockModelClient([text_response("Ahoy.")]))
        session = await engine.sessions.load_session("ava")
        out = io.StringIO()

        await app._dispatch(engine, session, "hello", out)

        assert out.getvalue() == "Ava: Ahoy.\n"

    @pytest.mark.asyncio
    async def test_clear_reports_count(self) -> None:
        engine = _engine(MockModelClient([text_response("Ahoy.")]))
        session = await engine.sessions.load_session("ava")
        out = io.StringIO()
        await app._dispatch(engine, session, "hello", out)

        await app._dispatch(engine, session, "/clear", out)

        assert out.getvalue().endswith("Cleared 2 message(s).\n")

    @pytest.mark.asyncio
    async def test_unknown_command(self) -> None:
        engine = _engine(MockModelClient())
        session = await engine.sessions.load_session("ava")

        with pytest.raises(InvalidHistoryOperation, match="/dance"):
            await app._dispatch(engine, session, "/dance now", io.StringIO())

    @pytest.mark.asyncio
    async def test_failure_is_reported(self) -> None:
        engine = _engine(MockModelClient([text_response("late")], delay=5), completion_timeout=1.0)
        session = await engine.sessions.load_session("ava")
        out = io.StringIO()

        await app._dispatch(engine, session, "hello", out)

        assert out.getvalue().startswith("! Turn failed (timeout):")


# -----------------------------------------------------------------------------
# CLI helpers
# -----------------------------------------------------------------------------


class TestCliOverrides:
    def test_values_are_coerced_by_field_type(self) -> None:
        overrides = app._coerce_cli_overrides(
            [
                "model=gpt-x",
                "max_sessions=4",
                "temperature=0.1",
                "debug_logging=yes",
                "organization=acme",
                'metadata={"team": "lore"}',
            ]
        )

        assert overrides == {
            "model": "gpt-x",
            "max_sessions": 4,
            "temperature": 0.1,
            "debug_logging": True,
            "organization": "acme",
            "metadata": {"team": "lore"},
        }

    @pytest.mark.parametrize(
        "item",
        ["model", "=x", "colour=blue", "max_sessions=many", "debug_logging=maybe", "metadata=[1]"],
    )
    def test_invalid_items_raise(self, item: str) -> None:
        with pytest.raises(ValueError):
            app._coerce_cli_overrides([item])

    def test_dump_settings_redacts_secrets(self, tmp_path: Path) -> None:
        store = SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "key"))
        out = io.StringIO()

        app._dump_settings(Settings(api_key="sk-12345678"), store, overrides={"model": "x"}, stream=out)

        payload = json.loads(out.getvalue())
        assert payload["settings"]["api_key"] == "sk*******78"
        assert payload["meta"]["path"] == str(tmp_path / "settings.json")
        assert payload["meta"]["cli_overrides"] == ["model"]
        assert payload["meta"]["secret_backend"] == "fernet"


class TestMain:
    def test_dump_settings_applies_overrides(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        settings_path = tmp_path / "settings.json"

        app.main(["--settings-path", str(settings_path), "--set", "model=gpt-cli", "--dump-settings"])

        payload = json.loads(capsys.readouterr().out)
        assert payload["settings"]["model"] == "gpt-cli"
        assert payload["meta"]["cli_overrides"] == ["model"]

    def test_missing_card_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as excinfo:
            app.main(["--settings-path", str(tmp_path / "settings.json")])

        assert excinfo.value.code == 2

    def test_bad_override_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as excinfo:
            app.main(["--settings-path", str(tmp_path / "settings.json"), "--set", "nope"])

        assert excinfo.value.code == 2


def test_load_card_accepts_envelope(tmp_path: Path) -> None:
    card = make_card("Ava", tags=("pirate",))
    path = tmp_path / "ava.json"
    path.write_text(json.dumps(card.to_dict()), encoding="utf-8")

    loaded = load_card(path)

    assert isinstance(loaded, CharacterCard)
    assert loaded == card


def test_load_card_rejects_non_object(tmp_path: Path) -> None:
    path = tmp_path / "bad.json"
    path.write_text("[]", encoding="utf-8")

    with pytest.raises(ValueError):
        load_card(path)
