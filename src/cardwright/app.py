"""Composition root and the ``cardwright`` console script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.ai_types import PipelineConfig, TokenCounterProtocol
from .ai.client import AIClient, ClientSettings
from .ai.orchestration.context_builder import (
    DEFAULT_AI_ROLE,
    DEFAULT_AI_TASK,
    ContextBuilder,
    ContextOptions,
)
from .ai.orchestration.pipeline import ChatPipeline, ModelClient
from .ai.orchestration.tools import ToolExecutor, ToolRegistry
from .ai.tokens import create_token_counter
from .ai.tools import CreateWorldBookEntryTool, EditCharacterTool
from .characters.models import CharacterCard
from .characters.store import CharacterProfileStore, InMemoryCharacterStore
from .errors import CardwrightError, InvalidHistoryOperation
from .events import EventBus, ToolExecuted
from .services.settings import Settings, SettingsStore, redact_settings
from .sessions.chat_log import ChatLogStore, JsonlChatLogStore
from .sessions.manager import SessionManager
from .sessions.session import Session
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_DEFAULT_CHAT_DIR = Path.home() / ".cardwright" / "chats"


@dataclass(slots=True)
class ChatEngine:
    """Everything needed to run chat turns, wired together."""

    settings: Settings
    events: EventBus
    profiles: CharacterProfileStore
    chat_log: ChatLogStore
    counter: TokenCounterProtocol
    builder: ContextBuilder
    registry: ToolRegistry
    executor: ToolExecutor
    client: ModelClient
    sessions: SessionManager
    pipeline: ChatPipeline

    async def aclose(self) -> None:
        """Flush and unload every session, then close the endpoint client."""

        await self.sessions.shutdown()
        close = getattr(self.client, "aclose", None)
        if close is not None:
            await close()


def create_engine(
    settings: Settings,
    *,
    profile_store: CharacterProfileStore,
    chat_log_store: ChatLogStore,
    event_bus: EventBus | None = None,
    client: ModelClient | None = None,
    counter: TokenCounterProtocol | None = None,
) -> ChatEngine:
    """Build a :class:`ChatEngine` from ``settings``."""

    events = event_bus or EventBus()
    token_counter = counter or create_token_counter(settings.model)
    builder = ContextBuilder(
        token_counter,
        ContextOptions(
            ai_role=settings.ai_role or DEFAULT_AI_ROLE,
            ai_task=settings.ai_task or DEFAULT_AI_TASK,
            scan_depth=settings.world_book_scan_depth,
        ),
    )
    registry = ToolRegistry()
    registry.register(EditCharacterTool(profile_store))
    registry.register(CreateWorldBookEntryTool(profile_store))
    executor = ToolExecutor(registry)
    model_client = client or AIClient(ClientSettings.from_settings(settings))
    sessions = SessionManager(
        profile_store,
        chat_log_store,
        events=events,
        capacity=settings.max_sessions,
        default_token_budget=settings.max_context_tokens,
        default_expiry_hours=settings.session_expiry_hours,
    )
    pipeline = ChatPipeline(
        sessions,
        builder,
        model_client,
        executor,
        events=events,
        config=PipelineConfig(
            max_iterations=settings.max_tool_iterations,
            completion_timeout=settings.completion_timeout,
            temperature=settings.temperature,
            max_response_tokens=settings.max_response_tokens,
            tool_choice=settings.tool_choice,
        ),
    )
    _LOGGER.debug(
        "Engine ready (model=%s, capacity=%s, budget=%s, tools=%s)",
        settings.model,
        settings.max_sessions,
        settings.max_context_tokens,
        registry.list_names(),
    )
    return ChatEngine(
        settings=settings,
        events=events,
        profiles=profile_store,
        chat_log=chat_log_store,
        counter=token_counter,
        builder=builder,
        registry=registry,
        executor=executor,
        client=model_client,
        sessions=sessions,
        pipeline=pipeline,
    )


def configure_logging(debug: bool = False, *, console: bool = False) -> None:
    """Configure structured logging for the application."""

    level = logging.DEBUG if debug else logging.INFO
    log_path = logging_utils.setup_logging(level, console=console)
    _LOGGER.debug("Logging to %s (level=%s)", log_path, logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def load_card(path: Path) -> CharacterCard:
    """Read a Tavern Card V2 JSON file."""

    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, Mapping):
        raise ValueError(f"{path} does not contain a JSON object")
    return CharacterCard.from_dict(payload)


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``cardwright`` console script."""

    args = _parse_cli_args(argv)
    debug = _env_flag("CARDWRIGHT_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("CARDWRIGHT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True)

    if not args.card:
        print("A character card is required: pass --card PATH", file=sys.stderr)
        raise SystemExit(2)
    card_path = Path(args.card).expanduser()
    try:
        card = load_card(card_path)
    except (OSError, ValueError) as exc:
        print(f"Unable to load card {card_path}: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    character_id = args.character_id or card_path.stem
    log_dir = Path(args.log_dir).expanduser() if args.log_dir else _DEFAULT_CHAT_DIR
    engine = create_engine(
        settings,
        profile_store=InMemoryCharacterStore({character_id: card}),
        chat_log_store=JsonlChatLogStore(log_dir),
    )
    try:
        asyncio.run(_run_repl(engine, character_id))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


# ----------------------------------------------------------------------
# REPL
# ----------------------------------------------------------------------
async def _run_repl(
    engine: ChatEngine,
    character_id: str,
    *,
    stream: TextIO | None = None,
) -> None:
    out = stream or sys.stdout

    def _on_tool(event: ToolExecuted) -> None:
        status = "ok" if event.success else f"failed: {event.error}"
        out.write(f"  [{event.tool_name}] {status}\n")

    engine.events.subscribe(ToolExecuted, _on_tool)
    try:
        session = await engine.sessions.load_session(character_id)
        out.write(
            f"Chatting with {session.character_name} ({len(session.history)} message(s) loaded). "
            "Commands: /regen /continue /clear /quit\n"
        )
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            text = line.strip()
            if not text:
                continue
            if text == "/quit":
                break
            session = await engine.sessions.load_session(character_id)
            try:
                await _dispatch(engine, session, text, out)
            except CardwrightError as exc:
                out.write(f"! {exc}\n")
    finally:
        engine.events.unsubscribe(ToolExecuted, _on_tool)
        await engine.aclose()


async def _dispatch(engine: ChatEngine, session: Session, text: str, out: TextIO) -> None:
    pipeline = engine.pipeline
    if text == "/clear":
        removed = await pipeline.clear_history(session)
        out.write(f"Cleared {removed} message(s).\n")
        return
    if text == "/regen":
        result = await pipeline.regenerate_last_message(session)
    elif text == "/continue":
        result = await pipeline.continue_chat(session)
    elif text.startswith("/"):
        raise InvalidHistoryOperation(f"Unknown command {text.split()[0]}")
    else:
        result = await pipeline.send_message(session, text)

    if result.succeeded and result.message is not None:
        out.write(f"{session.character_name}: {result.message.content}\n")
    elif result.failure is not None:
        out.write(f"! Turn failed ({result.failure.kind.value}): {result.failure.message}\n")


# ----------------------------------------------------------------------
# CLI helpers
# ----------------------------------------------------------------------
def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cardwright",
        description="Chat with a character card and let the assistant edit it.",
    )
    parser.add_argument("--card", metavar="PATH", help="Character card JSON file to chat with.")
    parser.add_argument(
        "--character-id",
        metavar="ID",
        help="Session id for the card (defaults to the card file name).",
    )
    parser.add_argument(
        "--log-dir",
        metavar="DIR",
        help="Directory holding chat_history.jsonl logs (default ~/.cardwright/chats).",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.cardwright/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is dict:
        try:
            payload = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
        if not isinstance(payload, dict):
            raise ValueError("Dict overrides must be valid JSON objects")
        return payload
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return _resolve_annotation(args[0])


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": redact_settings(settings), "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("CARDWRIGHT_"))


if __name__ == "__main__":  # pragma: no cover
    main()
