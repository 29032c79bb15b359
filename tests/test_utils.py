"""Tests covering the utilities modules."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Iterator

import pytest

from cardwright.utils import file_io, logging as logging_utils


def test_write_text_is_atomic_and_creates_parents(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "settings.json"

    returned = file_io.write_text(target, "first")
    file_io.write_text(target, "second")

    assert returned == target
    assert target.read_text(encoding="utf-8") == "second"
    assert [path.name for path in target.parent.iterdir()] == ["settings.json"]


def test_write_text_non_atomic(tmp_path: Path) -> None:
    target = tmp_path / "plain.txt"

    file_io.write_text(target, "hello", atomic=False)

    assert target.read_text(encoding="utf-8") == "hello"


def test_append_line_and_iter_lines(tmp_path: Path) -> None:
    target = tmp_path / "log" / "chat.jsonl"

    file_io.append_line(target, "one\n")
    file_io.append_line(target, "")
    file_io.append_line(target, "three")

    assert target.read_text(encoding="utf-8") == "one\n\nthree\n"
    assert list(file_io.iter_lines(target)) == [(1, b"one"), (3, b"three")]


def test_iter_lines_missing_file(tmp_path: Path) -> None:
    assert list(file_io.iter_lines(tmp_path / "absent.jsonl")) == []


@pytest.mark.parametrize(
    "value, expected",
    [("ava", "ava"), ("Ava Vale", "Ava Vale"), ("a/b", "a_b"), ("../x", ".._x")],
)
def test_safe_path_segment(value: str, expected: str) -> None:
    assert file_io.safe_path_segment(value) == expected


@pytest.mark.parametrize("value", ["", "  ", ".", ".."])
def test_safe_path_segment_rejects(value: str) -> None:
    with pytest.raises(ValueError):
        file_io.safe_path_segment(value)


@pytest.fixture
def restore_root_logging() -> Iterator[logging.Logger]:
    root = logging.getLogger()
    previous_handlers = list(root.handlers)
    previous_level = root.level
    try:
        yield root
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in previous_handlers:
            root.addHandler(handler)
        root.setLevel(previous_level)


def _read_log(root: logging.Logger, path: Path) -> str:
    for handler in root.handlers:
        handler.flush()
    return path.read_text(encoding="utf-8")


def test_setup_logging_writes_rotating_file(tmp_path: Path, restore_root_logging: logging.Logger) -> None:
    log_path = logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path)
    logging.getLogger("cardwright.test").info("hello from test")

    assert log_path == tmp_path / "cardwright.log"
    assert "| - | cardwright.test | hello from test" in _read_log(restore_root_logging, log_path)
    assert logging.getLogger("httpx").level == logging.WARNING


def test_log_dir_from_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, restore_root_logging: logging.Logger
) -> None:
    monkeypatch.setenv("CARDWRIGHT_LOG_DIR", str(tmp_path / "env"))

    assert logging_utils.setup_logging() == tmp_path / "env" / "cardwright.log"


def test_records_carry_session_id(tmp_path: Path, restore_root_logging: logging.Logger) -> None:
    log_path = logging_utils.setup_logging(logging.INFO, log_dir=tmp_path)
    logger = logging.getLogger("cardwright.test")

    with logging_utils.session_context("ava"):
        assert logging_utils.current_session() == "ava"
        logger.info("inside")
    logger.info("outside")

    text = _read_log(restore_root_logging, log_path)
    assert "| ava | cardwright.test | inside" in text
    assert "| - | cardwright.test | outside" in text
    assert logging_utils.current_session() == "-"


@pytest.mark.asyncio
async def test_session_context_is_per_task() -> None:
    seen: dict[str, str] = {}

    async def run(character_id: str) -> None:
        with logging_utils.session_context(character_id):
            await asyncio.sleep(0.01)
            seen[character_id] = logging_utils.current_session()

    await asyncio.gather(run("ava"), run("bram"))

    assert seen == {"ava": "ava", "bram": "bram"}


def test_filter_keeps_explicit_session() -> None:
    record = logging.LogRecord("cardwright", logging.INFO, __file__, 1, "msg", None, None)
    record.session = "cora"

    with logging_utils.session_context("ava"):
        assert logging_utils.SessionContextFilter().filter(record)

    assert record.session == "cora"
