"""Tests for logging setup and per-task log tags."""

from __future__ import annotations

import asyncio
import contextvars
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from psrelay.log_context import ContextFilter, current_log_context, set_log_context
from psrelay.logging_config import (
    LOG_FILE_NAME,
    ConsoleFormatter,
    resolve_level,
    setup_logging,
    shutdown_logging,
)


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    level = root.level
    yield
    shutdown_logging()
    for handler in list(root.handlers):
        if any(isinstance(f, ContextFilter) for f in handler.filters):
            root.removeHandler(handler)
    root.setLevel(level)


def _record(level: int = logging.INFO, msg: str = "delivered") -> logging.LogRecord:
    return logging.LogRecord("psrelay.test", level, __file__, 1, msg, (), None)


class TestResolveLevel:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("INFO", logging.INFO),
            ("warning", logging.WARNING),
            (" Debug ", logging.DEBUG),
            ("WARN", logging.WARNING),
            (logging.ERROR, logging.ERROR),
        ],
    )
    def test_known_levels(self, value: int | str, expected: int) -> None:
        assert resolve_level(value) == expected

    def test_unknown_name_rejected(self) -> None:
        with pytest.raises(ValueError, match="chatty"):
            resolve_level("chatty")


class TestSetupLogging:
    def test_takes_config_level_name(self) -> None:
        assert setup_logging("warning") == logging.WARNING
        assert logging.getLogger().level == logging.WARNING

    def test_verbose_overrides_config_level(self) -> None:
        assert setup_logging("ERROR", verbose=True) == logging.DEBUG

    def test_replaces_previous_handlers(self) -> None:
        setup_logging("INFO")
        setup_logging("INFO")
        assert len(logging.getLogger().handlers) == 1

    @pytest.mark.parametrize(
        ("level", "aiohttp_level"),
        [("DEBUG", logging.WARNING), ("ERROR", logging.ERROR)],
    )
    def test_aiohttp_never_louder_than_warning(self, level: str, aiohttp_level: int) -> None:
        setup_logging(level)
        assert logging.getLogger("aiohttp.access").level == aiohttp_level
        assert logging.getLogger("aiohttp.websocket").level == aiohttp_level

    def test_file_sink_writes_tagged_lines(self, tmp_path: Path) -> None:
        log_dir = tmp_path / "logs"
        setup_logging("INFO", log_dir=log_dir)

        def deliver() -> None:
            set_log_context(operation="wh", delivery_id="72d3162e-cc78-11e3-81ab-4c9367dc0958")
            logging.getLogger("psrelay.webhook").info("Relayed push to 2 rooms")
            logging.getLogger("psrelay.webhook").debug("below threshold")

        contextvars.copy_context().run(deliver)
        shutdown_logging()

        text = (log_dir / LOG_FILE_NAME).read_text(encoding="utf-8")
        assert "psrelay.webhook" in text
        assert "[wh:72d3162e] Relayed push to 2 rooms" in text
        assert "below threshold" not in text

    def test_shutdown_is_idempotent(self, tmp_path: Path) -> None:
        setup_logging("INFO", log_dir=tmp_path)
        shutdown_logging()
        shutdown_logging()


class TestConsoleFormatter:
    def test_plain_when_not_a_terminal(self) -> None:
        record = _record(logging.WARNING)
        record.ctx = "[chat] "
        line = ConsoleFormatter(color=False).format(record)
        assert "\x1b[" not in line
        assert "WARNING  psrelay.test: [chat] delivered" in line

    def test_colors_without_touching_the_record(self) -> None:
        record = _record(logging.ERROR)
        record.ctx = ""
        line = ConsoleFormatter(color=True).format(record)
        assert "\x1b[31m" in line
        assert record.levelname == "ERROR"

    def test_info_stays_uncolored(self) -> None:
        record = _record(logging.INFO)
        record.ctx = ""
        assert "\x1b[" not in ConsoleFormatter(color=True).format(record)


class TestLogContext:
    @staticmethod
    def _prefix() -> str:
        record = _record()
        ContextFilter().filter(record)
        return record.ctx  # type: ignore[attr-defined,no-any-return]

    def test_untagged_task_has_no_prefix(self) -> None:
        assert contextvars.Context().run(self._prefix) == ""

    def test_delivery_id_shortened(self) -> None:
        def run() -> str:
            set_log_context(operation="wh", delivery_id="72d3162e-cc78-11e3-81ab-4c9367dc0958")
            return self._prefix()

        assert contextvars.Context().run(run) == "[wh:72d3162e] "

    def test_partial_update_keeps_other_field(self) -> None:
        def run() -> tuple[str | None, str | None]:
            set_log_context(operation="wh", delivery_id="abc")
            set_log_context(operation="chat")
            ctx = current_log_context()
            return ctx.operation, ctx.delivery_id

        assert contextvars.Context().run(run) == ("chat", "abc")

    async def test_tags_are_per_task(self) -> None:
        async def tagged(op: str) -> str:
            set_log_context(operation=op)
            await asyncio.sleep(0)
            return self._prefix()

        assert await asyncio.gather(tagged("wh"), tagged("chat")) == ["[wh] ", "[chat] "]
