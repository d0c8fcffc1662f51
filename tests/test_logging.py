"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import pytest
import structlog

from agent_toolgate.infrastructure.logging import (
    QUIET_LOGGERS,
    REDACTED,
    configure_logging,
    get_logger,
    redact_secrets,
)


@pytest.fixture(autouse=True)
def _clean_root_logger() -> Iterator[None]:
    """テストごとにルートロガーと contextvars を初期化する."""
    logging.getLogger().handlers.clear()
    structlog.contextvars.clear_contextvars()
    yield
    logging.getLogger().handlers.clear()
    structlog.contextvars.clear_contextvars()


def _file_handler(name: str) -> TimedRotatingFileHandler:
    matches = [
        h
        for h in logging.getLogger().handlers
        if isinstance(h, TimedRotatingFileHandler) and Path(h.baseFilename).name == name
    ]
    assert len(matches) == 1
    return matches[0]


def _read_events(path: Path) -> list[dict[str, object]]:
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


class TestHandlers:
    """出力先の設定のテスト."""

    def test_stderr_and_two_files(self, tmp_path: Path) -> None:
        """stderr は ERROR 以上、ファイルは2つ作られることを確認する."""
        log_dir = tmp_path / "nested" / "logs"
        configure_logging(log_level="DEBUG", log_dir=str(log_dir))

        handlers = logging.getLogger().handlers
        stderr = [h for h in handlers if not isinstance(h, TimedRotatingFileHandler)]
        assert len(stderr) == 1
        assert stderr[0].level == logging.ERROR
        assert _file_handler("latest.log").level == logging.DEBUG
        assert _file_handler("error.log").level == logging.WARNING
        assert log_dir.is_dir()

    def test_daily_rotation(self, tmp_path: Path) -> None:
        """日次ローテーションと保持数が設定されることを確認する."""
        configure_logging(log_dir=str(tmp_path), log_backup_count=3)
        for name in ("latest.log", "error.log"):
            handler = _file_handler(name)
            assert handler.when == "MIDNIGHT"
            assert handler.backupCount == 3
            assert handler.suffix == "%Y-%m-%d"

    @pytest.mark.parametrize(
        ("given", "expected"),
        [("warning", logging.WARNING), (" debug ", logging.DEBUG), ("ERROR", logging.ERROR)],
    )
    def test_level_name_is_case_insensitive(
        self, tmp_path: Path, given: str, expected: int
    ) -> None:
        """ログレベル名の大文字小文字と前後の空白を無視することを確認する."""
        configure_logging(log_level=given, log_dir=str(tmp_path))
        assert _file_handler("latest.log").level == expected

    def test_unknown_level_falls_back_to_info(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """未知のログレベルは警告して INFO にすることを確認する."""
        configure_logging(log_level="VERBOSE", log_dir=str(tmp_path))
        assert "Invalid log level 'VERBOSE'" in capsys.readouterr().err
        assert _file_handler("latest.log").level == logging.INFO

    def test_reconfigure_replaces_handlers(self, tmp_path: Path) -> None:
        """再設定で既存のハンドラーが置き換えられることを確認する."""
        stray = logging.NullHandler()
        logging.getLogger().addHandler(stray)

        configure_logging(log_dir=str(tmp_path))
        configure_logging(log_dir=str(tmp_path))

        assert stray not in logging.getLogger().handlers
        assert len(logging.getLogger().handlers) == 3

    def test_unwritable_directory_keeps_stderr(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """ディレクトリを作れない場合は stderr のみで続行することを確認する."""
        blocker = tmp_path / "file"
        blocker.write_text("")

        configure_logging(log_dir=str(blocker / "logs"))

        assert "Failed to create log directory" in capsys.readouterr().err
        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert not isinstance(handlers[0], TimedRotatingFileHandler)

    def test_quiet_loggers(self, tmp_path: Path) -> None:
        """HTTP・MCP・SQL のライブラリロガーが WARNING になることを確認する."""
        configure_logging(log_dir=str(tmp_path))
        for name in QUIET_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING


class TestEvents:
    """ファイルに書かれるイベントのテスト."""

    def test_levels_are_split_between_files(self, tmp_path: Path) -> None:
        """latest.log は全件、error.log は WARNING 以上になることを確認する."""
        configure_logging(log_level="DEBUG", log_dir=str(tmp_path))
        logger = get_logger("agent_toolgate.test")

        logger.debug("gate evaluated")
        logger.info("tool executed")
        logger.warning("command blocked")
        logger.error("turn failed")

        latest = [e["event"] for e in _read_events(tmp_path / "latest.log")]
        errors = [e["event"] for e in _read_events(tmp_path / "error.log")]
        assert latest == ["gate evaluated", "tool executed", "command blocked", "turn failed"]
        assert errors == ["command blocked", "turn failed"]

    def test_event_fields(self, tmp_path: Path) -> None:
        """キーワード引数・ロガー名・レベルが JSON に含まれることを確認する."""
        configure_logging(log_dir=str(tmp_path))
        get_logger("agent_toolgate.executor").info(
            "Tool executed", capability="read_file", exit_code=0
        )

        (event,) = _read_events(tmp_path / "latest.log")
        assert event["event"] == "Tool executed"
        assert event["capability"] == "read_file"
        assert event["exit_code"] == 0
        assert event["level"] == "info"
        assert event["logger"] == "agent_toolgate.executor"
        assert "timestamp" in event

    def test_bound_session_id(self, tmp_path: Path) -> None:
        """contextvars で束縛した session_id が付与されることを確認する."""
        configure_logging(log_dir=str(tmp_path))
        logger = get_logger("agent_toolgate.chat")

        with structlog.contextvars.bound_contextvars(session_id="abc-123"):
            logger.info("inside")
        logger.info("outside")

        inside, outside = _read_events(tmp_path / "latest.log")
        assert inside["session_id"] == "abc-123"
        assert "session_id" not in outside

    def test_secrets_are_masked(self, tmp_path: Path) -> None:
        """秘密情報のフィールドがマスクされることを確認する."""
        configure_logging(log_dir=str(tmp_path))
        get_logger("agent_toolgate.llm").info(
            "Sending request", api_key="sk-live-123", model="gpt-4o-mini"
        )

        (event,) = _read_events(tmp_path / "latest.log")
        assert event["api_key"] == REDACTED
        assert event["model"] == "gpt-4o-mini"
        assert "sk-live-123" not in (tmp_path / "latest.log").read_text(encoding="utf-8")

    def test_non_ascii_kept_readable(self, tmp_path: Path) -> None:
        """日本語がエスケープされずに書かれることを確認する."""
        configure_logging(log_dir=str(tmp_path))
        get_logger("agent_toolgate.test").info("Todo added", description="資料を書く")
        assert "資料を書く" in (tmp_path / "latest.log").read_text(encoding="utf-8")


class TestRedactSecrets:
    """redact_secrets のテスト."""

    def test_masks_known_keys_case_insensitively(self) -> None:
        """既知のキー名を大文字小文字を問わずマスクすることを確認する."""
        event = {"event": "x", "Authorization": "Bearer abc", "token": "t", "url": "u"}
        assert redact_secrets(None, "info", event) == {
            "event": "x",
            "Authorization": REDACTED,
            "token": REDACTED,
            "url": "u",
        }

    def test_empty_values_untouched(self) -> None:
        """空の値はマスクしないことを確認する."""
        event = {"event": "x", "api_key": ""}
        assert redact_secrets(None, "info", event)["api_key"] == ""
