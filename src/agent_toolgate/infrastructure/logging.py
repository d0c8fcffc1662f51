"""Structured logging configuration."""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# リクエスト単位のログを出すライブラリ（WARNING 未満は捨てる）
QUIET_LOGGERS = ("httpx", "httpcore", "mcp", "sqlalchemy.engine")

# 値をマスクするイベントフィールド名（小文字で比較）
SECRET_FIELDS = frozenset(
    {"api_key", "authorization", "token", "x-goog-api-key", "password"}
)
REDACTED = "***"


def redact_secrets(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """API キーなどの秘密情報をマスクする structlog プロセッサー."""
    for key in event_dict:
        if key.lower() in SECRET_FIELDS and event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def _resolve_level(log_level: str) -> int:
    level = _LEVELS.get(log_level.strip().upper())
    if level is None:
        print(
            f"Warning: Invalid log level '{log_level}', defaulting to INFO",
            file=sys.stderr,
        )
        return logging.INFO
    return level


def _daily_file(
    path: Path, level: int, backup_count: int, formatter: logging.Formatter
) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        path, when="midnight", backupCount=backup_count, encoding="utf-8"
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    log_backup_count: int = 7,
) -> None:
    """
    構造化ロギングを設定する.

    出力先:
    - stderr: ERROR 以上のみ（REPL の表示と混ざらないようにする）
    - {log_dir}/latest.log: log_level 以上
    - {log_dir}/error.log: WARNING 以上

    ファイルは JSON 1行1イベントで、日次でローテーションする。
    bind_contextvars で束縛した値（session_id など）は全イベントに付与される。

    Args:
        log_level: latest.log の最低レベル
        log_dir: ログ出力ディレクトリ
        log_backup_count: ローテーション後に残すファイル数
    """
    level = _resolve_level(log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
    )

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    directory = Path(log_dir)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(
            f"Warning: Failed to create log directory '{log_dir}': {e}. "
            "Logging to stderr only.",
            file=sys.stderr,
        )
        return

    root.addHandler(
        _daily_file(directory / "latest.log", level, log_backup_count, formatter)
    )
    root.addHandler(
        _daily_file(directory / "error.log", logging.WARNING, log_backup_count, formatter)
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    構造化ロガーを取得する.

    Args:
        name: ロガー名（通常は __name__）

    Returns:
        構造化ロガー
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]
