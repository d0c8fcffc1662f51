"""Audit recorder for tool execution attempts."""

from __future__ import annotations

from typing import TYPE_CHECKING

from agent_toolgate.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from agent_toolgate.application.models import CommandLogRecord
    from agent_toolgate.infrastructure.storage import Storage

logger = get_logger(__name__)

PREVIEW_LIMIT = 512


def preview(text: str | None, limit: int = PREVIEW_LIMIT) -> str | None:
    """
    監査レコード用に出力を切り詰める.

    空文字列・空白のみの場合は None を返す。
    limit 文字を超える場合は先頭 limit 文字に "…" を付加する。
    """
    if text is None or not text.strip():
        return None
    if len(text) <= limit:
        return text
    return text[:limit] + "…"


class AuditRecorder:
    """監査テーブルへの書き込みを一手に担う."""

    def __init__(self, storage: Storage) -> None:
        """
        Initialize AuditRecorder.

        Args:
            storage: 永続化ストア
        """
        self._storage = storage

    def record(self, record: CommandLogRecord) -> None:
        """
        監査レコードを1件追記する.

        Raises:
            StorageError: 書き込みに失敗した場合
        """
        record_id = self._storage.insert_command_log(record)
        logger.info(
            "Recorded command log",
            record_id=record_id,
            session_id=record.session_id,
            source=record.source,
            status=record.status.value,
            approved=record.approved,
        )

    def recent(
        self, session_id: str | None = None, limit: int = 10
    ) -> list[CommandLogRecord]:
        """新しい順に最大 limit 件を返す."""
        return self._storage.load_command_logs(session_id, limit)

    def latest(self, session_id: str | None = None) -> CommandLogRecord | None:
        """最新のレコードを返す（存在しない場合は None）."""
        return self._storage.load_latest_command_log(session_id)
