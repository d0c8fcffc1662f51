"""SQLite persistence for sessions, conversation history, todos and the audit log."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from agent_toolgate.application.errors import StorageError
from agent_toolgate.application.models import (
    CommandLogRecord,
    CommandStatus,
    ConversationMessage,
    Role,
    utc_now,
)
from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)

_BUSY_TIMEOUT_MS = 5000


class SessionRow(SQLModel, table=True):
    """会話セッション."""

    __tablename__ = "sessions"

    id: str = Field(primary_key=True)
    created_at: datetime = Field(default_factory=utc_now)


class MessageRow(SQLModel, table=True):
    """会話メッセージ."""

    __tablename__ = "messages"

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(index=True)
    role: str
    content: str
    created_at: datetime = Field(default_factory=utc_now)


class TodoRow(SQLModel, table=True):
    """セッションごとの TODO."""

    __tablename__ = "todos"

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(index=True)
    description: str
    created_at: datetime = Field(default_factory=utc_now)


class CommandLogRow(SQLModel, table=True):
    """実行試行の監査レコード（追記のみ）."""

    __tablename__ = "command_logs"

    id: int | None = Field(default=None, primary_key=True)
    session_id: str | None = Field(default=None, index=True)
    command: str
    source: str
    requires_approval: bool
    approved: bool
    status: str
    exit_code: int | None = None
    duration_ms: int | None = None
    stdout_preview: str | None = None
    stderr_preview: str | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


@dataclass(frozen=True)
class StoredSession:
    """保存済みセッションの概要."""

    id: str
    created_at: datetime
    message_count: int


def _enable_wal(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
    finally:
        cursor.close()


def _as_utc(value: datetime) -> datetime:
    # タイムゾーン情報を保持しない列型から読んだ値は UTC とみなす
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _to_record(row: CommandLogRow) -> CommandLogRecord:
    return CommandLogRecord(
        session_id=row.session_id,
        command=row.command,
        source=row.source,
        requires_approval=row.requires_approval,
        approved=row.approved,
        status=CommandStatus(row.status),
        exit_code=row.exit_code,
        duration_ms=row.duration_ms,
        stdout_preview=row.stdout_preview,
        stderr_preview=row.stderr_preview,
        error_message=row.error_message,
        created_at=_as_utc(row.created_at),
    )


class Storage:
    """
    SQLite ストア.

    セッションごとに独立したインスタンスを持つことを想定している。
    接続時に WAL モードとビジータイムアウトを設定する。
    SQLAlchemy の例外はすべて StorageError に変換される。
    """

    def __init__(self, path: str | Path) -> None:
        """
        Initialize Storage.

        Args:
            path: SQLite データベースファイルのパス

        Raises:
            StorageError: データベースの初期化に失敗した場合
        """
        self.path = Path(path)
        try:
            if self.path.parent != Path():
                self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f"Failed to create database directory: {e}"
            raise StorageError(msg) from e

        self._engine: Engine = create_engine(f"sqlite:///{self.path}")
        event.listen(self._engine, "connect", _enable_wal)
        try:
            SQLModel.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            msg = f"Failed to initialize database: {e}"
            raise StorageError(msg) from e
        logger.info("Storage initialized", path=str(self.path))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self._engine) as session:
                yield session
        except SQLAlchemyError as e:
            logger.exception("Database operation failed", path=str(self.path))
            raise StorageError(str(e)) from e

    def close(self) -> None:
        """接続プールを破棄する."""
        self._engine.dispose()

    # ------------------------------------------------------------------
    # セッション・会話履歴
    # ------------------------------------------------------------------

    def save_session(self, session_id: str) -> None:
        """セッションを登録する（既に存在する場合は何もしない）."""
        with self._session() as session:
            if session.get(SessionRow, session_id) is None:
                session.add(SessionRow(id=session_id))
                session.commit()

    def list_sessions(self) -> list[StoredSession]:
        """保存済みセッションを新しい順に返す."""
        with self._session() as session:
            rows = session.exec(
                select(SessionRow).order_by(col(SessionRow.created_at).desc())
            ).all()
            result = []
            for row in rows:
                count = len(
                    session.exec(
                        select(MessageRow.id).where(MessageRow.session_id == row.id)
                    ).all()
                )
                result.append(StoredSession(row.id, _as_utc(row.created_at), count))
            return result

    def save_message(self, session_id: str, message: ConversationMessage) -> None:
        """会話メッセージを追記する."""
        with self._session() as session:
            session.add(
                MessageRow(
                    session_id=session_id,
                    role=message.role.value,
                    content=message.content,
                )
            )
            session.commit()

    def load_history(self, session_id: str) -> list[ConversationMessage]:
        """会話履歴を古い順に返す."""
        with self._session() as session:
            rows = session.exec(
                select(MessageRow)
                .where(MessageRow.session_id == session_id)
                .order_by(col(MessageRow.id))
            ).all()
            return [ConversationMessage(Role(row.role), row.content) for row in rows]

    def delete_session(self, session_id: str) -> bool:
        """
        セッションとその会話履歴・TODO を削除する.

        監査レコードは削除しない。

        Returns:
            セッションが存在した場合 True
        """
        with self._session() as session:
            row = session.get(SessionRow, session_id)
            messages = session.exec(
                select(MessageRow).where(MessageRow.session_id == session_id)
            ).all()
            todos = session.exec(
                select(TodoRow).where(TodoRow.session_id == session_id)
            ).all()
            for obsolete in (*messages, *todos):
                session.delete(obsolete)
            if row is not None:
                session.delete(row)
            session.commit()
            return row is not None

    # ------------------------------------------------------------------
    # TODO
    # ------------------------------------------------------------------

    def add_todo(self, session_id: str, description: str) -> None:
        """TODO を追加する."""
        with self._session() as session:
            session.add(TodoRow(session_id=session_id, description=description))
            session.commit()

    def list_todos(self, session_id: str) -> list[str]:
        """TODO を登録順に返す."""
        with self._session() as session:
            rows = session.exec(
                select(TodoRow)
                .where(TodoRow.session_id == session_id)
                .order_by(col(TodoRow.id))
            ).all()
            return [row.description for row in rows]

    def delete_todo(self, session_id: str, index: int) -> str | None:
        """
        TODO を削除する.

        Args:
            session_id: セッションID
            index: 1始まりの番号

        Returns:
            削除した TODO の内容。番号が範囲外の場合は None
        """
        with self._session() as session:
            rows = session.exec(
                select(TodoRow)
                .where(TodoRow.session_id == session_id)
                .order_by(col(TodoRow.id))
            ).all()
            if not 1 <= index <= len(rows):
                return None
            row = rows[index - 1]
            description = row.description
            session.delete(row)
            session.commit()
            return description

    def clear_todos(self, session_id: str) -> int:
        """TODO をすべて削除し、削除件数を返す."""
        with self._session() as session:
            rows = session.exec(
                select(TodoRow).where(TodoRow.session_id == session_id)
            ).all()
            for row in rows:
                session.delete(row)
            session.commit()
            return len(rows)

    # ------------------------------------------------------------------
    # 監査ログ
    # ------------------------------------------------------------------

    def insert_command_log(self, record: CommandLogRecord) -> int | None:
        """
        監査レコードを追記する.

        Returns:
            採番された ID
        """
        with self._session() as session:
            row = CommandLogRow(
                session_id=record.session_id,
                command=record.command,
                source=record.source,
                requires_approval=record.requires_approval,
                approved=record.approved,
                status=record.status.value,
                exit_code=record.exit_code,
                duration_ms=record.duration_ms,
                stdout_preview=record.stdout_preview,
                stderr_preview=record.stderr_preview,
                error_message=record.error_message,
                created_at=record.created_at,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.id

    def load_command_logs(
        self, session_id: str | None = None, limit: int = 20
    ) -> list[CommandLogRecord]:
        """
        監査レコードを新しい順に返す.

        Args:
            session_id: 絞り込むセッションID（None の場合は全セッション）
            limit: 最大件数
        """
        with self._session() as session:
            stmt = select(CommandLogRow)
            if session_id is not None:
                stmt = stmt.where(CommandLogRow.session_id == session_id)
            rows = session.exec(
                stmt.order_by(col(CommandLogRow.id).desc()).limit(limit)
            ).all()
            return [_to_record(row) for row in rows]

    def load_latest_command_log(
        self, session_id: str | None = None
    ) -> CommandLogRecord | None:
        """最新の監査レコードを返す（存在しない場合は None）."""
        records = self.load_command_logs(session_id, limit=1)
        return records[0] if records else None
