"""Data models for cross-layer communication."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any


def utc_now() -> datetime:
    """現在時刻を UTC のタイムゾーン付きで返す."""
    return datetime.now(UTC)


class Capability(str, Enum):
    """モデルが要求できるツール種別."""

    RUN_COMMAND = "run_command"
    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    SEARCH_REPLACE = "search_replace"
    TODO_ADD = "todo_add"
    TODO_LIST = "todo_list"
    TODO_REMOVE = "todo_remove"
    TODO_CLEAR = "todo_clear"
    GIT_STATUS = "git_status"
    GIT_DIFF = "git_diff"
    GIT_COMMIT = "git_commit"
    GIT_ADD = "git_add"
    GITHUB_ISSUE = "github_issue"
    GITHUB_PR = "github_pr"
    WEB_SEARCH = "web_search"
    DB_QUERY = "db_query"
    CODE_ANALYZE = "code_analyze"
    IMAGE_INFO = "image_info"
    IMAGE_RESIZE = "image_resize"
    API_TEST = "api_test"
    REMOTE_TOOL = "remote_tool"


@dataclass(frozen=True)
class ToolIntent:
    """正規化済みのツール呼び出し意図.

    arguments は構築時に読み取り専用マッピングへ変換される。
    remote_tool の場合のみ tool_name にリモート側のツール名が入る。
    """

    capability: Capability
    arguments: Mapping[str, Any] = field(default_factory=dict)
    tool_name: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "arguments", MappingProxyType(dict(self.arguments)))


@dataclass(frozen=True)
class ExecutionPolicy:
    """コマンド実行ポリシー（プレフィックスの許可リスト・拒否リスト）."""

    allowed_commands: tuple[str, ...] | None = None
    blocked_commands: tuple[str, ...] | None = None


class ApprovalDecision(str, Enum):
    """ゲート判定結果."""

    AUTO_APPROVED = "auto_approved"
    USER_APPROVED = "user_approved"
    USER_REJECTED = "user_rejected"
    POLICY_BLOCKED = "policy_blocked"


class CommandStatus(str, Enum):
    """監査レコードのステータス."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class CommandLogRecord:
    """実行試行1回分の監査レコード."""

    command: str
    source: str
    requires_approval: bool
    approved: bool
    status: CommandStatus
    session_id: str | None = None
    exit_code: int | None = None
    duration_ms: int | None = None
    stdout_preview: str | None = None
    stderr_preview: str | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utc_now)


class Role(str, Enum):
    """会話メッセージの送信者."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class ConversationMessage:
    """会話履歴の1メッセージ."""

    role: Role
    content: str


@dataclass(frozen=True)
class ToolOutcome:
    """ハンドラーの実行結果（結果テキスト + 監査用サマリ）."""

    result_text: str
    summary: str
    succeeded: bool = True
    exit_code: int | None = None
    stdout_preview: str | None = None
    stderr_preview: str | None = None
    error_message: str | None = None
    duration_ms: int | None = None


@dataclass(frozen=True)
class TurnResult:
    """1ターン分の処理結果."""

    answer: str
    tool_output: str | None = None
    intent: ToolIntent | None = None
