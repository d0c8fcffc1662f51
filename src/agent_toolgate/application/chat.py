"""Chat session service: the model round trip and local session commands."""

from __future__ import annotations

import json
import re
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from agent_toolgate.application.audit import AuditRecorder
from agent_toolgate.application.errors import (
    ArgumentCountMismatchError,
    MalformedArgumentsError,
)
from agent_toolgate.application.executor import ToolExecutor
from agent_toolgate.application.intent import normalize
from agent_toolgate.application.models import (
    Capability,
    CommandLogRecord,
    ConversationMessage,
    Role,
    ToolIntent,
    TurnResult,
)
from agent_toolgate.application.prompt import build_system_prompt, collect_project_context
from agent_toolgate.application.tools.base import (
    DEFAULT_WEB_SEARCH_URL,
    RemoteToolClient,
    ToolContext,
)
from agent_toolgate.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from agent_toolgate.application.policy import ApprovalGate
    from agent_toolgate.infrastructure.llm_client import ChatModel
    from agent_toolgate.infrastructure.storage import Storage

logger = get_logger(__name__)

MAX_HISTORY = 50

TOOL_RESULT_PREFIX = "Tool execution result: "

# 応答の前後から取り除く引用符
_RESPONSE_QUOTES = "'\"`"

# "@path" 形式のファイル参照（"/" "!" で始まるものは対象外）
_FILE_REFERENCE = re.compile(r"@([^\s/!][^\s]*)")

_EXIT_WORDS = frozenset({"exit", "quit"})

_SESSION_COMMANDS = frozenset({"sessions", "view", "export", "delete"})

# /view で表示する最大メッセージ数
VIEW_LIMIT = 20

_ROLE_LABELS = {
    Role.USER: "You",
    Role.ASSISTANT: "Assistant",
    Role.SYSTEM: "System",
}


class ReplyKind(str, Enum):
    """handle_input の応答種別（表示方法の切り替えに使う）."""

    ASSISTANT = "assistant"
    SHELL = "shell"
    INFO = "info"
    ERROR = "error"
    EXIT = "exit"


@dataclass(frozen=True)
class ChatReply:
    """利用者入力1件に対する応答."""

    kind: ReplyKind
    text: str
    turn: TurnResult | None = None


@dataclass
class ChatSession:
    """対話セッションの状態（セッションIDと会話履歴）."""

    id: str
    history: list[ConversationMessage] = field(default_factory=list)


def should_exit(text: str) -> bool:
    """入力がセッション終了の指示かどうか."""
    return text.strip().lower() in _EXIT_WORDS


def expand_file_references(text: str) -> str:
    """
    入力中の ``@path`` を ``[READ_FILE path]`` に書き換える.

    Examples:
        >>> expand_file_references("explain @src/main.py please")
        'explain [READ_FILE src/main.py] please'
    """
    return _FILE_REFERENCE.sub(lambda m: f"[READ_FILE {m.group(1)}]", text)


def trim_history(history: list[ConversationMessage], limit: int = MAX_HISTORY) -> None:
    """先頭（システムプロンプト）を残して、古いメッセージから limit 件まで削る."""
    excess = len(history) - limit
    if excess > 0:
        del history[1 : 1 + excess]


def format_command_log(record: CommandLogRecord) -> str:
    """監査レコードを1行に整形する."""
    line = (
        f"{record.created_at.astimezone():%Y-%m-%d %H:%M:%S} [{record.status.value}] "
        f"({record.source}) {record.command}"
    )
    if record.exit_code is not None:
        line += f" exit={record.exit_code}"
    if record.duration_ms is not None:
        line += f" {record.duration_ms}ms"
    if record.error_message:
        line += f" error={record.error_message}"
    return line


def _transcript_line(message: ConversationMessage) -> str:
    body = message.content.replace("\n", "\n  ")
    return f"{message.role.value}: {body}\n"


class ChatService:
    """
    対話セッションを進めるサービス.

    1ターンの流れ:

    1. 会話履歴全体をモデルに送り、応答 R1 を得る
    2. R1 の前後の空白・引用符を除いてツール呼び出しに正規化する
    3. ツール呼び出しでなければ R1（トリム前）を回答とする
    4. ツール呼び出しならゲート・実行・監査を行い、結果を
       "Tool execution result: ..." のシステムメッセージとして履歴に追加し、
       もう一度モデルを呼んだ応答 R2 を回答とする
    5. 回答をアシスタントメッセージとして履歴に追加する

    モデル呼び出しの失敗・監査ストアの障害・解釈できないツール呼び出し JSON は
    ターン全体を失敗させ、呼び出し元に例外を伝播する。
    """

    def __init__(
        self,
        llm: ChatModel,
        storage: Storage,
        gate: ApprovalGate,
        *,
        model_name: str,
        executor: ToolExecutor | None = None,
        remote_tools: RemoteToolClient | None = None,
        remote_tool_listing: Sequence[tuple[str, str | None]] = (),
        web_search_enabled: bool = True,
        custom_commands: Mapping[str, str] | None = None,
        http_timeout: float = 15.0,
        web_search_url: str = DEFAULT_WEB_SEARCH_URL,
        command_timeout: float | None = None,
        guidelines_path: Path | None = None,
        export_dir: Path | None = None,
    ) -> None:
        """
        Initialize ChatService.

        Args:
            llm: 言語モデルクライアント
            storage: 永続化ストア
            gate: 承認ゲート
            model_name: システムプロンプトに記載するモデル名
            executor: ツール実行器（None の場合は組み込みレジストリで生成）
            remote_tools: リモートツールクライアント
            remote_tool_listing: システムプロンプトに載せるリモートツールの (名前, 説明) 一覧
            web_search_enabled: Web 検索を有効にするかどうか
            custom_commands: カスタムスラッシュコマンド（コマンド名 → 送信する文面）
            http_timeout: Web 検索・API テストのタイムアウト（秒）
            web_search_url: Web 検索 API のエンドポイント
            command_timeout: シェルコマンドのタイムアウト（秒）
            guidelines_path: エージェント向けガイドラインのファイル
            export_dir: /export の出力先（None の場合はカレントディレクトリ）
        """
        self._llm = llm
        self._storage = storage
        self._gate = gate
        self._audit = AuditRecorder(storage)
        self._executor = executor or ToolExecutor()
        self._model_name = model_name
        self._remote_tools = remote_tools
        self._remote_tool_listing = list(remote_tool_listing)
        self._web_search_enabled = web_search_enabled
        self._custom_commands = dict(custom_commands or {})
        self._http_timeout = http_timeout
        self._web_search_url = web_search_url
        self._command_timeout = command_timeout
        self._guidelines_path = guidelines_path
        self._export_dir = export_dir

    @property
    def audit(self) -> AuditRecorder:
        """監査レコーダー."""
        return self._audit

    def create_session(self) -> ChatSession:
        """
        新しいセッションを開始する.

        セッションIDを採番して保存し、システムプロンプトだけを含む履歴を返す。

        Raises:
            StorageError: セッションの保存に失敗した場合
        """
        session = ChatSession(id=str(uuid.uuid4()))
        self._storage.save_session(session.id)

        system_prompt = build_system_prompt(
            self._model_name,
            web_search_enabled=self._web_search_enabled,
            remote_tools=self._remote_tool_listing,
            project_context=collect_project_context(),
            guidelines_path=self._guidelines_path,
        )
        self._append(session, Role.SYSTEM, system_prompt)
        logger.info("Session created", session_id=session.id)
        return session

    def help_text(self) -> str:
        """ローカルコマンドの一覧."""
        lines = [
            "Available commands:",
            "  /help - Show this help",
            "  /exit - Exit the session",
            "  /clear - Clear chat history",
            "  /audit - Show recent command executions",
            "  /sessions - List saved sessions",
            "  /view <id> - Show the last messages of a session",
            "  /export <id> [json] - Export a session transcript to a file",
            "  /delete <id> - Delete a saved session",
            "  !command - Execute shell command directly",
            "  @file - Reference and read files",
        ]
        lines.extend(f"  /{name} - {desc}" for name, desc in self._custom_commands.items())
        return "\n".join(lines)

    async def handle_input(self, session: ChatSession, text: str) -> ChatReply:
        """
        利用者の入力1件を処理する.

        ``/`` で始まる入力はローカルコマンド、``!`` で始まる入力は
        シェルコマンドの直接実行、それ以外はモデルとの1ターンとして扱う。

        Raises:
            ApiError: モデル呼び出しに失敗した場合
            StorageError: 履歴・監査レコードの保存に失敗した場合
            MalformedToolCallError: ツール呼び出し JSON が壊れている場合
        """
        text = text.strip()
        if should_exit(text):
            return ChatReply(ReplyKind.EXIT, "Session ended.")
        if text.startswith("!"):
            return await self.run_shell_command(session, text[1:].strip())
        if text.startswith("/"):
            return await self._handle_command(session, text[1:].strip())

        turn = await self.process_message(session, expand_file_references(text))
        return ChatReply(ReplyKind.ASSISTANT, turn.answer, turn=turn)

    async def _handle_command(self, session: ChatSession, command: str) -> ChatReply:
        name, _, argument = command.partition(" ")
        argument = argument.strip()
        if name in _SESSION_COMMANDS:
            return self._handle_session_command(session, name, argument)
        if command == "help":
            return ChatReply(ReplyKind.INFO, self.help_text())
        if command == "exit":
            return ChatReply(ReplyKind.EXIT, "Session ended.")
        if command == "clear":
            del session.history[1:]
            logger.info("Chat history cleared", session_id=session.id)
            return ChatReply(ReplyKind.INFO, "Chat history cleared.")
        if command == "audit":
            records = self._audit.recent(session.id)
            if not records:
                return ChatReply(ReplyKind.INFO, "No commands have been executed yet.")
            return ChatReply(
                ReplyKind.INFO, "\n".join(format_command_log(r) for r in records)
            )

        description = self._custom_commands.get(command)
        if description is None:
            return ChatReply(
                ReplyKind.ERROR,
                f"Unknown command '{command}'. Type /help for available commands.",
            )
        logger.info("Running custom command", command=command, session_id=session.id)
        turn = await self.process_message(session, description)
        return ChatReply(ReplyKind.ASSISTANT, turn.answer, turn=turn)

    def _handle_session_command(
        self, session: ChatSession, name: str, argument: str
    ) -> ChatReply:
        if name == "sessions":
            return self.list_sessions()
        session_id, _, option = argument.partition(" ")
        if not session_id:
            return ChatReply(ReplyKind.ERROR, f"Usage: /{name} <session-id>")
        if name == "view":
            return self.view_session(session_id)
        if name == "export":
            return self.export_session(session_id, as_json=option.strip().lower() == "json")
        if session_id == session.id:
            return ChatReply(ReplyKind.ERROR, "Cannot delete the current session")
        if not self._storage.delete_session(session_id):
            return ChatReply(ReplyKind.ERROR, f"Session {session_id} not found")
        logger.info("Session deleted", deleted_session_id=session_id)
        return ChatReply(ReplyKind.INFO, f"Deleted session {session_id}")

    def list_sessions(self) -> ChatReply:
        """保存済みセッションを新しい順に一覧表示する."""
        sessions = self._storage.list_sessions()
        if not sessions:
            return ChatReply(ReplyKind.INFO, "No saved sessions.")
        lines = ["Previous Sessions:"]
        lines.extend(
            f"{i}: {s.id} ({s.created_at.astimezone():%Y-%m-%d %H:%M:%S}, "
            f"{s.message_count} messages)"
            for i, s in enumerate(sessions, start=1)
        )
        return ChatReply(ReplyKind.INFO, "\n".join(lines))

    def view_session(self, session_id: str) -> ChatReply:
        """セッションの直近 VIEW_LIMIT 件のメッセージを表示する."""
        history = self._storage.load_history(session_id)
        if not history:
            return ChatReply(ReplyKind.INFO, f"No history found for session {session_id}")
        shown = history[-VIEW_LIMIT:]
        lines = [
            f"Session History (showing last {len(shown)} of {len(history)} messages):",
            *(f"{_ROLE_LABELS[m.role]}: {m.content}" for m in shown),
        ]
        if len(history) > VIEW_LIMIT:
            lines.append("Use /export to see the full transcript.")
        return ChatReply(ReplyKind.INFO, "\n".join(lines))

    def export_session(self, session_id: str, *, as_json: bool = False) -> ChatReply:
        """
        セッションの全履歴をファイルに書き出す.

        テキスト形式は1メッセージ1行（本文中の改行は字下げして続ける）、
        JSON 形式は role と content の配列。
        """
        history = self._storage.load_history(session_id)
        if not history:
            return ChatReply(ReplyKind.ERROR, f"No history found for session {session_id}")

        suffix = "json" if as_json else "txt"
        path = (self._export_dir or Path.cwd()) / f"agent_toolgate_export_{session_id}.{suffix}"
        if as_json:
            content = json.dumps(
                [{"role": m.role.value, "content": m.content} for m in history],
                ensure_ascii=False,
                indent=2,
            )
        else:
            content = "".join(_transcript_line(m) for m in history)
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to export session", path=str(path), error=str(e))
            return ChatReply(ReplyKind.ERROR, f"Failed to export session to {path}: {e}")

        logger.info("Session exported", exported_session_id=session_id, path=str(path))
        return ChatReply(
            ReplyKind.INFO, f"Successfully exported {len(history)} messages to {path}"
        )

    async def run_shell_command(self, session: ChatSession, command: str) -> ChatReply:
        """
        利用者が直接入力したシェルコマンドを実行する.

        モデル経由と同じゲートを通し、監査レコードの発生元は "user" になる。
        会話履歴には追加しない。
        """
        if not command:
            return ChatReply(ReplyKind.ERROR, "No command given")
        intent = ToolIntent(Capability.RUN_COMMAND, {"command": command})
        outcome = await self._executor.execute(intent, self._context(session, source="user"))
        kind = ReplyKind.SHELL if outcome.succeeded else ReplyKind.ERROR
        return ChatReply(kind, outcome.result_text)

    async def process_message(self, session: ChatSession, text: str) -> TurnResult:
        """
        利用者メッセージを履歴に追加し、1ターン分の処理を行う.

        Returns:
            回答とツール実行結果
        """
        self._append(session, Role.USER, text)
        turn = await self._run_turn(session)
        self._append(session, Role.ASSISTANT, turn.answer)
        trim_history(session.history)
        return turn

    async def _run_turn(self, session: ChatSession) -> TurnResult:
        first = await self._llm.complete(session.history)
        trimmed = first.strip().strip(_RESPONSE_QUOTES)

        intent: ToolIntent | None = None
        try:
            intent = normalize(trimmed, web_search_enabled=self._web_search_enabled)
        except (MalformedArgumentsError, ArgumentCountMismatchError) as e:
            logger.warning(
                "Tool call arguments could not be parsed",
                session_id=session.id,
                error=str(e),
            )
            tool_output = str(e)
        else:
            if intent is None:
                return TurnResult(answer=first)
            outcome = await self._executor.execute(intent, self._context(session))
            tool_output = outcome.result_text

        self._append(session, Role.SYSTEM, f"{TOOL_RESULT_PREFIX}{tool_output}")
        second = await self._llm.complete(session.history)
        return TurnResult(answer=second, tool_output=tool_output, intent=intent)

    def _append(self, session: ChatSession, role: Role, content: str) -> None:
        message = ConversationMessage(role, content)
        self._storage.save_message(session.id, message)
        session.history.append(message)

    def _context(self, session: ChatSession, *, source: str = "model") -> ToolContext:
        return ToolContext(
            storage=self._storage,
            session_id=session.id,
            gate=self._gate,
            audit=self._audit,
            source=source,
            remote_tools=self._remote_tools,
            http_timeout=self._http_timeout,
            web_search_url=self._web_search_url,
            command_timeout=self._command_timeout,
        )
