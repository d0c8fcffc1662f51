"""Shared types for capability handlers."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from agent_toolgate.application.audit import preview
from agent_toolgate.application.models import ToolOutcome

if TYPE_CHECKING:
    from agent_toolgate.application.audit import AuditRecorder
    from agent_toolgate.application.policy import ApprovalGate
    from agent_toolgate.infrastructure.process import ProcessResult
    from agent_toolgate.infrastructure.storage import Storage

DEFAULT_WEB_SEARCH_URL = "https://api.duckduckgo.com/"

# ハンドラー引数に埋め込むリモートツール名のキー（ToolIntent.tool_name の値）
TOOL_NAME_KEY = "__tool_name__"


class RemoteToolClient(Protocol):
    """リモートツール（MCP）クライアントのインターフェース."""

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> str:
        """ツールを呼び出し、結果を整形済みテキストで返す."""
        ...


@dataclass
class ToolContext:
    """
    ハンドラーに渡されるセッション単位のコンテキスト.

    Attributes:
        storage: 永続化ストア（TODO もセッションIDで区切ってここに保存する）
        session_id: セッションID
        gate: 承認ゲート
        audit: 監査レコーダー
        source: 監査レコードの発生元（"model" またはユーザー直接実行の "user"）
        remote_tools: リモートツールクライアント（未設定の場合 None）
        http_timeout: Web 検索・API テストのタイムアウト（秒）
        web_search_url: DuckDuckGo Instant Answer API のエンドポイント
        command_timeout: シェルコマンドのタイムアウト（秒、None で無制限）
        http_transport: HTTP トランスポートの差し替え（テスト用、通常は None）
    """

    storage: Storage
    session_id: str
    gate: ApprovalGate
    audit: AuditRecorder
    source: str = "model"
    remote_tools: RemoteToolClient | None = None
    http_timeout: float = 15.0
    web_search_url: str = DEFAULT_WEB_SEARCH_URL
    command_timeout: float | None = None
    http_transport: httpx.AsyncBaseTransport | None = None

    def http_client(self) -> httpx.AsyncClient:
        """Web 検索・API テスト用の HTTP クライアントを生成する."""
        return httpx.AsyncClient(timeout=self.http_timeout, transport=self.http_transport)


ToolHandler = Callable[[Mapping[str, Any], ToolContext], Awaitable[ToolOutcome]]


class GateMode(str, Enum):
    """ハンドラー実行前のゲート方式."""

    NONE = "none"  # 確認なしで実行（監査対象外）
    COMMAND_POLICY = "command_policy"  # シェルコマンドのポリシー評価
    CONFIRM = "confirm"  # 常に利用者へ確認


@dataclass(frozen=True)
class ToolSpec:
    """
    ケーパビリティ1つ分の登録情報.

    Attributes:
        handler: 実行本体
        describe: 監査レコードの command 欄に記録する説明
        gate: ゲート方式
        prompt: 確認プロンプト（CONFIRM の場合に使用）
        cancel_message: 利用者が拒否した場合の結果テキスト
        gate_when: 指定時、False を返す引数ではゲートを省略する
    """

    handler: ToolHandler
    describe: Callable[[Mapping[str, Any]], str]
    gate: GateMode = GateMode.NONE
    prompt: Callable[[Mapping[str, Any]], str] | None = None
    cancel_message: str | None = None
    gate_when: Callable[[Mapping[str, Any]], bool] | None = None

    def gate_mode_for(self, arguments: Mapping[str, Any]) -> GateMode:
        """引数に応じた実際のゲート方式を返す."""
        if self.gate_when is not None and not self.gate_when(arguments):
            return GateMode.NONE
        return self.gate


def process_output(result: ProcessResult) -> str:
    """終了コードに応じて結果テキストを選ぶ（0 なら標準出力、それ以外は標準エラー）."""
    return result.stdout if result.succeeded else result.stderr


def outcome_from_process(
    result: ProcessResult, summary: str, result_text: str | None = None
) -> ToolOutcome:
    """子プロセスの実行結果から ToolOutcome を組み立てる."""
    return ToolOutcome(
        result_text=process_output(result) if result_text is None else result_text,
        summary=summary,
        succeeded=result.succeeded,
        exit_code=result.exit_code,
        stdout_preview=preview(result.stdout),
        stderr_preview=preview(result.stderr),
        duration_ms=result.duration_ms,
    )
