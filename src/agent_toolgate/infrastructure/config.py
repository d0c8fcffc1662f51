"""Configuration management."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from agent_toolgate.application.errors import ConfigError
from agent_toolgate.application.models import ExecutionPolicy

ApiProvider = Literal["openai", "sambanova", "gemini"]

_DEFAULT_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1/chat/completions",
    "sambanova": "https://api.sambanova.ai/v1/chat/completions",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/models",
}


def _split_list(v: object) -> object:
    """JSON 配列またはカンマ区切り文字列をリストに変換する."""
    if not isinstance(v, str):
        return v
    text = v.strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            pass
        else:
            if isinstance(parsed, list):
                return parsed
    return [item.strip() for item in text.split(",")]


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # LLM API 設定
    api_provider: ApiProvider = Field(
        default="openai",
        description="言語モデルのプロバイダー（openai / sambanova / gemini）",
    )
    api_key: str = Field(
        default="",
        description="API キー",
    )
    api_base_url: str | None = Field(
        default=None,
        description="API エンドポイント（未指定時はプロバイダーの既定値）",
    )
    model_name: str = Field(
        default="gpt-4o-mini",
        description="モデル名",
    )
    llm_timeout: float = Field(
        default=90.0,
        description="LLM 呼び出しのタイムアウト（秒）",
    )
    llm_cache_ttl: float = Field(
        default=0.0,
        description="LLM 応答キャッシュの有効期間（秒、0で無効）",
    )

    # 永続化
    database_path: Path = Field(
        default=Path("agent_toolgate.db"),
        description="SQLite データベースのパス",
    )

    # 実行ポリシー
    allowed_commands: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="確認なしで実行を許可するコマンドのプレフィックス",
    )
    blocked_commands: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="常に拒否するコマンドのプレフィックス",
    )
    command_timeout: float | None = Field(
        default=None,
        description="シェルコマンドのタイムアウト（秒、未指定で無制限）",
    )
    guidelines_path: Path = Field(
        default=Path("docs/AGENTS.md"),
        description="システムプロンプトに追加するエージェント向けガイドライン",
    )

    # MCP（リモートツール）
    mcp_enabled: bool = Field(default=False, description="MCP クライアントを有効にする")
    mcp_server_url: str = Field(
        default="http://localhost:8000/mcp",
        description="MCP サーバーの URL（streamable HTTP）",
    )
    mcp_timeout: float = Field(default=30.0, description="MCP 呼び出しのタイムアウト（秒）")

    # Web 検索
    web_search_enabled: bool = Field(default=True, description="Web 検索を有効にする")
    web_search_url: str = Field(
        default="https://api.duckduckgo.com/",
        description="DuckDuckGo Instant Answer API のエンドポイント",
    )
    http_timeout: float = Field(
        default=15.0,
        description="Web 検索・API テストのタイムアウト（秒）",
    )

    # カスタムスラッシュコマンド（名前 → 展開されるプロンプト）
    custom_commands: dict[str, str] = Field(
        default_factory=dict,
        description="カスタムスラッシュコマンド",
    )

    # ロギング
    log_level: str = Field(default="INFO", description="ログレベル")
    log_dir: str = Field(default="logs", description="ログ出力ディレクトリ")
    log_backup_count: int = Field(default=7, description="ログ保持日数")

    @field_validator("api_provider", mode="before")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        """プロバイダー名を小文字に正規化する."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("allowed_commands", "blocked_commands", mode="before")
    @classmethod
    def parse_command_list(cls, v: str | list[str]) -> object:
        """コマンドリストをパースする（JSON配列またはカンマ区切り）."""
        return _split_list(v)

    @field_validator("allowed_commands", "blocked_commands")
    @classmethod
    def reject_blank_entries(cls, v: list[str]) -> list[str]:
        """空のプレフィックスはすべてのコマンドに一致してしまうため拒否する."""
        if any(not entry.strip() for entry in v):
            msg = "Command prefixes must not be blank"
            raise ValueError(msg)
        return v

    @field_validator("database_path", mode="before")
    @classmethod
    def parse_database_path(cls, v: str | Path) -> Path:
        """database_pathをPathに変換する."""
        if isinstance(v, str):
            return Path(v)
        return v

    @property
    def resolved_api_base_url(self) -> str:
        """API エンドポイント（未指定時はプロバイダーの既定値）."""
        return self.api_base_url or _DEFAULT_BASE_URLS[self.api_provider]

    def exec_policy(self) -> ExecutionPolicy:
        """
        実行ポリシーを構築する.

        Returns:
            許可リスト・拒否リストを持つ実行ポリシー（空リストは None として扱う）
        """
        return ExecutionPolicy(
            allowed_commands=tuple(self.allowed_commands) or None,
            blocked_commands=tuple(self.blocked_commands) or None,
        )


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス

    Raises:
        ConfigError: 環境変数や .env の値が不正な場合
    """
    global _config
    if _config is None:
        try:
            _config = Config()
        except ValidationError as e:
            raise ConfigError(str(e)) from e
    return _config
