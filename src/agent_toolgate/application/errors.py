"""Error taxonomy for the tool dispatch core."""

from __future__ import annotations


class ToolgateError(Exception):
    """全エラーの基底クラス."""

    category = "Error"

    def __init__(self, message: str) -> None:
        """
        Initialize ToolgateError.

        Args:
            message: エラーメッセージ（カテゴリ接頭辞なし）
        """
        super().__init__(f"{self.category}: {message}")
        self.message = message


class ConfigError(ToolgateError):
    """設定の読み込み・検証に失敗した場合の例外."""

    category = "Configuration error"


class StorageError(ToolgateError):
    """永続化ストアへのアクセスに失敗した場合の例外."""

    category = "Database error"


class ApiError(ToolgateError):
    """言語モデル API / HTTP 呼び出しに失敗した場合の例外."""

    category = "API error"


class RemoteToolError(ToolgateError):
    """リモートツール（MCP）呼び出しに失敗した場合の例外."""

    category = "MCP error"


class IoError(ToolgateError):
    """標準入出力など I/O に失敗した場合の例外."""

    category = "I/O error"


class FileOperationError(ToolgateError):
    """ファイル操作に失敗した場合の例外."""

    category = "File operation error"


class CommandError(ToolgateError):
    """コマンド実行やポリシー判定に失敗した場合の例外."""

    category = "Command execution error"


class CommandBlockedError(CommandError):
    """ポリシーによりコマンドが拒否された場合の例外."""


class WebSearchError(ToolgateError):
    """Web 検索に失敗した場合の例外."""

    category = "Web search error"


class IntentParseError(CommandError):
    """モデル応答からツール呼び出しを解析できなかった場合の例外."""


class MalformedArgumentsError(IntentParseError):
    """引数文字列の引用符が閉じていないなど、形式が不正な場合の例外."""


class ArgumentCountMismatchError(IntentParseError):
    """引数の個数が期待値と一致しない場合の例外."""

    def __init__(self, expected: int, actual: int) -> None:
        """
        Initialize ArgumentCountMismatchError.

        Args:
            expected: 期待した引数の個数
            actual: 実際の引数の個数
        """
        super().__init__(f"Expected {expected} arguments, got {actual}")
        self.expected = expected
        self.actual = actual


class MalformedToolCallError(IntentParseError):
    """JSON ツール呼び出しのコンテナ自体が壊れている場合の例外."""
