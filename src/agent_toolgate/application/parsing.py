"""Argument parsing for bracketed tool commands."""

from __future__ import annotations

from agent_toolgate.application.errors import (
    ArgumentCountMismatchError,
    MalformedArgumentsError,
)


def parse_quoted_args(text: str) -> list[str]:
    """
    空白区切りの引数列をダブルクォートを考慮して分割する.

    - クォート外の連続した空白は1つの区切りとして扱う
    - クォート内の空白はそのまま保持する
    - 空のクォート ``""`` は空文字列の引数になる

    分割結果を空白1つで連結して再度分割すると、クォート内に空白を含まない入力では
    同じ結果になる。クォートは復元しないため、``a "b c" d`` は再分割で
    ``["a", "b", "c", "d"]`` になり、``x "" y`` の空の引数は失われる。

    Args:
        text: 分割対象の文字列

    Returns:
        引数のリスト

    Raises:
        MalformedArgumentsError: クォートが閉じられていない場合
    """
    args: list[str] = []
    current: list[str] = []
    in_quotes = False

    for ch in text:
        if ch == '"':
            if in_quotes:
                in_quotes = False
                if not current:
                    args.append("")
            else:
                in_quotes = True
        elif ch.isspace():
            if in_quotes:
                current.append(ch)
            elif current:
                args.append("".join(current))
                current = []
        else:
            current.append(ch)

    if in_quotes:
        raise MalformedArgumentsError("Unclosed quote in arguments")

    if current:
        args.append("".join(current))

    return args


def strip_tool_prefix(response: str, prefix: str) -> str:
    """
    ツールコマンドからプレフィックスと末尾の ``]`` を取り除く.

    プレフィックスの照合は大文字小文字を区別しない。

    Args:
        response: モデル応答（例: ``[READ_FILE a.txt]``）
        prefix: ツールプレフィックス（例: ``[READ_FILE``）

    Returns:
        前後の空白を除去した引数部分（空文字列の場合あり）

    Raises:
        MalformedArgumentsError: プレフィックスまたは末尾の ``]`` がない場合
    """
    if not response.upper().startswith(prefix.upper()) or not response.endswith("]"):
        raise MalformedArgumentsError(f"Invalid {prefix} format")
    return response[len(prefix) : -1].strip()


def extract_tool_arg(response: str, prefix: str) -> str:
    """
    ツールコマンドから単一の生引数を取り出す（トークン分割しない）.

    Raises:
        MalformedArgumentsError: 形式が不正な場合
        ArgumentCountMismatchError: 引数が空の場合
    """
    arg = strip_tool_prefix(response, prefix)
    if not arg:
        raise ArgumentCountMismatchError(1, 0)
    return arg


def extract_tool_args(response: str, prefix: str, count: int) -> list[str]:
    """
    ツールコマンドから引数を取り出し、個数を検証する.

    Args:
        response: モデル応答
        prefix: ツールプレフィックス
        count: 期待する引数の個数

    Returns:
        ちょうど count 個の引数

    Raises:
        MalformedArgumentsError: 形式が不正な場合
        ArgumentCountMismatchError: 個数が一致しない場合
    """
    args = parse_quoted_args(strip_tool_prefix(response, prefix))
    if len(args) != count:
        raise ArgumentCountMismatchError(count, len(args))
    return args
