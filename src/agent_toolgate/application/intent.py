"""Intent normalization for raw model responses.

モデル応答は次の順に解析し、最初に成功したものを採用する:

1. ``{"mcp_tool": ..., "arguments": {...}}`` 形式のリモートツール呼び出し
2. ``{"tool": ..., ...}`` / ``{"tool": ..., "args": {...}}`` 形式の JSON ツール呼び出し
3. ``[RUN_COMMAND ...]`` などのブラケット形式
4. いずれにも該当しない場合は「意図なし」（応答そのものが最終回答）

各段階は失敗時に ``None`` を返して次の段階へ進む。
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping
from typing import Any

from agent_toolgate.application.errors import (
    ArgumentCountMismatchError,
    MalformedArgumentsError,
    MalformedToolCallError,
)
from agent_toolgate.application.models import Capability, ToolIntent
from agent_toolgate.application.parsing import (
    extract_tool_arg,
    extract_tool_args,
    parse_quoted_args,
    strip_tool_prefix,
)
from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)

# JSON デコードに失敗したが、ツール呼び出しのつもりだったと判断できる応答
_TOOL_KEY_PATTERN = re.compile(r"\"(mcp_tool|tool)\"\s*:")

_TODO_ACTIONS = ("add", "list", "remove", "clear")


def normalize(response: str, *, web_search_enabled: bool = True) -> ToolIntent | None:
    """
    モデル応答を正規化済みのツール呼び出し意図に変換する.

    Args:
        response: モデル応答（前後のクォート類は除去済みであること）
        web_search_enabled: Web 検索ツールを有効にするかどうか

    Returns:
        ツール呼び出し意図。ツール呼び出しでない場合は None

    Raises:
        MalformedToolCallError: JSON ツール呼び出しのコンテナ自体が壊れている場合
        MalformedArgumentsError: 引数の形式が不正な場合
        ArgumentCountMismatchError: 引数の個数が一致しない場合
    """
    payload = _load_json_object(response)
    if payload is not None:
        intent = parse_remote_tool_call(payload)
        if intent is None:
            intent = parse_json_tool_call(payload, web_search_enabled=web_search_enabled)
        if intent is not None:
            logger.debug(
                "Detected JSON tool call",
                capability=intent.capability.value,
                tool_name=intent.tool_name,
            )
        return intent

    intent = parse_bracket_call(response, web_search_enabled=web_search_enabled)
    if intent is not None:
        logger.debug("Detected bracket tool call", capability=intent.capability.value)
    return intent


def _load_json_object(response: str) -> dict[str, Any] | None:
    """応答を JSON オブジェクトとして読み込む（オブジェクトでなければ None）."""
    text = response.strip()
    if not text.startswith("{"):
        return None
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        if _TOOL_KEY_PATTERN.search(text):
            msg = f"Invalid JSON tool call: {e}"
            raise MalformedToolCallError(msg) from e
        return None
    if not isinstance(value, dict):
        return None
    return value


# ---------------------------------------------------------------------------
# 1. リモートツール呼び出し
# ---------------------------------------------------------------------------


def parse_remote_tool_call(payload: Mapping[str, Any]) -> ToolIntent | None:
    """``mcp_tool`` キーを持つ JSON をリモートツール呼び出しとして解析する."""
    name = payload.get("mcp_tool")
    if not isinstance(name, str) or not name:
        return None
    arguments = payload.get("arguments")
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        msg = "MCP tool arguments must be a JSON object"
        raise MalformedArgumentsError(msg)
    return ToolIntent(Capability.REMOTE_TOOL, arguments, tool_name=name)


# ---------------------------------------------------------------------------
# 2. JSON ツール呼び出し
# ---------------------------------------------------------------------------


def _str_param(params: Mapping[str, Any], key: str) -> str | None:
    value = params.get(key)
    return value if isinstance(value, str) else None


def _int_param(params: Mapping[str, Any], key: str) -> int | None:
    value = params.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _required(
    capability: Capability, params: Mapping[str, Any], *keys: str
) -> ToolIntent | None:
    values: dict[str, str] = {}
    for key in keys:
        value = _str_param(params, key)
        if value is None:
            return None
        values[key] = value
    return ToolIntent(capability, values)


def _json_todo(params: Mapping[str, Any]) -> ToolIntent | None:
    action = _str_param(params, "action")
    if action == "add":
        description = _str_param(params, "description")
        if description is None:
            return None
        return ToolIntent(Capability.TODO_ADD, {"description": description})
    if action == "list":
        return ToolIntent(Capability.TODO_LIST)
    if action == "remove":
        index = _int_param(params, "index")
        if index is None:
            return None
        return ToolIntent(Capability.TODO_REMOVE, {"index": index})
    if action == "clear":
        return ToolIntent(Capability.TODO_CLEAR)
    return None


def _json_git_add(params: Mapping[str, Any]) -> ToolIntent | None:
    files = params.get("files")
    if isinstance(files, str):
        names = tuple(parse_quoted_args(files))
    elif isinstance(files, list) and all(isinstance(f, str) for f in files):
        names = tuple(files)
    elif files is None:
        names = ()
    else:
        return None
    return ToolIntent(Capability.GIT_ADD, {"files": names or (".",)})


def _json_image_resize(params: Mapping[str, Any]) -> ToolIntent | None:
    input_path = _str_param(params, "input_path")
    output_path = _str_param(params, "output_path")
    width = _int_param(params, "width")
    height = _int_param(params, "height")
    if input_path is None or output_path is None or width is None or height is None:
        return None
    return ToolIntent(
        Capability.IMAGE_RESIZE,
        {
            "input_path": input_path,
            "output_path": output_path,
            "width": width,
            "height": height,
        },
    )


def _json_api_test(params: Mapping[str, Any]) -> ToolIntent | None:
    method = _str_param(params, "method")
    url = _str_param(params, "url")
    if method is None or url is None:
        return None
    headers = params.get("headers", "")
    if isinstance(headers, dict):
        headers = json.dumps(headers)
    if not isinstance(headers, str):
        return None
    body = params.get("body", "")
    if not isinstance(body, str):
        body = json.dumps(body)
    return ToolIntent(
        Capability.API_TEST,
        {"method": method, "url": url, "headers": headers, "body": body},
    )


_JSON_BUILDERS: dict[str, Callable[[Mapping[str, Any]], ToolIntent | None]] = {
    "run_command": lambda p: _required(Capability.RUN_COMMAND, p, "command"),
    "read_file": lambda p: _required(Capability.READ_FILE, p, "path"),
    "write_file": lambda p: _required(Capability.WRITE_FILE, p, "path", "content"),
    "search_replace": lambda p: _required(
        Capability.SEARCH_REPLACE, p, "path", "old_string", "new_string"
    ),
    "todo": _json_todo,
    "git_status": lambda p: ToolIntent(Capability.GIT_STATUS),
    "git_diff": lambda p: ToolIntent(Capability.GIT_DIFF),
    "git_commit": lambda p: _required(Capability.GIT_COMMIT, p, "message"),
    "git_add": _json_git_add,
    "github_issue": lambda p: _required(Capability.GITHUB_ISSUE, p, "title", "body"),
    "github_pr": lambda p: _required(
        Capability.GITHUB_PR, p, "title", "body", "branch"
    ),
    "web_search": lambda p: _required(Capability.WEB_SEARCH, p, "query"),
    "db_query": lambda p: _required(Capability.DB_QUERY, p, "db_path", "query"),
    "code_analyze": lambda p: _required(Capability.CODE_ANALYZE, p, "path"),
    "image_info": lambda p: _required(Capability.IMAGE_INFO, p, "path"),
    "image_resize": _json_image_resize,
    "api_test": _json_api_test,
}


def parse_json_tool_call(
    payload: Mapping[str, Any], *, web_search_enabled: bool = True
) -> ToolIntent | None:
    """
    ``tool`` キーを持つ JSON をツール呼び出しとして解析する.

    パラメータは ``args`` オブジェクトがあればそこから（プロバイダーネイティブ形式）、
    なければトップレベルの兄弟キーから（汎用形式）読み取る。
    未知のツール名や必須パラメータの欠落は「意図なし」として扱う。
    """
    name = payload.get("tool")
    if not isinstance(name, str):
        return None

    args = payload.get("args")
    if args is None:
        params: Mapping[str, Any] = {k: v for k, v in payload.items() if k != "tool"}
    elif isinstance(args, dict):
        params = args
    else:
        msg = f"Arguments for tool '{name}' must be a JSON object"
        raise MalformedArgumentsError(msg)

    builder = _JSON_BUILDERS.get(name)
    if builder is None:
        logger.debug("Ignoring unknown JSON tool", tool=name)
        return None
    intent = builder(params)
    if intent is not None and intent.capability is Capability.WEB_SEARCH:
        if not web_search_enabled:
            return None
    return intent


# ---------------------------------------------------------------------------
# 3. ブラケット形式
# ---------------------------------------------------------------------------


def _bracket_todo(response: str) -> ToolIntent:
    args = parse_quoted_args(strip_tool_prefix(response, "[TODO"))
    if not args:
        raise ArgumentCountMismatchError(1, 0)
    action = args[0].lower()
    if action == "add":
        if len(args) < 2:
            raise ArgumentCountMismatchError(2, len(args))
        return ToolIntent(Capability.TODO_ADD, {"description": " ".join(args[1:])})
    if action in ("list", "clear"):
        if len(args) != 1:
            raise ArgumentCountMismatchError(1, len(args))
        capability = Capability.TODO_LIST if action == "list" else Capability.TODO_CLEAR
        return ToolIntent(capability)
    if action == "remove":
        if len(args) != 2:
            raise ArgumentCountMismatchError(2, len(args))
        try:
            index = int(args[1])
        except ValueError as e:
            msg = "Invalid todo index"
            raise MalformedArgumentsError(msg) from e
        return ToolIntent(Capability.TODO_REMOVE, {"index": index})
    msg = f"Unknown todo command: {args[0]}. Supported: {', '.join(_TODO_ACTIONS)}"
    raise MalformedArgumentsError(msg)


def _bracket_named(
    capability: Capability, prefix: str, *names: str
) -> Callable[[str], ToolIntent]:
    def parse(response: str) -> ToolIntent:
        values = extract_tool_args(response, prefix, len(names))
        return ToolIntent(capability, dict(zip(names, values, strict=True)))

    return parse


def _bracket_raw(
    capability: Capability, prefix: str, name: str
) -> Callable[[str], ToolIntent]:
    def parse(response: str) -> ToolIntent:
        return ToolIntent(capability, {name: extract_tool_arg(response, prefix)})

    return parse


def _bracket_git_add(response: str) -> ToolIntent:
    files = tuple(parse_quoted_args(strip_tool_prefix(response, "[GIT_ADD")))
    return ToolIntent(Capability.GIT_ADD, {"files": files or (".",)})


def _bracket_image_resize(response: str) -> ToolIntent:
    input_path, output_path, width, height = extract_tool_args(
        response, "[IMAGE_RESIZE", 4
    )
    try:
        size = (int(width), int(height))
    except ValueError as e:
        msg = "Invalid width or height"
        raise MalformedArgumentsError(msg) from e
    return ToolIntent(
        Capability.IMAGE_RESIZE,
        {
            "input_path": input_path,
            "output_path": output_path,
            "width": size[0],
            "height": size[1],
        },
    )


# プレフィックスは互いに前方一致しない
_BRACKET_PARSERS: tuple[tuple[str, Callable[[str], ToolIntent]], ...] = (
    ("[RUN_COMMAND", _bracket_raw(Capability.RUN_COMMAND, "[RUN_COMMAND", "command")),
    ("[READ_FILE", _bracket_raw(Capability.READ_FILE, "[READ_FILE", "path")),
    (
        "[WRITE_FILE",
        _bracket_named(Capability.WRITE_FILE, "[WRITE_FILE", "path", "content"),
    ),
    (
        "[SEARCH_REPLACE",
        _bracket_named(
            Capability.SEARCH_REPLACE,
            "[SEARCH_REPLACE",
            "path",
            "old_string",
            "new_string",
        ),
    ),
    ("[TODO", _bracket_todo),
    ("[GIT_STATUS]", lambda _: ToolIntent(Capability.GIT_STATUS)),
    ("[GIT_DIFF]", lambda _: ToolIntent(Capability.GIT_DIFF)),
    ("[GIT_COMMIT", _bracket_raw(Capability.GIT_COMMIT, "[GIT_COMMIT", "message")),
    ("[GIT_ADD", _bracket_git_add),
    (
        "[GITHUB_ISSUE",
        _bracket_named(Capability.GITHUB_ISSUE, "[GITHUB_ISSUE", "title", "body"),
    ),
    (
        "[GITHUB_PR",
        _bracket_named(
            Capability.GITHUB_PR, "[GITHUB_PR", "title", "body", "branch"
        ),
    ),
    (
        "[API_TEST",
        _bracket_named(
            Capability.API_TEST, "[API_TEST", "method", "url", "headers", "body"
        ),
    ),
    (
        "[CODE_ANALYZE",
        _bracket_raw(Capability.CODE_ANALYZE, "[CODE_ANALYZE", "path"),
    ),
    (
        "[DB_QUERY",
        _bracket_named(Capability.DB_QUERY, "[DB_QUERY", "db_path", "query"),
    ),
    ("[IMAGE_INFO", _bracket_raw(Capability.IMAGE_INFO, "[IMAGE_INFO", "path")),
    ("[IMAGE_RESIZE", _bracket_image_resize),
    ("[SEARCH:", _bracket_raw(Capability.WEB_SEARCH, "[SEARCH:", "query")),
)


def parse_bracket_call(
    response: str, *, web_search_enabled: bool = True
) -> ToolIntent | None:
    """
    ブラケット形式のツールコマンドを解析する.

    プレフィックスの照合のみ大文字小文字を区別しない。

    Raises:
        MalformedArgumentsError: 引数の形式が不正な場合
        ArgumentCountMismatchError: 引数の個数が一致しない場合
    """
    upper = response.upper()
    for prefix, parse in _BRACKET_PARSERS:
        if not upper.startswith(prefix):
            continue
        if prefix == "[SEARCH:" and not web_search_enabled:
            return None
        return parse(response)
    return None


# ---------------------------------------------------------------------------
# 正規形 JSON
# ---------------------------------------------------------------------------

_TODO_CANONICAL = {
    Capability.TODO_ADD: "add",
    Capability.TODO_LIST: "list",
    Capability.TODO_REMOVE: "remove",
    Capability.TODO_CLEAR: "clear",
}


def to_canonical_json(intent: ToolIntent) -> str:
    """
    意図を正規形の JSON ツール呼び出しに変換する.

    ``normalize(to_canonical_json(intent)) == intent`` が成り立つ。
    """
    if intent.capability is Capability.REMOTE_TOOL:
        return json.dumps(
            {"mcp_tool": intent.tool_name, "arguments": dict(intent.arguments)},
            ensure_ascii=False,
        )
    if intent.capability in _TODO_CANONICAL:
        args = {"action": _TODO_CANONICAL[intent.capability], **intent.arguments}
        return json.dumps({"tool": "todo", "args": args}, ensure_ascii=False)
    args = {
        key: list(value) if isinstance(value, tuple) else value
        for key, value in intent.arguments.items()
    }
    return json.dumps(
        {"tool": intent.capability.value, "args": args}, ensure_ascii=False
    )
