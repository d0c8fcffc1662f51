"""System prompt construction."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from pathlib import Path

from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)

_IGNORED_ENTRIES = frozenset({"node_modules", "target", "__pycache__", "venv"})

TOOL_INSTRUCTIONS = """

You have tools to interact with the system. To use a tool, respond with ONLY the tool command. Do not add any other text. If you cannot use a tool for the user's request, explain why.

Available tools:
- read_file(path): Read the contents of a file
- write_file(path, content): Write content to a file
- search_replace(path, old_string, new_string): Search and replace text in a file
- run_command(command): Run a shell command
- todo(action, description?, index?): Manage todo list (actions: add, list, remove, clear)
- git_status(), git_diff(), git_commit(message), git_add(files): Git operations
- github_issue(title, body), github_pr(title, body, branch): GitHub operations
- db_query(db_path, query): Run a read-only SELECT query on a SQLite database
- code_analyze(path): Show simple metrics for a source file
- image_info(path), image_resize(input_path, output_path, width, height): Image tools
- api_test(method, url, headers, body): Send an HTTP request

To use a tool, respond with a JSON object like: {"tool": "write_file", "path": "example.txt", "content": "Hello world"}"""


def collect_project_context(root: Path | None = None) -> str:
    """
    カレントディレクトリの概要（パスと直下のファイル一覧）を返す.

    隠しファイルとビルド成果物のディレクトリは除外する。
    """
    root = root or Path.cwd()
    try:
        entries = sorted(root.iterdir(), key=lambda p: p.name)
    except OSError as e:
        logger.warning("Failed to read project directory", path=str(root), error=str(e))
        return f"Current directory: {root}\n"

    names = [
        f"{p.name}/" if p.is_dir() else p.name
        for p in entries
        if not p.name.startswith(".") and p.name not in _IGNORED_ENTRIES
    ]
    return f"Current directory: {root}\nFiles in project root: {', '.join(names)}\n"


def format_remote_tools(tools: Sequence[tuple[str, str | None]]) -> str:
    """リモートツール一覧をプロンプト用に整形する（空の場合は空文字列）."""
    if not tools:
        return ""
    lines = ["\n\nMCP Tools (Model Context Protocol):"]
    lines.extend(f"- {name}: {description or 'No description'}" for name, description in tools)
    lines.append(
        '\nTo use an MCP tool, respond with: {"mcp_tool": "tool_name", "arguments": {...}}'
    )
    return "\n".join(lines)


def build_system_prompt(
    model_name: str,
    *,
    web_search_enabled: bool = True,
    remote_tools: Sequence[tuple[str, str | None]] = (),
    project_context: str | None = None,
    guidelines_path: Path | None = None,
) -> str:
    """
    セッション開始時のシステムプロンプトを組み立てる.

    Args:
        model_name: モデル名
        web_search_enabled: Web 検索の案内を含めるかどうか
        remote_tools: リモートツールの (名前, 説明) 一覧
        project_context: プロジェクトの概要
        guidelines_path: エージェント向けガイドラインのファイル（存在する場合のみ追加）

    Returns:
        システムプロンプト
    """
    prompt = (
        f"You are a helpful AI assistant powered by the {model_name} model.\n"
        "You have the ability to read and write files, search and replace text in "
        "files, and run shell commands"
        f"{' and search the web' if web_search_enabled else ''}."
    )
    if project_context:
        prompt += f"\n\nProject Context:\n{project_context}"

    prompt += TOOL_INSTRUCTIONS
    prompt += format_remote_tools(remote_tools)

    if guidelines_path is not None and guidelines_path.is_file():
        try:
            guidelines = guidelines_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(
                "Could not load agent guidelines", path=str(guidelines_path), error=str(e)
            )
        else:
            prompt += f"\n\nAgent Guidelines:\n{guidelines}\n"

    if web_search_enabled:
        prompt += (
            f"\n- Search the web: `[SEARCH: your query]`. "
            f"Current year: {date.today().year}\n"
        )
    return prompt
