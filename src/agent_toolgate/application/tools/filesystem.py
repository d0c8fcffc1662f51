"""File read / write / search-and-replace capabilities."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from agent_toolgate.application.errors import FileOperationError
from agent_toolgate.application.models import Capability, ToolOutcome
from agent_toolgate.application.tools.base import GateMode, ToolContext, ToolSpec
from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _read_text(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        msg = f"Failed to read file {path}: {e}"
        raise FileOperationError(msg) from e


def _write_text(path: str, content: str) -> None:
    try:
        Path(path).write_text(content, encoding="utf-8")
    except OSError as e:
        msg = f"Failed to write file {path}: {e}"
        raise FileOperationError(msg) from e


async def read_file(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    """ファイルの内容をそのまま返す."""
    path = arguments["path"]
    logger.info("Reading file", path=path, session_id=ctx.session_id)
    return ToolOutcome(result_text=_read_text(path), summary=f"read_file {path}")


async def write_file(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    """ファイルを上書きする."""
    path = arguments["path"]
    content = arguments["content"]
    logger.info("Writing file", path=path, session_id=ctx.session_id)
    _write_text(path, content)
    size = len(content.encode("utf-8"))
    return ToolOutcome(
        result_text=f"Successfully wrote {size} bytes to {path}",
        summary=f"write_file {path}",
    )


async def search_replace(
    arguments: Mapping[str, Any], ctx: ToolContext
) -> ToolOutcome:
    """ファイル内の一致箇所をすべて置換する."""
    path = arguments["path"]
    old_string = arguments["old_string"]
    new_string = arguments["new_string"]
    if not old_string:
        msg = "Search string must not be empty"
        raise FileOperationError(msg)

    logger.info("Searching and replacing in file", path=path, session_id=ctx.session_id)
    content = _read_text(path)
    replacements = content.count(old_string)
    _write_text(path, content.replace(old_string, new_string))
    return ToolOutcome(
        result_text=f"Replaced {replacements} occurrences in {path}",
        summary=f"search_replace {path}",
    )


SPECS = {
    Capability.READ_FILE: ToolSpec(
        handler=read_file,
        describe=lambda args: f"read_file {args['path']}",
    ),
    Capability.WRITE_FILE: ToolSpec(
        handler=write_file,
        describe=lambda args: f"write_file {args['path']}",
        gate=GateMode.CONFIRM,
        prompt=lambda args: f"Write to file {args['path']}? (y/n): ",
        cancel_message="File write cancelled by user",
    ),
    Capability.SEARCH_REPLACE: ToolSpec(
        handler=search_replace,
        describe=lambda args: (
            f"search_replace {args['path']} "
            f"{args['old_string']!r} -> {args['new_string']!r}"
        ),
        gate=GateMode.CONFIRM,
        prompt=lambda args: f"Search and replace in file {args['path']}? (y/n): ",
        cancel_message="Search and replace cancelled by user",
    ),
}
