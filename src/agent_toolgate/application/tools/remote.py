"""Remote (MCP) tool capability."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from agent_toolgate.application.errors import RemoteToolError
from agent_toolgate.application.models import Capability, ToolOutcome
from agent_toolgate.application.tools.base import TOOL_NAME_KEY, ToolContext, ToolSpec
from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)


async def remote_tool(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    """
    リモートツールを呼び出す.

    クライアント未設定や呼び出し失敗はエラーにせず、結果テキストとして返す。
    """
    name = arguments[TOOL_NAME_KEY]
    tool_args = {k: v for k, v in arguments.items() if k != TOOL_NAME_KEY}
    if ctx.remote_tools is None:
        return ToolOutcome(
            "Error: MCP client not configured",
            summary=f"mcp {name}",
            succeeded=False,
        )

    try:
        text = await ctx.remote_tools.call_tool(name, tool_args)
    except RemoteToolError as e:
        logger.warning("MCP tool call failed", tool=name, error=e.message)
        return ToolOutcome(
            f"MCP tool call failed: {e.message}",
            summary=f"mcp {name}",
            succeeded=False,
            error_message=e.message,
        )
    return ToolOutcome(text, summary=f"mcp {name}")


SPECS = {
    Capability.REMOTE_TOOL: ToolSpec(
        handler=remote_tool, describe=lambda args: f"mcp {args[TOOL_NAME_KEY]}"
    ),
}
