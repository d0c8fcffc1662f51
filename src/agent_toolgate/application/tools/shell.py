"""Shell command capability."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from agent_toolgate.application.errors import CommandError
from agent_toolgate.application.models import Capability, ToolOutcome
from agent_toolgate.application.tools.base import (
    GateMode,
    ToolContext,
    ToolSpec,
    outcome_from_process,
)
from agent_toolgate.infrastructure.logging import get_logger
from agent_toolgate.infrastructure.process import run_shell

logger = get_logger(__name__)


async def run_command(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    """
    ``sh -c`` でコマンドを実行する.

    終了コードが 0 なら標準出力、それ以外なら標準エラーを結果テキストとする。
    待機中にキャンセルされた場合は子プロセスを強制終了する。

    Raises:
        CommandError: 起動に失敗した場合・タイムアウトした場合
    """
    command = arguments["command"]
    logger.info("Executing command", command=command, session_id=ctx.session_id)
    try:
        result = await run_shell(command, timeout=ctx.command_timeout)
    except OSError as e:
        msg = f"Failed to execute command: {e}"
        raise CommandError(msg) from e
    except TimeoutError as e:
        msg = f"Command timed out after {ctx.command_timeout} seconds"
        raise CommandError(msg) from e

    logger.info(
        "Command finished",
        command=command,
        exit_code=result.exit_code,
        duration_ms=result.duration_ms,
    )
    return outcome_from_process(result, summary=command)


SPECS = {
    Capability.RUN_COMMAND: ToolSpec(
        handler=run_command,
        describe=lambda args: args["command"],
        gate=GateMode.COMMAND_POLICY,
        cancel_message="Command execution cancelled by user",
    ),
}
